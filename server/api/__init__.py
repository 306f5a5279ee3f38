"""HTTP routes for the Cap Gold backend."""
