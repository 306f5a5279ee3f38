"""Cap Gold auth backend."""
