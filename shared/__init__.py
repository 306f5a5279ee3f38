"""Code shared by the Cap Gold client and server."""
