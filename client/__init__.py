"""Cap Gold client."""
