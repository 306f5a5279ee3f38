"""
Middleware package for the Cap Gold auth server.

This package contains the bearer-token dependency and response security headers.
"""
