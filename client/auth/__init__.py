"""
Authentication package for the Cap Gold client.

This package contains the session token lifecycle: token storage adapters,
the token change channel, the refresh client, the token manager and the
authentication service.
"""
