"""Common utilities for the MakeTicket API.

This package provides the request pipeline building blocks: configuration,
request context tracing, structured logging, API key storage and
authentication, and rate limiting. Import from the submodules directly, e.g.:
    from packages.common.api_key_auth import ApiKeyAuthenticator
"""
