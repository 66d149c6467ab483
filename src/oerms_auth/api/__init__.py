"""Clients for the OERMS REST backend."""

from oerms_auth.api.client import ApiAuthenticationError, ApiClient, ApiError

__all__ = ["ApiAuthenticationError", "ApiClient", "ApiError"]
