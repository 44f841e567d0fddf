"""API client, shared AI types, and the one-shot agent service."""

from .client import ApiClient, ApiError, ApproxByteCounter, ClientSettings, TokenCounterRegistry

__all__ = ["ApiClient", "ApiError", "ClientSettings", "TokenCounterRegistry", "ApproxByteCounter"]
