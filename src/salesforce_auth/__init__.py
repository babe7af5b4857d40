"""Salesforce OAuth credential lifecycle and connection pooling."""

from .errors import SalesforceAuthError
from .models import DEFAULT_OWNER_ID, AuthMode, AuthParams, TokenRecord

__version__ = "0.1.0"

__all__ = [
    "DEFAULT_OWNER_ID",
    "AuthMode",
    "AuthParams",
    "SalesforceAuthError",
    "TokenRecord",
]
