"""Token storage: the per-owner TokenStore and its durable backends."""

from .backends import (
    FileTokenBackend,
    KeyValueTokenBackend,
    TokenBackend,
    create_token_backend,
)
from .store import TokenStore

__all__ = [
    "TokenStore",
    "TokenBackend",
    "FileTokenBackend",
    "KeyValueTokenBackend",
    "create_token_backend",
]
