"""Data structures shared across the auth core."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

import msgspec

DEFAULT_OWNER_ID = "default_user"


class AuthMode(str, Enum):
    """How a session is established for an owner."""

    # Username + password (+ security token) via the OAuth password grant
    USERNAME_PASSWORD = "User_Password"
    # Server-to-server client credentials grant
    CLIENT_CREDENTIALS = "OAuth_2.0_Client_Credentials"
    # Caller-supplied access token, optionally with a refresh token
    ACCESS_TOKEN = "OAuth_2.0_Authorization_Code"
    # Stored token record for the owner, renewed from its refresh token
    PERSONAL = "OAuth_2.0_Personal"


class TokenRecord(msgspec.Struct, frozen=True, kw_only=True):
    """OAuth tokens for one owner.

    Records are immutable; a refresh produces a new record so readers
    never observe a half-updated one. Without a refresh_token the record
    cannot be renewed and expiry requires a new authorization flow.
    """

    access_token: str
    instance_url: str
    owner_id: str = ""
    refresh_token: str | None = None
    scope: str | None = None
    token_type: str = "Bearer"
    expires_at: datetime | None = None

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)


class PendingAuthorization(msgspec.Struct, frozen=True, kw_only=True):
    """An authorization URL that has been issued but not yet called back."""

    state: str
    owner_id: str
    created_at: float
    code_verifier: str | None = None
    redirect_uri: str | None = None


class UserIdentity(msgspec.Struct, frozen=True, kw_only=True):
    """Salesforce user resolved from the identity endpoint."""

    subject_id: str
    username: str = ""
    email: str = ""
    organization_id: str = ""
    display_name: str = ""

    @property
    def owner_key(self) -> str:
        """Stable token store key: email, then username, then subject id."""
        if self.email and self.email != "unknown":
            return self.email
        if self.username and self.username != "unknown":
            return self.username
        return self.subject_id


class AuthParams(msgspec.Struct, kw_only=True):
    """Per-call inputs for session construction."""

    access_token: str | None = None
    refresh_token: str | None = None
    instance_url: str | None = None
    scope: str | None = None


class AuthorizationRequest(msgspec.Struct, frozen=True, kw_only=True):
    """Authorization URL handed to the caller, with its anti-forgery state."""

    url: str
    state: str | None


class AuthorizationResult(msgspec.Struct, frozen=True, kw_only=True):
    """Outcome of a completed authorization flow."""

    owner_id: str
    identity: UserIdentity
    token: TokenRecord
