"""Environment-driven configuration for the auth core."""

from __future__ import annotations

import os
from pathlib import Path

import msgspec

from .errors import MissingCredentials
from .logging_config import get_logger
from .models import AuthMode

logger = get_logger("config")

DEFAULT_LOGIN_URL = "https://login.salesforce.com"
DEFAULT_REDIRECT_URI = "https://login.salesforce.com/services/oauth2/callback"
DEFAULT_SCOPE = "id api refresh_token"
DEFAULT_TOKEN_FILE = str(Path.home() / ".config" / "salesforce-auth" / "tokens.json")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


def _env_choice(name: str, default: str, choices: tuple[str, ...]) -> str:
    value = (os.getenv(name) or default).strip().lower()
    if value not in choices:
        raise ValueError(f"{name} must be one of {', '.join(choices)}, got {value!r}")
    return value


class AuthConfig(msgspec.Struct, kw_only=True):
    """Configuration for OAuth flows, token storage and session pooling."""

    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str = DEFAULT_REDIRECT_URI
    login_url: str = DEFAULT_LOGIN_URL
    instance_url: str = DEFAULT_LOGIN_URL
    refresh_token: str | None = None
    scope: str | None = None

    username: str | None = None
    password: str | None = None
    security_token: str | None = None

    default_auth_mode: AuthMode = AuthMode.USERNAME_PASSWORD
    api_version: str = "v60.0"

    # Authorization flow
    response_type: str = "code"
    state_tracking: str = "server"
    use_pkce: bool = False
    state_timeout: float = 600.0
    implicit_token_lifetime: float = 7200.0

    # Token storage
    refresh_buffer: float = 300.0
    token_storage_type: str = "file"
    token_file: str = DEFAULT_TOKEN_FILE
    redis_url: str = "redis://localhost:6379"
    encryption_key: str | None = None
    eager_eviction: bool = False

    # Session pool
    validate_sessions: bool = True
    http_timeout: float = 30.0

    @property
    def effective_scope(self) -> str:
        return self.scope or DEFAULT_SCOPE

    @property
    def token_endpoint(self) -> str:
        return f"{self.login_url.rstrip('/')}/services/oauth2/token"

    def require_client_credentials(self) -> tuple[str, str]:
        """Return (client_id, client_secret) or raise MissingCredentials."""
        if not self.client_id or not self.client_secret:
            raise MissingCredentials(
                "SALESFORCE_CLIENT_ID and SALESFORCE_CLIENT_SECRET are required "
                "for this operation"
            )
        return self.client_id, self.client_secret

    @classmethod
    def from_env(cls) -> "AuthConfig":
        """Load configuration from environment variables.

        Raises:
            ValueError: If a numeric, boolean or choice variable is malformed
        """
        login_url = os.getenv("SALESFORCE_LOGIN_URL", DEFAULT_LOGIN_URL).rstrip("/")
        instance_url = os.getenv("SALESFORCE_INSTANCE_URL", login_url).rstrip("/")

        mode_raw = os.getenv("SALESFORCE_CONNECTION_TYPE") or AuthMode.USERNAME_PASSWORD.value
        try:
            default_mode = AuthMode(mode_raw)
        except ValueError as e:
            choices = ", ".join(m.value for m in AuthMode)
            raise ValueError(
                f"SALESFORCE_CONNECTION_TYPE must be one of {choices}, got {mode_raw!r}"
            ) from e

        config = cls(
            client_id=os.getenv("SALESFORCE_CLIENT_ID") or None,
            client_secret=os.getenv("SALESFORCE_CLIENT_SECRET") or None,
            redirect_uri=os.getenv("SALESFORCE_REDIRECT_URI") or DEFAULT_REDIRECT_URI,
            login_url=login_url,
            instance_url=instance_url,
            refresh_token=os.getenv("SALESFORCE_REFRESH_TOKEN") or None,
            scope=os.getenv("SALESFORCE_SCOPE") or None,
            username=os.getenv("SALESFORCE_USERNAME") or None,
            password=os.getenv("SALESFORCE_PASSWORD") or None,
            security_token=os.getenv("SALESFORCE_TOKEN") or None,
            default_auth_mode=default_mode,
            api_version=os.getenv("SALESFORCE_API_VERSION", "v60.0"),
            response_type=_env_choice("OAUTH_RESPONSE_TYPE", "code", ("code", "token")),
            state_tracking=_env_choice(
                "OAUTH_STATE_TRACKING", "server", ("server", "client")
            ),
            use_pkce=_env_bool("OAUTH_USE_PKCE", False),
            state_timeout=_env_float("OAUTH_STATE_TIMEOUT", 600.0),
            refresh_buffer=_env_float("TOKEN_REFRESH_BUFFER", 300.0),
            token_storage_type=_env_choice(
                "TOKEN_STORAGE_TYPE", "file", ("memory", "file", "redis")
            ),
            token_file=os.getenv("TOKEN_FILE") or DEFAULT_TOKEN_FILE,
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379"),
            encryption_key=os.getenv("STORAGE_ENCRYPTION_KEY") or None,
            eager_eviction=_env_bool("TOKEN_EAGER_EVICTION", False),
            validate_sessions=_env_bool("SESSION_VALIDATION", True),
            http_timeout=_env_float("HTTP_TIMEOUT", 30.0),
        )

        logger.debug(
            "Loaded config: login_url=%s, instance_url=%s, mode=%s, storage=%s",
            config.login_url,
            config.instance_url,
            config.default_auth_mode.value,
            config.token_storage_type,
        )
        return config
