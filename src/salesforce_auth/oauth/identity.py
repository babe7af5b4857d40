"""Identity resolution against the Salesforce userinfo endpoint.

An access token alone says nothing stable about its owner. After a code
exchange or implicit callback the flow asks Salesforce who the token
belongs to and keys the token store on that answer.
"""

from __future__ import annotations

import httpx
import msgspec

from ..errors import NetworkError, SalesforceApiError
from ..logging_config import get_logger
from ..models import UserIdentity

logger = get_logger("oauth.identity")

USERINFO_PATH = "/services/oauth2/userinfo"


class _UserInfo(msgspec.Struct, kw_only=True):
    user_id: str | None = None
    sub: str | None = None
    preferred_username: str | None = None
    email: str | None = None
    organization_id: str | None = None
    name: str | None = None
    nickname: str | None = None


def parse_api_error(response: httpx.Response) -> SalesforceApiError:
    """Build a SalesforceApiError from a REST error body.

    Salesforce REST errors are a list of ``{"message", "errorCode"}``;
    OAuth endpoints answer ``{"error", "error_description"}``.
    """
    message = response.text[:200] or f"HTTP {response.status_code}"
    error_code = None

    try:
        body = msgspec.json.decode(response.content)
    except msgspec.DecodeError:
        body = None

    if isinstance(body, list) and body and isinstance(body[0], dict):
        body = body[0]
    if isinstance(body, dict):
        error_code = body.get("errorCode") or body.get("error")
        message = body.get("message") or body.get("error_description") or message

    return SalesforceApiError(
        f"Salesforce API error ({response.status_code}): {message}",
        status_code=response.status_code,
        error_code=error_code,
    )


async def fetch_user_identity(
    http_client: httpx.AsyncClient,
    instance_url: str,
    access_token: str,
) -> UserIdentity:
    """Resolve the user behind ``access_token``.

    Raises:
        SalesforceApiError: Non-2xx from the userinfo endpoint (401 for a
            stale token)
        NetworkError: Transport failure
    """
    url = f"{instance_url.rstrip('/')}{USERINFO_PATH}"
    try:
        response = await http_client.get(
            url, headers={"Authorization": f"Bearer {access_token}"}
        )
    except httpx.HTTPError as e:
        raise NetworkError(f"Identity request error: {e}") from e

    if response.status_code != 200:
        logger.warning("Identity lookup failed: status=%d", response.status_code)
        raise parse_api_error(response)

    try:
        info = msgspec.json.decode(response.content, type=_UserInfo)
    except msgspec.DecodeError as e:
        raise SalesforceApiError(
            f"Failed to parse identity response: {e}",
            status_code=response.status_code,
        ) from e

    subject_id = info.user_id or info.sub or ""
    username = info.preferred_username or ""
    identity = UserIdentity(
        subject_id=subject_id,
        username=username,
        email=info.email or "",
        organization_id=info.organization_id or "",
        display_name=info.name or info.nickname or username or "Unknown User",
    )
    logger.debug("Resolved identity: user_id=%s", identity.subject_id)
    return identity
