"""
Helpers shared by the provider modules.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, TypeVar
from urllib.parse import urlparse

import httpx

from connectors.base import ProviderCredentials
from connectors.errors import ProviderAPIError, RetryableProviderError
from connectors.schemas import ChangeKind, MessageData

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CHANGE_EMOJI = {
    ChangeKind.CREATED: "✨",
    ChangeKind.UPDATED: "📝",
    ChangeKind.DELETED: "🗑️",
}


def change_emoji(kind: ChangeKind) -> str:
    return _CHANGE_EMOJI.get(kind, "📄")


def truncate_text(text: str, max_length: int) -> str:
    """Cut ``text`` to ``max_length`` characters, ending in '...' when cut."""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def format_task_title(message: MessageData, max_length: int = 100) -> str:
    return f"{change_emoji(message.change_kind)} {truncate_text(message.title, max_length)}"


def is_valid_url(url: Optional[str]) -> bool:
    if not url:
        return False
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _error_detail(resp: httpx.Response) -> Optional[str]:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or None
    if isinstance(body, dict):
        for key in ("error_description", "message", "error"):
            if isinstance(body.get(key), str):
                return body[key]
        messages = body.get("errorMessages")
        if isinstance(messages, list) and messages:
            return str(messages[0])
    return None


def _error_code(resp: httpx.Response) -> Optional[str]:
    try:
        body = resp.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("error"), str):
        return body["error"]
    return None


def raise_for_provider_status(resp: httpx.Response, provider: str) -> None:
    """
    Translate an HTTP error response into the integration error taxonomy.

    429 and 5xx become ``RetryableProviderError``; every other 4xx is a
    plain ``ProviderAPIError`` carrying the status and provider error code.
    """
    if resp.is_success:
        return

    detail = _error_detail(resp) or resp.reason_phrase
    message = f"{provider} API error ({resp.status_code}): {detail}"
    error_cls = (
        RetryableProviderError
        if resp.status_code == 429 or resp.status_code >= 500
        else ProviderAPIError
    )
    raise error_cls(message, status_code=resp.status_code, error_code=_error_code(resp))


async def call_with_renewal(
    credentials: ProviderCredentials,
    call: Callable[[ProviderCredentials], Awaitable[T]],
) -> T:
    """
    Run ``call`` and, on a 401, retry it once with renewed credentials.
    """
    try:
        return await call(credentials)
    except ProviderAPIError as exc:
        if exc.status_code != 401 or credentials.renew is None:
            raise
        logger.info(
            "Access token rejected for integration %s, renewing",
            credentials.integration.id,
        )
        fresh = await credentials.renew()
        return await call(fresh)
