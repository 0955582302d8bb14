"""
Integration API routes — provider catalogue, OAuth start/callback,
status and disconnect.

Route prefix: /integrations

The wired services are read from ``request.app.state.integrations``
(an ``IntegrationContext`` built at startup).
"""

from __future__ import annotations

import html
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import HTMLResponse

from connectors.context import IntegrationContext
from connectors.errors import (
    ChannelNotFoundError,
    ConfigurationError,
    ConnectionNotFoundError,
    DuplicateConnectionError,
    IntegrationError,
    IntegrationNotFoundError,
    InvalidStateError,
    OAuthCallbackError,
    ProviderAPIError,
    ProviderNotFoundError,
    ReauthRequiredError,
    RecordNotFoundError,
    ValidationError,
)
from connectors.schemas import Integration, OAuthCallbackParams

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrations", tags=["integrations"])

# Most specific classes first: DuplicateConnectionError is a ValidationError.
_STATUS_BY_ERROR = (
    (DuplicateConnectionError, status.HTTP_409_CONFLICT),
    (ReauthRequiredError, status.HTTP_409_CONFLICT),
    (ProviderNotFoundError, status.HTTP_404_NOT_FOUND),
    (IntegrationNotFoundError, status.HTTP_404_NOT_FOUND),
    (ConnectionNotFoundError, status.HTTP_404_NOT_FOUND),
    (RecordNotFoundError, status.HTTP_404_NOT_FOUND),
    (ChannelNotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidStateError, status.HTTP_400_BAD_REQUEST),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (OAuthCallbackError, status.HTTP_400_BAD_REQUEST),
    (ProviderAPIError, status.HTTP_502_BAD_GATEWAY),
    (ConfigurationError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def http_status_for(exc: IntegrationError) -> int:
    for error_cls, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _http_error(exc: IntegrationError) -> HTTPException:
    return HTTPException(status_code=http_status_for(exc), detail=str(exc))


def _context(request: Request) -> IntegrationContext:
    ctx = getattr(request.app.state, "integrations", None)
    if ctx is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Integrations are not initialised",
        )
    return ctx


def _public_integration(integration: Integration) -> Dict[str, Any]:
    """Integration as returned to API callers — ciphertext never leaves the service."""
    return integration.model_dump(
        mode="json", exclude={"access_token", "refresh_token"}
    )


# ── Dependencies ───────────────────────────────────────────────────────


async def get_current_tenant_id() -> str:
    """
    Resolve the tenant the caller acts for.

    The host application overrides this dependency with its own
    authentication (``app.dependency_overrides`` or ``create_app``);
    until it does, every tenant-scoped route answers 401.
    """
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Tenant authentication is not configured",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _owned_integration(
    ctx: IntegrationContext, integration_id: str, tenant_id: str
) -> Integration:
    """The tenant's integration; other tenants' ids look exactly like unknown ones."""
    integration = await ctx.manager.get_integration(integration_id)
    if integration is None or integration.tenant_id != tenant_id:
        if integration is not None:
            logger.warning(
                "Tenant %s denied access to integration %s", tenant_id, integration_id
            )
        raise _http_error(IntegrationNotFoundError(integration_id))
    return integration


# ── Routes ─────────────────────────────────────────────────────────────


@router.get("/providers")
async def list_providers(request: Request) -> List[dict]:
    """List the registered providers and whether each one is configured."""
    return _context(request).registry.list_providers()


@router.get("")
async def list_integrations(
    request: Request,
    tenant_id: str = Depends(get_current_tenant_id),
) -> List[Dict[str, Any]]:
    """Active integrations of the calling tenant."""
    integrations = await _context(request).manager.list_tenant_integrations(tenant_id)
    return [_public_integration(i) for i in integrations]


@router.get("/{provider}/auth-url")
async def get_auth_url(
    request: Request,
    provider: str,
    redirect_uri: str = Query(...),
    instance_url: Optional[str] = Query(None),
    tenant_id: str = Depends(get_current_tenant_id),
) -> Dict[str, str]:
    """
    Get the authorization URL for a provider.

    Frontend should open this URL in a popup window; the provider
    redirects back to ``/integrations/{provider}/callback``.  The tenant
    comes from the authenticated caller and is sealed into the signed
    state, so the unauthenticated callback can only complete it.
    ``instance_url`` selects a self-managed instance (GitLab).
    """
    ctx = _context(request)
    extra = {"instance_url": instance_url} if instance_url else None
    try:
        initiation = await ctx.manager.initiate_oauth(tenant_id, provider, redirect_uri, extra)
    except IntegrationError as exc:
        raise _http_error(exc) from exc
    return {"auth_url": initiation.auth_url, "state": initiation.state, "provider": provider}


@router.get("/{provider}/callback")
async def oauth_callback(
    request: Request,
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    oauth_token: Optional[str] = Query(None),
    oauth_verifier: Optional[str] = Query(None),
    format: str = Query("html", pattern="^(html|json)$"),
):
    """
    OAuth callback — the provider redirects here after consent.

    Exchanges the grant, stores the integration and, by default, returns
    a small HTML page that notifies the opener window and auto-closes.
    ``format=json`` returns the stored integration instead.
    """
    ctx = _context(request)
    params = OAuthCallbackParams(
        code=code,
        state=state,
        error=error,
        error_description=error_description,
        oauth_token=oauth_token,
        oauth_verifier=oauth_verifier,
    )

    try:
        integration = await ctx.manager.handle_oauth_callback(provider, params)
    except IntegrationError as exc:
        logger.error("OAuth callback failed for %s: %s", provider, exc)
        if format == "json":
            raise _http_error(exc) from exc
        return HTMLResponse(
            content=_callback_html(
                success=False,
                message=f"Connection failed: {exc}",
                provider=provider,
            ),
            status_code=http_status_for(exc),
        )

    if format == "json":
        return _public_integration(integration)

    display_name = ctx.registry.get(provider).display_name
    return HTMLResponse(
        content=_callback_html(
            success=True,
            message=f"Connected {display_name}",
            provider=provider,
        ),
        status_code=200,
    )


@router.get("/{integration_id}/status")
async def integration_status(
    request: Request,
    integration_id: str,
    tenant_id: str = Depends(get_current_tenant_id),
) -> Dict[str, Any]:
    """Health summary: status, last sync, connection count and recent errors."""
    ctx = _context(request)
    await _owned_integration(ctx, integration_id, tenant_id)
    try:
        report = await ctx.manager.get_integration_status(integration_id)
    except IntegrationError as exc:
        raise _http_error(exc) from exc
    return report.model_dump(mode="json")


@router.get("/{integration_id}/channels")
async def list_channels(
    request: Request,
    integration_id: str,
    tenant_id: str = Depends(get_current_tenant_id),
) -> List[Dict[str, Any]]:
    ctx = _context(request)
    await _owned_integration(ctx, integration_id, tenant_id)
    try:
        channels = await ctx.manager.get_available_channels(integration_id)
    except IntegrationError as exc:
        raise _http_error(exc) from exc
    return [c.model_dump(mode="json") for c in channels]


@router.delete("/{integration_id}")
async def delete_integration(
    request: Request,
    integration_id: str,
    tenant_id: str = Depends(get_current_tenant_id),
) -> Dict[str, Any]:
    """Revoke (best effort) and delete an integration with its connections."""
    ctx = _context(request)
    await _owned_integration(ctx, integration_id, tenant_id)
    try:
        await ctx.manager.disconnect_integration(integration_id)
    except IntegrationError as exc:
        raise _http_error(exc) from exc
    return {"status": "disconnected", "integration_id": integration_id}


# ── Callback HTML template ─────────────────────────────────────────────


def _callback_html(success: bool, message: str, provider: str) -> str:
    """
    Small HTML page shown in the OAuth popup after redirect.
    Sends a postMessage to the opener and auto-closes.
    """
    status_emoji = "✅" if success else "❌"
    status_text = "Connected!" if success else "Failed"
    color = "#00d992" if success else "#ef4444"
    payload = json.dumps(
        {
            "type": "oauth-callback",
            "provider": provider,
            "success": success,
            "message": message,
        }
    ).replace("</", "<\\/")

    return f"""<!DOCTYPE html>
<html>
<head>
    <title>Integrations — {html.escape(provider)} {status_text}</title>
    <style>
        body {{
            font-family: 'Inter', system-ui, sans-serif;
            background: #0b0d11; color: #e4e7ee;
            display: flex; align-items: center; justify-content: center;
            height: 100vh; margin: 0;
        }}
        .card {{
            text-align: center; padding: 40px;
            background: #12151b; border: 1px solid #1f2330;
            border-radius: 12px; max-width: 400px;
        }}
        .emoji {{ font-size: 3rem; }}
        h2 {{ color: {color}; margin: 16px 0 8px; }}
        p {{ color: #a0a6b8; font-size: 0.85rem; }}
        .close-note {{ color: #636a80; font-size: 0.7rem; margin-top: 20px; }}
    </style>
</head>
<body>
    <div class="card">
        <div class="emoji">{status_emoji}</div>
        <h2>{status_text}</h2>
        <p>{html.escape(message)}</p>
        <p class="close-note">This window will close automatically…</p>
    </div>
    <script>
        if (window.opener) {{
            window.opener.postMessage({payload}, '*');
        }}
        setTimeout(() => window.close(), 2000);
    </script>
</body>
</html>"""
