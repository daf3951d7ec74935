"""Connector catalog and OAuth callback."""

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse

from api.deps import get_services
from api.middleware import require_admin
from core.integrations.errors import ConnectorError, OAuthStateNotFound
from core.integrations.services import ConnectorServices

logger = logging.getLogger(__name__)

router = APIRouter()


def _redirect(base: str, **params: str) -> RedirectResponse:
    separator = "&" if "?" in base else "?"
    return RedirectResponse(f"{base}{separator}{urlencode(params)}", status_code=302)


@router.get("/connectors")
async def list_connectors(
    category: Optional[str] = None,
    services: ConnectorServices = Depends(get_services),
):
    """Active connectors, optionally filtered by category."""
    registry = services.registry
    definitions = registry.list_by_category(category) if category else registry.list_active()
    return {"data": [d.to_dict() for d in definitions]}


# Declared before /connectors/{connector_id} so "stats" and "oauth" are not read as ids.
@router.get("/connectors/stats")
async def connector_stats(
    user_id: Optional[str] = Depends(require_admin),
    services: ConnectorServices = Depends(get_services),
):
    """Per-adapter request counters for this process."""
    return {"data": services.observability.adapter_stats()}


@router.get("/connectors/oauth/callback")
async def oauth_callback(
    state: Optional[str] = None,
    code: Optional[str] = None,
    error: Optional[str] = None,
    services: ConnectorServices = Depends(get_services),
):
    """Provider redirect target: validate state, exchange the code, connect."""
    default_redirect = services.settings.oauth.success_redirect
    if not state:
        return _redirect(default_redirect, error="missing_state")

    if error or not code:
        # Consume the state so it cannot be replayed, and honour its redirect.
        try:
            consumed = await services.manager.validate_oauth_state(state)
            target = consumed.redirect_url or default_redirect
        except OAuthStateNotFound:
            target = default_redirect
        return _redirect(target, error=error or "missing_code")

    try:
        integration, consumed = await services.manager.complete_oauth(code, state)
    except OAuthStateNotFound:
        return _redirect(default_redirect, error="invalid_state")
    except ConnectorError as exc:
        logger.warning(f"[oauth] Callback failed: {exc}")
        return _redirect(default_redirect, error=exc.code)

    return _redirect(
        consumed.redirect_url or default_redirect,
        success=integration.connector_id,
        integration_id=integration.id,
    )


@router.get("/connectors/{connector_id}")
async def get_connector(
    connector_id: str,
    services: ConnectorServices = Depends(get_services),
):
    definition = services.registry.get(connector_id)
    if definition is None:
        raise HTTPException(status_code=404, detail="Connector not found")
    return definition.to_dict()
