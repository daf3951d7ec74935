"""Inbound provider webhooks.

Providers cannot send tenant headers, so the integration is addressed by
the URL token; the signature (when a secret is configured) authenticates
the body.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.deps import get_services
from core.integrations.services import ConnectorServices

router = APIRouter()


@router.post("/webhooks/{connector_id}/{token}")
async def receive_webhook(
    connector_id: str,
    token: str,
    request: Request,
    services: ConnectorServices = Depends(get_services),
):
    raw_body = await request.body()
    result = await services.ingestion.receive(connector_id, token, request.headers, raw_body)
    return JSONResponse(result.to_response(), status_code=200 if result.ok else 500)
