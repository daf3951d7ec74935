"""Tenant integration management.

Read routes are open to any tenant member; every mutating route requires
a tenant admin (see api.middleware.require_admin).
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from api.deps import get_services
from api.middleware import get_current_tenant, require_admin
from api.schemas import (
    ActionRequest,
    IntegrationCreate,
    MappingsUpdate,
    SimulateRequest,
    SyncRequest,
)
from core.integrations.services import ConnectorServices
from core.integrations.states import IntegrationStatus, WebhookStatus

router = APIRouter()


# ============================================================================
# Integrations
# ============================================================================

@router.get("/integrations")
async def list_integrations(
    status: Optional[IntegrationStatus] = None,
    services: ConnectorServices = Depends(get_services),
):
    integrations = await services.manager.list_integrations(get_current_tenant(), status)
    return {"data": [i.to_dict() for i in integrations]}


@router.get("/integrations/{integration_id}")
async def get_integration(
    integration_id: str,
    services: ConnectorServices = Depends(get_services),
):
    integration = await services.manager.get_integration(integration_id, get_current_tenant())
    return integration.to_dict()


@router.post("/integrations")
async def create_integration(
    body: IntegrationCreate,
    response: Response,
    user_id: Optional[str] = Depends(require_admin),
    services: ConnectorServices = Depends(get_services),
):
    """Connect directly with credentials, or start OAuth when none are given."""
    tenant_id = get_current_tenant()
    manager = services.manager
    definition = manager.get_definition(body.connector_id)

    if body.credentials is None:
        if not definition.oauth_enabled:
            raise HTTPException(status_code=400, detail="credentials are required for this connector")
        url, state = await manager.build_authorization_url(
            tenant_id, body.connector_id, user_id, body.redirect_url
        )
        return {"authorization_url": url, "state": state}

    integration = await manager.connect_integration(
        tenant_id, body.connector_id, user_id, body.credentials, body.config
    )
    response.status_code = 201
    return integration.to_dict()


@router.post("/integrations/{integration_id}/revoke")
async def revoke_integration(
    integration_id: str,
    user_id: Optional[str] = Depends(require_admin),
    services: ConnectorServices = Depends(get_services),
):
    integration = await services.manager.disconnect_integration(
        integration_id, get_current_tenant(), user_id
    )
    return integration.to_dict()


@router.post("/integrations/{integration_id}/test")
async def test_integration(
    integration_id: str,
    user_id: Optional[str] = Depends(require_admin),
    services: ConnectorServices = Depends(get_services),
):
    return await services.manager.test_integration_connection(
        integration_id, get_current_tenant(), user_id
    )


@router.post("/integrations/{integration_id}/refresh")
async def refresh_integration(
    integration_id: str,
    user_id: Optional[str] = Depends(require_admin),
    services: ConnectorServices = Depends(get_services),
):
    integration = await services.manager.refresh_integration_tokens(
        integration_id, get_current_tenant(), user_id
    )
    return integration.to_dict()


@router.post("/integrations/{integration_id}/sync", status_code=202)
async def trigger_sync(
    integration_id: str,
    body: Optional[SyncRequest] = None,
    user_id: Optional[str] = Depends(require_admin),
    services: ConnectorServices = Depends(get_services),
):
    body = body or SyncRequest()
    job = await services.sync_worker.create_sync_job(
        integration_id,
        get_current_tenant(),
        direction=body.direction,
        sync_type=body.sync_type,
        cursor=body.cursor,
        triggered_by=user_id,
    )
    return job.to_dict()


@router.post("/integrations/{integration_id}/simulate")
async def simulate_webhook(
    integration_id: str,
    body: Optional[SimulateRequest] = None,
    user_id: Optional[str] = Depends(require_admin),
    services: ConnectorServices = Depends(get_services),
):
    body = body or SimulateRequest()
    result = await services.ingestion.simulate_webhook(
        integration_id, get_current_tenant(), body.event_type, body.payload
    )
    return result.to_response()


@router.post("/integrations/{integration_id}/actions")
async def perform_action(
    integration_id: str,
    body: ActionRequest,
    user_id: Optional[str] = Depends(require_admin),
    services: ConnectorServices = Depends(get_services),
):
    result = await services.manager.perform_outbound_action(
        integration_id, get_current_tenant(), user_id, body.action, body.data
    )
    return {"ok": True, "result": result}


@router.put("/integrations/{integration_id}/mappings")
async def update_mappings(
    integration_id: str,
    body: MappingsUpdate,
    user_id: Optional[str] = Depends(require_admin),
    services: ConnectorServices = Depends(get_services),
):
    integration = await services.manager.update_field_mappings(
        integration_id,
        get_current_tenant(),
        user_id,
        [m.model_dump() for m in body.mappings],
    )
    return integration.to_dict()


# ============================================================================
# Observability
# ============================================================================

@router.get("/integrations/{integration_id}/logs")
async def integration_logs(
    integration_id: str,
    limit: int = Query(100, ge=1, le=500),
    services: ConnectorServices = Depends(get_services),
):
    logs = await services.observability.list_logs(integration_id, get_current_tenant(), limit)
    return {"data": [entry.to_dict() for entry in logs]}


@router.get("/integrations/{integration_id}/metrics")
async def integration_metrics(
    integration_id: str,
    services: ConnectorServices = Depends(get_services),
):
    return await services.observability.get_metrics(integration_id, get_current_tenant())


@router.get("/integrations/{integration_id}/health")
async def integration_health(
    integration_id: str,
    services: ConnectorServices = Depends(get_services),
):
    report = await services.observability.check_health(integration_id, get_current_tenant())
    return report.to_dict()


@router.get("/integrations/{integration_id}/sync-jobs")
async def integration_sync_jobs(
    integration_id: str,
    limit: int = Query(20, ge=1, le=100),
    services: ConnectorServices = Depends(get_services),
):
    jobs = await services.sync_worker.list_jobs(integration_id, get_current_tenant(), limit)
    return {"data": [job.to_dict() for job in jobs]}


@router.get("/integrations/{integration_id}/webhooks")
async def integration_webhooks(
    integration_id: str,
    status: Optional[WebhookStatus] = None,
    limit: int = Query(50, ge=1, le=200),
    services: ConnectorServices = Depends(get_services),
):
    events = await services.ingestion.list_webhook_events(
        integration_id, get_current_tenant(), limit=limit, status=status
    )
    return {"data": [event.to_dict() for event in events]}


@router.post("/integrations/{integration_id}/webhooks/{webhook_id}/reprocess")
async def reprocess_webhook(
    integration_id: str,
    webhook_id: str,
    user_id: Optional[str] = Depends(require_admin),
    services: ConnectorServices = Depends(get_services),
):
    event = await services.ingestion.reprocess_webhook(
        webhook_id, get_current_tenant(), user_id, integration_id=integration_id
    )
    return event.to_dict()


# ============================================================================
# Sync jobs
# ============================================================================

@router.post("/sync-jobs/{job_id}/cancel")
async def cancel_sync_job(
    job_id: str,
    user_id: Optional[str] = Depends(require_admin),
    services: ConnectorServices = Depends(get_services),
):
    job = await services.sync_worker.cancel_sync_job(job_id, get_current_tenant(), user_id)
    return job.to_dict()


@router.post("/sync-jobs/{job_id}/retry", status_code=202)
async def retry_sync_job(
    job_id: str,
    user_id: Optional[str] = Depends(require_admin),
    services: ConnectorServices = Depends(get_services),
):
    job = await services.sync_worker.retry_sync_job(job_id, get_current_tenant(), user_id)
    return job.to_dict()


# ============================================================================
# Alerts
# ============================================================================

@router.get("/alerts")
async def list_alerts(
    integration_id: Optional[str] = None,
    include_acknowledged: bool = False,
    services: ConnectorServices = Depends(get_services),
):
    alerts = await services.observability.list_alerts(
        get_current_tenant(), integration_id, include_acknowledged
    )
    return {"data": [alert.to_dict() for alert in alerts]}


@router.post("/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(
    alert_id: str,
    user_id: Optional[str] = Depends(require_admin),
    services: ConnectorServices = Depends(get_services),
):
    alert = await services.observability.acknowledge_alert(alert_id, get_current_tenant(), user_id)
    return alert.to_dict()
