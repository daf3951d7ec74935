"""Pydantic schemas for API request validation."""

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from core.integrations.states import SyncDirection, SyncType


def _relative_path(value: Optional[str]) -> Optional[str]:
    """Post-OAuth redirects stay on this site."""
    if value is None:
        return value
    if not value.startswith("/") or value.startswith("//"):
        raise ValueError("redirect_url must be a relative path")
    return value


# ---------------------------------------------------------------------------
# Integrations
# ---------------------------------------------------------------------------

class IntegrationCreate(BaseModel):
    connector_id: str = Field(..., min_length=1, max_length=64)
    credentials: Optional[dict[str, Any]] = None
    config: dict[str, Any] = Field(default_factory=dict)
    redirect_url: Optional[str] = None

    @field_validator("redirect_url")
    @classmethod
    def check_redirect_url(cls, value: Optional[str]) -> Optional[str]:
        return _relative_path(value)


class SyncRequest(BaseModel):
    direction: SyncDirection = SyncDirection.INBOUND
    sync_type: SyncType = SyncType.INCREMENTAL
    cursor: Optional[str] = None


class SimulateRequest(BaseModel):
    event_type: Optional[str] = None
    payload: Optional[dict[str, Any]] = None


class ActionRequest(BaseModel):
    action: str = Field(..., min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)


class FieldMappingIn(BaseModel):
    source_field: str = Field(..., min_length=1)
    target_field: str = Field(..., min_length=1)
    transform: Optional[str] = None
    default: Any = None


class MappingsUpdate(BaseModel):
    mappings: list[FieldMappingIn] = Field(default_factory=list)
