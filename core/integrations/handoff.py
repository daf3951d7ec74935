"""
Downstream hand-off contract.

Normalized webhook events and synced items leave the engine as
HandoffEvent records delivered to an EventSink. The automation engine
that consumes them lives outside this repository; `QueueEventSink` is the
in-process implementation used by the API process and the tests.

The ingestion pipeline only calls `deliver` for the request that created
the WebhookEvent row, so each provider event id is handed off at most
once per (tenant, connector).
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from core.integrations.normalizer import apply_field_mappings, parse_mappings
from core.integrations.records import Integration, utcnow

logger = logging.getLogger(__name__)


@dataclass
class HandoffEvent:
    tenant_id: str
    integration_id: str
    connector_id: str
    type: str
    data: dict[str, Any]
    timestamp: str
    provider_event_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "integration_id": self.integration_id,
            "connector_id": self.connector_id,
            "type": self.type,
            "data": self.data,
            "timestamp": self.timestamp,
            "provider_event_id": self.provider_event_id,
        }


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

class EventSink(ABC):
    """Receives events for the downstream consumer."""

    @abstractmethod
    async def deliver(self, event: HandoffEvent) -> None: ...


class QueueEventSink(EventSink):
    """Buffers events on an asyncio.Queue for an in-process consumer."""

    def __init__(self, maxsize: int = 0):
        self.queue: asyncio.Queue[HandoffEvent] = asyncio.Queue(maxsize=maxsize)

    async def deliver(self, event: HandoffEvent) -> None:
        await self.queue.put(event)
        logger.debug(f"[handoff] Queued {event.type} for integration {event.integration_id}")

    def drain_nowait(self) -> list[HandoffEvent]:
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events


# ---------------------------------------------------------------------------
# Sync item processing
# ---------------------------------------------------------------------------

class ItemOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"


class SyncItemProcessor(ABC):
    """Applies one synced item downstream. Raising marks only that item failed."""

    @abstractmethod
    async def process(self, integration: Integration, item: dict[str, Any]) -> ItemOutcome: ...


class SinkItemProcessor(SyncItemProcessor):
    """Maps the item with the integration's field mappings and delivers it to a sink.

    Items whose provider id was recently delivered for the same integration
    are reported as updates. The most recent *max_seen* ids are remembered;
    older ones fall out and report as creates again.
    """

    def __init__(self, sink: EventSink, max_seen: int = 10_000):
        self.sink = sink
        self.max_seen = max_seen
        self._seen: OrderedDict[tuple[str, str], None] = OrderedDict()

    async def process(self, integration: Integration, item: dict[str, Any]) -> ItemOutcome:
        data = dict(item)
        mappings = parse_mappings(integration.config.get("field_mappings"))
        if mappings:
            data["mapped"] = apply_field_mappings(item, mappings)

        item_id = item.get("id")
        await self.sink.deliver(
            HandoffEvent(
                tenant_id=integration.tenant_id,
                integration_id=integration.id,
                connector_id=integration.connector_id,
                type=f"{integration.connector_id}.item.synced",
                data=data,
                timestamp=utcnow().isoformat(),
                provider_event_id=str(item_id) if item_id is not None else None,
            )
        )

        if item_id is None:
            return ItemOutcome.CREATED
        key = (integration.id, str(item_id))
        if key in self._seen:
            self._seen.move_to_end(key)
            return ItemOutcome.UPDATED
        self._seen[key] = None
        if len(self._seen) > self.max_seen:
            self._seen.popitem(last=False)
        return ItemOutcome.CREATED
