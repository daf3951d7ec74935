"""FastAPI dependencies."""

from fastapi import Request

from core.integrations.services import ConnectorServices


def get_services(request: Request) -> ConnectorServices:
    """The engine built at startup (or injected by create_app)."""
    return request.app.state.services
