from __future__ import annotations

import hmac

from fastapi import Header, Request

from ..config import Settings
from ..core.broker import Broker
from ..core.exceptions import UnauthorizedError
from ..webhooks.publisher import WebhookPublisher


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_broker(request: Request) -> Broker:
    return request.app.state.broker


def get_webhooks(request: Request) -> WebhookPublisher:
    return request.app.state.webhooks


def require_write_token(request: Request, x_broker_token: str | None = Header(default=None)) -> None:
    """Guard publish/record/tag endpoints when a write token is configured."""
    expected = request.app.state.settings.BROKER_WRITE_TOKEN
    if not expected:
        return
    if not x_broker_token or not hmac.compare_digest(x_broker_token, expected):
        raise UnauthorizedError("Missing or invalid X-Broker-Token header")
