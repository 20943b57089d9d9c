from __future__ import annotations

import json
from collections.abc import Iterator
from datetime import UTC, datetime
from http import HTTPStatus
from typing import Any

import pytest

from conftest import FakeClock
from deskbook.api import app, get_service
from deskbook.api_handler import lambda_handler
from deskbook.ledger import InMemoryLedger
from deskbook.models import Interval
from deskbook.service import BookingService
from deskbook.spaces import InMemorySpaceDirectory


def _http_v2_event(path: str, method: str = "GET", **extra: Any) -> dict[str, Any]:
    event = {
        "version": "2.0",
        "rawPath": path,
        "routeKey": f"{method} {path}",
        "rawQueryString": "",
        "headers": {"host": "example.com"},
        "requestContext": {"http": {"method": method, "path": path, "protocol": "HTTP/1.1"}},
        "isBase64Encoded": False,
    }
    event.update(extra)
    return event


@pytest.fixture()
def api_service(spaces: InMemorySpaceDirectory, clock: FakeClock) -> Iterator[BookingService]:
    svc = BookingService(ledger=InMemoryLedger(), spaces=spaces, clock=clock)
    app.dependency_overrides[get_service] = lambda: svc
    yield svc
    app.dependency_overrides.clear()


def test_lambda_handler_health_ok() -> None:
    event = _http_v2_event("/health", "GET")
    resp = lambda_handler(event, context={})  # type: ignore[arg-type]
    assert isinstance(resp, dict)
    assert resp.get("statusCode") == HTTPStatus.OK
    assert "ok" in resp.get("body", "")


def test_lambda_handler_forwards_authorizer_identity(api_service: BookingService) -> None:
    event = _http_v2_event("/users/me/bookings", "GET")
    event["requestContext"]["authorizer"] = {"lambda": {"user_id": "u-1", "is_admin": False}}

    resp = lambda_handler(event, context={})  # type: ignore[arg-type]
    assert resp["statusCode"] == HTTPStatus.OK
    assert json.loads(resp["body"]) == []
    assert event["headers"]["x-user-id"] == "u-1"
    assert event["headers"]["x-user-admin"] == "false"


def test_lambda_handler_without_identity_is_unauthorized(api_service: BookingService) -> None:
    resp = lambda_handler(_http_v2_event("/users/me/bookings", "GET"), context={})  # type: ignore[arg-type]
    assert resp["statusCode"] == HTTPStatus.UNAUTHORIZED


def test_lambda_handler_replaces_client_identity_with_authorizer_claims(api_service: BookingService) -> None:
    owned = api_service.book(
        "u-owner",
        "desk-1",
        Interval(start=datetime(2030, 1, 2, 10, tzinfo=UTC), end=datetime(2030, 1, 2, 11, tzinfo=UTC)),
    )
    event = _http_v2_event(f"/bookings/{owned.booking_id}/cancel", "POST", body="")
    event["headers"].update({"x-user-id": "u-owner", "x-user-admin": "true"})
    event["requestContext"]["authorizer"] = {"lambda": {"user_id": "u-other", "is_admin": False}}

    resp = lambda_handler(event, context={})  # type: ignore[arg-type]
    assert resp["statusCode"] == HTTPStatus.FORBIDDEN
    assert api_service.ledger.get(owned.booking_id).status == "confirmed"


def test_lambda_handler_ignores_client_admin_flag(api_service: BookingService) -> None:
    event = _http_v2_event("/bookings", "GET")
    event["headers"]["X-User-Admin"] = "true"
    event["requestContext"]["authorizer"] = {"lambda": {"user_id": "u-1"}}

    resp = lambda_handler(event, context={})  # type: ignore[arg-type]
    assert resp["statusCode"] == HTTPStatus.FORBIDDEN


def test_lambda_handler_accepts_admin_claim(api_service: BookingService) -> None:
    event = _http_v2_event("/bookings", "GET")
    event["requestContext"]["authorizer"] = {"lambda": {"user_id": "ops", "is_admin": True}}

    resp = lambda_handler(event, context={})  # type: ignore[arg-type]
    assert resp["statusCode"] == HTTPStatus.OK


def test_lambda_handler_drops_client_identity_without_authorizer(api_service: BookingService) -> None:
    event = _http_v2_event("/users/me/bookings", "GET")
    event["headers"].update({"X-User-Id": "u-1", "x-user-admin": "true"})

    resp = lambda_handler(event, context={})  # type: ignore[arg-type]
    assert resp["statusCode"] == HTTPStatus.UNAUTHORIZED
