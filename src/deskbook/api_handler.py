from __future__ import annotations

from typing import Any

from aws_lambda_powertools import Logger
from mangum import Mangum
from mangum.types import LambdaContext

from deskbook.api import app

logger = Logger()
handler = Mangum(app)

IDENTITY_HEADERS = ("x-user-id", "x-user-admin")


def _authorizer_claims(request_context: dict[str, Any]) -> dict[str, Any]:
    authorizer = request_context.get("authorizer") or {}
    # HTTP API nests Lambda authorizer context under "lambda"; REST API does not
    return authorizer.get("lambda") or authorizer


def _strip_identity(headers: dict[str, Any] | None) -> dict[str, Any]:
    return {k: v for k, v in (headers or {}).items() if k.lower() not in IDENTITY_HEADERS}


def forward_identity(event: dict[str, Any]) -> None:
    """Replace any client-sent identity headers with the authorizer's claims.

    Without claims the identity headers are removed, so the API answers 401.
    """
    claims = _authorizer_claims(event.get("requestContext") or {})
    headers = _strip_identity(event.get("headers"))
    if "multiValueHeaders" in event:
        event["multiValueHeaders"] = _strip_identity(event["multiValueHeaders"])
    user_id = claims.get("user_id")
    if user_id:
        is_admin = str(claims.get("is_admin", "")).lower() == "true"
        headers["x-user-id"] = str(user_id)
        headers["x-user-admin"] = "true" if is_admin else "false"
        if "multiValueHeaders" in event:
            event["multiValueHeaders"]["x-user-id"] = [headers["x-user-id"]]
            event["multiValueHeaders"]["x-user-admin"] = [headers["x-user-admin"]]
    event["headers"] = headers


def lambda_handler(event: dict[str, Any], context: LambdaContext) -> Any:
    # Normalize minimal API Gateway HTTP API v2.0 events for local/tests
    if isinstance(event, dict) and event.get("version") == "2.0":
        request_context = event.setdefault("requestContext", {})
        http_ctx = request_context.setdefault("http", {})
        http_ctx.setdefault("sourceIp", "127.0.0.1")
        http_ctx.setdefault("userAgent", "pytest")
        request_context.setdefault("stage", "$default")

    if isinstance(event, dict):
        forward_identity(event)

    logger.debug("Dispatching request", extra={"route_key": event.get("routeKey")})
    return handler(event, context)
