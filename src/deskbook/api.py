from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from functools import lru_cache
from http import HTTPStatus
from typing import Any, Literal

import boto3
from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.metrics import Metrics, MetricUnit
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from deskbook.config import get_settings
from deskbook.dal import DynamoLedger
from deskbook.exceptions import (
    AlreadyCancelled,
    BookingError,
    BookingNotFound,
    ConstraintViolation,
    Forbidden,
    InPast,
    InvalidInterval,
    SpaceConflict,
    SpaceUnavailable,
    TooLate,
    UserConflict,
)
from deskbook.models import (
    PAGE_LIMIT_DEFAULT,
    PAGE_LIMIT_MAX,
    Booking,
    BookingCreate,
    BookingFilters,
    BookingRequest,
    BookingStatus,
    Interval,
    SpaceAvailability,
    SpaceSchedule,
)
from deskbook.service import BookingService
from deskbook.spaces import DynamoSpaceDirectory

logger = Logger()
tracer = Tracer()
metrics = Metrics(namespace="DeskBooking")

app = FastAPI(title="Desk Booking API", version="0.1.0")

_STATUS_BY_ERROR: dict[type[BookingError], HTTPStatus] = {
    InvalidInterval: HTTPStatus.UNPROCESSABLE_ENTITY,
    InPast: HTTPStatus.UNPROCESSABLE_ENTITY,
    SpaceUnavailable: HTTPStatus.NOT_FOUND,
    ConstraintViolation: HTTPStatus.CONFLICT,
    SpaceConflict: HTTPStatus.CONFLICT,
    UserConflict: HTTPStatus.CONFLICT,
    BookingNotFound: HTTPStatus.NOT_FOUND,
    Forbidden: HTTPStatus.FORBIDDEN,
    AlreadyCancelled: HTTPStatus.CONFLICT,
    TooLate: HTTPStatus.CONFLICT,
}


@dataclass(frozen=True)
class Caller:
    """Identity forwarded by the upstream authorizer."""

    user_id: str
    is_admin: bool = False


@lru_cache
def get_service() -> BookingService:
    settings = get_settings()
    resource = boto3.resource("dynamodb")
    return BookingService(
        ledger=DynamoLedger.from_settings(settings, resource),
        spaces=DynamoSpaceDirectory(resource.Table(settings.spaces_table_name)),
        business_hours=settings.business_hours,
        tz=settings.tz,
    )


def current_caller(
    x_user_id: str | None = Header(default=None),
    x_user_admin: bool = Header(default=False),
) -> Caller:
    if not x_user_id:
        raise HTTPException(status_code=HTTPStatus.UNAUTHORIZED, detail="Missing caller identity")
    return Caller(user_id=x_user_id, is_admin=x_user_admin)


def admin_caller(caller: Caller = Depends(current_caller)) -> Caller:
    if not caller.is_admin:
        raise HTTPException(status_code=HTTPStatus.FORBIDDEN, detail="Admin access required")
    return caller


def _status_for(exc: BookingError) -> HTTPStatus:
    for cls in type(exc).__mro__:
        if cls in _STATUS_BY_ERROR:
            return _STATUS_BY_ERROR[cls]
    return HTTPStatus.BAD_REQUEST


@app.exception_handler(BookingError)
def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    body: dict[str, Any] = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, SpaceConflict) and exc.conflicting is not None:
        body["conflicting_booking"] = {
            "start_time": exc.conflicting.start.isoformat(),
            "end_time": exc.conflicting.end.isoformat(),
        }
    return JSONResponse(status_code=_status_for(exc), content=body)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@tracer.capture_method
@app.post("/bookings", response_model=Booking, status_code=201)
def create_booking(
    payload: BookingCreate,
    caller: Caller = Depends(current_caller),
    service: BookingService = Depends(get_service),
) -> Booking:
    request = BookingRequest(user_id=caller.user_id, **payload.model_dump())
    try:
        booking = service.request_booking(request)
    except BookingError as exc:
        metrics.add_metric(name="BookingRejected", value=1, unit=MetricUnit.Count)
        logger.info("Create booking rejected", extra={"code": exc.code})
        raise
    metrics.add_metric(name="BookingCreated", value=1, unit=MetricUnit.Count)
    return booking


@tracer.capture_method
@app.get("/bookings/{booking_id}", response_model=Booking)
def get_booking(
    booking_id: str,
    caller: Caller = Depends(current_caller),
    service: BookingService = Depends(get_service),
) -> Booking:
    return service.get_booking(booking_id, caller.user_id, caller.is_admin)


@tracer.capture_method
@app.post("/bookings/{booking_id}/cancel", response_model=Booking)
def cancel_booking(
    booking_id: str,
    caller: Caller = Depends(current_caller),
    service: BookingService = Depends(get_service),
) -> Booking:
    booking = service.cancel_booking(booking_id, caller.user_id, caller.is_admin)
    metrics.add_metric(name="BookingCancelled", value=1, unit=MetricUnit.Count)
    return booking


@tracer.capture_method
@app.get("/users/me/bookings", response_model=list[Booking])
def my_bookings(
    status: Literal["confirmed", "cancelled", "all"] = "confirmed",
    limit: int = Query(default=PAGE_LIMIT_DEFAULT, ge=1, le=PAGE_LIMIT_MAX),
    offset: int = Query(default=0, ge=0),
    caller: Caller = Depends(current_caller),
    service: BookingService = Depends(get_service),
) -> list[Booking]:
    wanted: BookingStatus | None = None if status == "all" else status
    return service.my_bookings(caller.user_id, wanted, limit=limit, offset=offset)


@tracer.capture_method
@app.get("/bookings", response_model=list[Booking])
def list_bookings(
    status: BookingStatus | None = None,
    space_id: str | None = None,
    user_id: str | None = None,
    start_from: datetime | None = None,
    start_to: datetime | None = None,
    limit: int = Query(default=PAGE_LIMIT_DEFAULT, ge=1, le=PAGE_LIMIT_MAX),
    offset: int = Query(default=0, ge=0),
    _: Caller = Depends(admin_caller),
    service: BookingService = Depends(get_service),
) -> list[Booking]:
    filters = BookingFilters(
        status=status,
        space_id=space_id,
        user_id=user_id,
        start_from=start_from,
        start_to=start_to,
        limit=limit,
        offset=offset,
    )
    return service.admin_bookings(filters)


@tracer.capture_method
@app.get("/spaces/{space_id}/availability", response_model=SpaceSchedule)
def space_availability(
    space_id: str,
    day: date = Query(alias="date"),
    duration: int = Query(default=1, ge=1, le=24),
    _: Caller = Depends(current_caller),
    service: BookingService = Depends(get_service),
) -> SpaceSchedule:
    return service.free_slots(space_id, day, duration)


@tracer.capture_method
@app.get("/floors/{floor_id}/spaces", response_model=list[SpaceAvailability])
def floor_spaces(
    floor_id: str,
    start_time: datetime,
    end_time: datetime,
    _: Caller = Depends(current_caller),
    service: BookingService = Depends(get_service),
) -> list[SpaceAvailability]:
    return service.floor_availability(floor_id, Interval(start=start_time, end=end_time))
