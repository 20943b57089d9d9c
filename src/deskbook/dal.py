from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypedDict, cast

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    # Only for static type checking; not imported at runtime
    from mypy_boto3_dynamodb.client import DynamoDBClient
    from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource
    from mypy_boto3_dynamodb.service_resource import Table as DynamoDBTable
else:
    # Fallbacks to satisfy annotations at runtime
    DynamoDBClient = Any  # type: ignore[assignment]
    DynamoDBServiceResource = Any  # type: ignore[assignment]
    DynamoDBTable = Any  # type: ignore[assignment]

from .config import Settings
from .exceptions import AlreadyCancelled, BookingNotFound, ConstraintViolation
from .ledger import apply_filters, by_start
from .models import (
    CANCELLED,
    CONFIRMED,
    PAGE_LIMIT_DEFAULT,
    Booking,
    BookingFilters,
    BookingStatus,
    Interval,
    as_utc,
    overlaps,
)

logger = Logger()

SPACE_INDEX = "space_id_index"
USER_INDEX = "user_id_index"
TRANSACTION_CANCELLED = "TransactionCanceledException"


class BookingItem(TypedDict, total=False):
    booking_id: str
    user_id: str
    space_id: str
    start_time: str
    end_time: str
    status: str
    cancelled_at: str
    notes: str
    created_at: str
    updated_at: str


class CalendarEntry(TypedDict):
    booking_id: str
    start_time: str
    end_time: str


def _dt_to_iso(dt: datetime) -> str:
    # Fixed width so that string order matches time order in key conditions
    return as_utc(dt).isoformat(timespec="microseconds")


def _iso_to_dt(s: str) -> datetime:
    dt = datetime.fromisoformat(s)
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=UTC)


def _space_key(space_id: str) -> str:
    return f"space#{space_id}"


def _user_key(user_id: str) -> str:
    return f"user#{user_id}"


@dataclass(frozen=True)
class _Calendar:
    """Confirmed intervals of one space or one user, guarded by ``version``.

    A version of 0 means the document has not been written yet.
    """

    key: str
    version: int
    entries: tuple[CalendarEntry, ...]

    def first_overlap(self, interval: Interval) -> Interval | None:
        for entry in self.entries:
            booked = Interval(start=_iso_to_dt(entry["start_time"]), end=_iso_to_dt(entry["end_time"]))
            if overlaps(booked, interval):
                return booked
        return None

    def live_entries(self, cutoff: datetime) -> list[CalendarEntry]:
        """Entries still relevant for conflict checks; anything ended before ``cutoff`` is dropped."""
        cutoff_iso = _dt_to_iso(cutoff)
        return [e for e in self.entries if e["end_time"] > cutoff_iso]


class DynamoLedger:
    """Booking ledger backed by DynamoDB.

    Bookings live in one table, keyed by ``booking_id`` with ``space_id`` and
    ``user_id`` indexes. Conflict checks at commit time use a second table of
    calendar documents (one per space, one per user) that are written in the
    same transaction as the booking, each update conditioned on the version
    that was read. Two writers that read the same version cannot both commit.
    """

    def __init__(
        self,
        table: DynamoDBTable,
        calendar_table: DynamoDBTable,
        client: DynamoDBClient | None = None,
        commit_attempts: int = 3,
    ) -> None:
        if commit_attempts < 1:
            raise ValueError("commit_attempts must be at least 1")
        self._table = table
        self._calendars = calendar_table
        self._client = client if client is not None else table.meta.client
        self._commit_attempts = commit_attempts

    @classmethod
    def from_settings(cls, settings: Settings, resource: DynamoDBServiceResource | None = None) -> DynamoLedger:
        resource = resource if resource is not None else boto3.resource("dynamodb")
        return cls(
            table=resource.Table(settings.table_name),
            calendar_table=resource.Table(settings.calendar_table_name),
            client=resource.meta.client,
            commit_attempts=settings.commit_attempts,
        )

    # reads

    def get(self, booking_id: str, consistent: bool = False) -> Booking:
        resp = cast(
            dict[str, Any],
            self._table.get_item(Key={"booking_id": booking_id}, ConsistentRead=consistent),
        )
        item = resp.get("Item")
        if not isinstance(item, dict):
            raise BookingNotFound()
        return _to_model(cast(BookingItem, item))

    def find_overlapping(
        self, space_id: str, interval: Interval, status: BookingStatus | None = CONFIRMED
    ) -> list[Booking]:
        return self._query_overlapping(SPACE_INDEX, "space_id", space_id, interval, status)

    def find_overlapping_for_user(
        self, user_id: str, interval: Interval, status: BookingStatus | None = CONFIRMED
    ) -> list[Booking]:
        return self._query_overlapping(USER_INDEX, "user_id", user_id, interval, status)

    def list_by_user(
        self,
        user_id: str,
        status: BookingStatus | None = None,
        limit: int = PAGE_LIMIT_DEFAULT,
        offset: int = 0,
    ) -> list[Booking]:
        # The index returns newest start first, so reading stops once the page is covered
        wanted = offset + limit
        names = {"#k": "user_id"}
        values: dict[str, Any] = {":k": user_id}
        kwargs: dict[str, Any] = {
            "IndexName": USER_INDEX,
            "KeyConditionExpression": "#k = :k",
            "ScanIndexForward": False,
            "Limit": wanted,
        }
        if status is not None:
            names["#s"] = "status"
            values[":status"] = status
            kwargs["FilterExpression"] = "#s = :status"
        items = self._query(
            ExpressionAttributeNames=names, ExpressionAttributeValues=values, stop_after=wanted, **kwargs
        )
        newest = by_start((_to_model(it) for it in items), newest_first=True)
        return newest[offset:wanted]

    def list_by_space(
        self, space_id: str, window: Interval, status: BookingStatus | None = None
    ) -> list[Booking]:
        return self._query_overlapping(SPACE_INDEX, "space_id", space_id, window, status)

    def list_all(self, filters: BookingFilters) -> list[Booking]:
        clauses: list[str] = []
        names: dict[str, str] = {}
        values: dict[str, Any] = {}

        def add(attr: str, op: str, placeholder: str, value: Any) -> None:
            names[f"#{attr}"] = attr
            values[placeholder] = value
            clauses.append(f"#{attr} {op} {placeholder}")

        if filters.status is not None:
            add("status", "=", ":status", filters.status)
        if filters.space_id is not None:
            add("space_id", "=", ":space_id", filters.space_id)
        if filters.user_id is not None:
            add("user_id", "=", ":user_id", filters.user_id)
        if filters.start_from is not None:
            add("start_time", ">=", ":start_from", _dt_to_iso(filters.start_from))
        if filters.start_to is not None:
            add("start_time", "<=", ":start_to", _dt_to_iso(filters.start_to))

        kwargs: dict[str, Any] = {}
        if clauses:
            kwargs = {
                "FilterExpression": " AND ".join(clauses),
                "ExpressionAttributeNames": names,
                "ExpressionAttributeValues": values,
            }
        items: list[BookingItem] = []
        while True:
            resp = cast(dict[str, Any], self._table.scan(**kwargs))
            items.extend(cast(BookingItem, it) for it in resp.get("Items", []) if isinstance(it, dict))
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                break
            kwargs["ExclusiveStartKey"] = last_key
        # Scan order is arbitrary, so ordering and paging happen here
        return apply_filters((_to_model(it) for it in items), filters)

    def _query_overlapping(
        self,
        index: str,
        attr: str,
        value: str,
        interval: Interval,
        status: BookingStatus | None,
    ) -> list[Booking]:
        names = {"#k": attr, "#st": "start_time", "#en": "end_time"}
        values: dict[str, Any] = {
            ":k": value,
            ":start": _dt_to_iso(interval.start),
            ":end": _dt_to_iso(interval.end),
        }
        filter_expr = "#en > :start"
        if status is not None:
            names["#s"] = "status"
            values[":status"] = status
            filter_expr += " AND #s = :status"
        items = self._query(
            IndexName=index,
            KeyConditionExpression="#k = :k AND #st < :end",
            FilterExpression=filter_expr,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
        )
        return by_start(_to_model(it) for it in items)

    def _query(self, stop_after: int | None = None, **kwargs: Any) -> list[BookingItem]:
        items: list[BookingItem] = []
        while True:
            resp = cast(dict[str, Any], self._table.query(**kwargs))
            items.extend(cast(BookingItem, it) for it in resp.get("Items", []) if isinstance(it, dict))
            last_key = resp.get("LastEvaluatedKey")
            if not last_key or (stop_after is not None and len(items) >= stop_after):
                return items
            kwargs["ExclusiveStartKey"] = last_key

    def _read_calendar(self, key: str) -> _Calendar:
        resp = cast(
            dict[str, Any],
            self._calendars.get_item(Key={"calendar_key": key}, ConsistentRead=True),
        )
        item = resp.get("Item")
        if not isinstance(item, dict):
            return _Calendar(key=key, version=0, entries=())
        entries = tuple(
            CalendarEntry(
                booking_id=str(e["booking_id"]),
                start_time=str(e["start_time"]),
                end_time=str(e["end_time"]),
            )
            for e in item.get("entries", [])
        )
        # DynamoDB numbers come back as Decimal
        return _Calendar(key=key, version=int(item.get("version", 0)), entries=entries)

    # writes

    def insert(self, booking: Booking) -> Booking:
        interval = booking.interval
        entry = CalendarEntry(
            booking_id=booking.booking_id,
            start_time=_dt_to_iso(booking.start_time),
            end_time=_dt_to_iso(booking.end_time),
        )
        for attempt in range(1, self._commit_attempts + 1):
            space_cal = self._read_calendar(_space_key(booking.space_id))
            user_cal = self._read_calendar(_user_key(booking.user_id))
            for calendar in (space_cal, user_cal):
                clash = calendar.first_overlap(interval)
                if clash is not None:
                    logger.info(
                        "Insert rejected at commit",
                        extra={"booking_id": booking.booking_id, "calendar": calendar.key},
                    )
                    raise ConstraintViolation(conflicting=clash)

            cutoff = booking.created_at
            try:
                self._client.transact_write_items(
                    TransactItems=[
                        {
                            "Put": {
                                "TableName": self._table.name,
                                "Item": cast(dict[str, Any], _to_item(booking)),
                                "ConditionExpression": "attribute_not_exists(booking_id)",
                            }
                        },
                        self._calendar_update(space_cal, [*space_cal.live_entries(cutoff), entry]),
                        self._calendar_update(user_cal, [*user_cal.live_entries(cutoff), entry]),
                    ]
                )
            except ClientError as exc:
                if not _is_cancelled_transaction(exc):
                    raise
                if _failed_at(exc, 0):
                    raise ValueError(f"Duplicate booking id {booking.booking_id}") from exc
                logger.warning(
                    "Calendar changed during commit, retrying",
                    extra={"booking_id": booking.booking_id, "attempt": attempt},
                )
                continue

            logger.info(
                "Booking committed",
                extra={"booking_id": booking.booking_id, "space_id": booking.space_id},
            )
            return booking

        raise ConstraintViolation("Booking could not be committed against concurrent writers")

    def cancel(self, booking_id: str, at: datetime) -> Booking:
        at = as_utc(at)
        at_iso = _dt_to_iso(at)
        attempt = 0
        while True:
            attempt += 1
            current = self.get(booking_id, consistent=True)
            if current.status == CANCELLED:
                raise AlreadyCancelled()

            space_cal = self._read_calendar(_space_key(current.space_id))
            user_cal = self._read_calendar(_user_key(current.user_id))
            try:
                self._client.transact_write_items(
                    TransactItems=[
                        {
                            "Update": {
                                "TableName": self._table.name,
                                "Key": {"booking_id": booking_id},
                                "UpdateExpression": "SET #s = :cancelled, #ca = :at, #ua = :at",
                                "ConditionExpression": "#s = :confirmed",
                                "ExpressionAttributeNames": {
                                    "#s": "status",
                                    "#ca": "cancelled_at",
                                    "#ua": "updated_at",
                                },
                                "ExpressionAttributeValues": {
                                    ":cancelled": CANCELLED,
                                    ":confirmed": CONFIRMED,
                                    ":at": at_iso,
                                },
                            }
                        },
                        self._calendar_update(space_cal, _without(space_cal.live_entries(at), booking_id)),
                        self._calendar_update(user_cal, _without(user_cal.live_entries(at), booking_id)),
                    ]
                )
            except ClientError as exc:
                if not _is_cancelled_transaction(exc):
                    raise
                if _failed_at(exc, 0):
                    raise AlreadyCancelled() from exc
                if attempt == self._commit_attempts:
                    logger.error("Cancel kept losing to concurrent writers", extra={"booking_id": booking_id})
                    raise
                logger.warning(
                    "Calendar changed during cancel, retrying",
                    extra={"booking_id": booking_id, "attempt": attempt},
                )
                continue

            logger.info("Booking cancelled", extra={"booking_id": booking_id})
            return current.model_copy(update={"status": CANCELLED, "cancelled_at": at, "updated_at": at})

    def _calendar_update(self, calendar: _Calendar, entries: list[CalendarEntry]) -> dict[str, Any]:
        names = {"#e": "entries", "#v": "version"}
        values: dict[str, Any] = {":entries": entries, ":next": calendar.version + 1}
        if calendar.version == 0:
            condition = "attribute_not_exists(calendar_key)"
        else:
            condition = "#v = :expected"
            values[":expected"] = calendar.version
        return {
            "Update": {
                "TableName": self._calendars.name,
                "Key": {"calendar_key": calendar.key},
                "UpdateExpression": "SET #e = :entries, #v = :next",
                "ConditionExpression": condition,
                "ExpressionAttributeNames": names,
                "ExpressionAttributeValues": values,
            }
        }


def _without(entries: list[CalendarEntry], booking_id: str) -> list[CalendarEntry]:
    return [e for e in entries if e["booking_id"] != booking_id]


def _is_cancelled_transaction(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == TRANSACTION_CANCELLED


def _failed_at(exc: ClientError, position: int) -> bool:
    reasons = cast(list[dict[str, Any]], exc.response.get("CancellationReasons") or [])
    return len(reasons) > position and reasons[position].get("Code") == "ConditionalCheckFailed"


def _to_item(booking: Booking) -> BookingItem:
    item: BookingItem = {
        "booking_id": booking.booking_id,
        "user_id": booking.user_id,
        "space_id": booking.space_id,
        "start_time": _dt_to_iso(booking.start_time),
        "end_time": _dt_to_iso(booking.end_time),
        "status": booking.status,
        "created_at": _dt_to_iso(booking.created_at),
        "updated_at": _dt_to_iso(booking.updated_at),
    }
    if booking.notes is not None:
        item["notes"] = booking.notes
    if booking.cancelled_at is not None:
        item["cancelled_at"] = _dt_to_iso(booking.cancelled_at)
    return item


def _to_model(item: BookingItem) -> Booking:
    cancelled_at = item.get("cancelled_at")
    return Booking(
        booking_id=item["booking_id"],
        user_id=item["user_id"],
        space_id=item["space_id"],
        start_time=_iso_to_dt(item["start_time"]),
        end_time=_iso_to_dt(item["end_time"]),
        status=item.get("status", CONFIRMED),  # type: ignore[arg-type]
        cancelled_at=_iso_to_dt(cancelled_at) if cancelled_at else None,
        notes=item.get("notes"),
        created_at=_iso_to_dt(item["created_at"]),
        updated_at=_iso_to_dt(item["updated_at"]),
    )
