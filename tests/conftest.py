from __future__ import annotations

import copy
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from typing import Any

import pytest
from botocore.exceptions import ClientError

from deskbook.dal import DynamoLedger
from deskbook.ledger import InMemoryLedger
from deskbook.models import Space
from deskbook.service import BookingService
from deskbook.spaces import InMemorySpaceDirectory

NOW = datetime(2030, 1, 1, 9, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


class FakeClient:
    """Just enough of the low-level DynamoDB client for transactional writes."""

    def __init__(self) -> None:
        self.tables: dict[str, FakeTable] = {}
        self.lock = threading.RLock()
        self.transact_calls = 0
        # called before each transaction is evaluated, to inject a concurrent writer
        self.before_transact: Callable[[int], None] | None = None

    def transact_write_items(self, TransactItems: list[dict[str, Any]]) -> dict[str, Any]:  # noqa NOSONAR
        with self.lock:
            self.transact_calls += 1
            if self.before_transact is not None:
                self.before_transact(self.transact_calls)
            reasons = []
            for op in TransactItems:
                kind, params = next(iter(op.items()))
                table = self.tables[params["TableName"]]
                key = params["Item"][table.key] if kind == "Put" else params["Key"][table.key]
                ok = _condition_holds(table.items.get(key), params)
                reasons.append({"Code": "None" if ok else "ConditionalCheckFailed"})
            if any(r["Code"] != "None" for r in reasons):
                raise ClientError(
                    {
                        "Error": {"Code": "TransactionCanceledException", "Message": "cancelled"},
                        "CancellationReasons": reasons,
                    },
                    "TransactWriteItems",
                )
            for op in TransactItems:
                kind, params = next(iter(op.items()))
                table = self.tables[params["TableName"]]
                if kind == "Put":
                    table.put_item(Item=params["Item"])
                else:
                    table.apply_update(params)
        return {}


def _condition_holds(item: dict[str, Any] | None, params: dict[str, Any]) -> bool:
    condition = params.get("ConditionExpression")
    if condition is None:
        return True
    if condition.startswith("attribute_not_exists"):
        return item is None
    names = params.get("ExpressionAttributeNames") or {}
    values = params.get("ExpressionAttributeValues") or {}
    left, right = [s.strip() for s in condition.split("=")]
    return item is not None and item.get(names.get(left, left)) == values[right]


class FakeTable:
    def __init__(self, name: str, key: str, client: FakeClient) -> None:
        self.name = name
        self.key = key
        self.items: dict[str, dict[str, Any]] = {}
        self.query_calls = 0
        self.meta = SimpleNamespace(client=client)
        self._lock = client.lock
        client.tables[name] = self

    def put_item(self, Item: dict[str, Any]) -> None:  # noqa NOSONAR
        with self._lock:
            self.items[Item[self.key]] = copy.deepcopy(Item)

    def get_item(self, Key: dict[str, Any], ConsistentRead: bool = False) -> dict[str, Any]:  # noqa NOSONAR
        with self._lock:
            item = self.items.get(Key[self.key])
            return {"Item": copy.deepcopy(item)} if item else {}

    def apply_update(self, params: dict[str, Any]) -> None:
        key = params["Key"][self.key]
        attrs = self.items.setdefault(key, {self.key: key})
        names = params.get("ExpressionAttributeNames") or {}
        values = params.get("ExpressionAttributeValues") or {}
        set_part = params["UpdateExpression"].split("SET", 1)[1]
        for assign in [s.strip() for s in set_part.split(",") if s.strip()]:
            name, val = [s.strip() for s in assign.split("=")]
            attrs[names.get(name, name)] = copy.deepcopy(values[val])

    def query(self, **kwargs: Any) -> dict[str, Any]:
        names = kwargs["ExpressionAttributeNames"]
        values = kwargs["ExpressionAttributeValues"]
        with self._lock:
            items = [it for it in self.items.values() if it.get(names["#k"]) == values[":k"]]
        self.query_calls += 1
        # index order, then Limit, then filters, as DynamoDB evaluates them
        items.sort(key=lambda it: (it.get("start_time", ""), it[self.key]), reverse=not kwargs.get("ScanIndexForward", True))
        if "ExclusiveStartKey" in kwargs:
            after = kwargs["ExclusiveStartKey"][self.key]
            position = next(i for i, it in enumerate(items) if it[self.key] == after)
            items = items[position + 1 :]
        last_key = None
        if "Limit" in kwargs and len(items) > kwargs["Limit"]:
            items = items[: kwargs["Limit"]]
            last_key = {self.key: items[-1][self.key]}
        if ":end" in values:
            items = [it for it in items if it["start_time"] < values[":end"] and it["end_time"] > values[":start"]]
        if ":status" in values:
            items = [it for it in items if it.get("status") == values[":status"]]
        resp: dict[str, Any] = {"Items": copy.deepcopy(items)}
        if last_key is not None:
            resp["LastEvaluatedKey"] = last_key
        return resp

    def scan(self, **kwargs: Any) -> dict[str, Any]:
        values = kwargs.get("ExpressionAttributeValues") or {}
        with self._lock:
            items = list(self.items.values())
        for attr in ("status", "space_id", "user_id"):
            if f":{attr}" in values:
                items = [it for it in items if it.get(attr) == values[f":{attr}"]]
        if ":start_from" in values:
            items = [it for it in items if it["start_time"] >= values[":start_from"]]
        if ":start_to" in values:
            items = [it for it in items if it["start_time"] <= values[":start_to"]]
        return {"Items": copy.deepcopy(items)}


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def spaces() -> InMemorySpaceDirectory:
    return InMemorySpaceDirectory(
        [
            Space(space_id="desk-1", floor_id="f1", name="Desk 1", space_type="desk", capacity=1),
            Space(space_id="desk-2", floor_id="f1", name="Desk 2", space_type="desk", capacity=1),
            Space(space_id="room-a", floor_id="f1", name="Alpha", space_type="meeting_room", capacity=8),
            Space(space_id="desk-off", floor_id="f1", name="Desk 9", is_active=False),
            Space(space_id="desk-locked", floor_id="f1", name="Desk 8", is_bookable=False),
            Space(space_id="desk-3", floor_id="f2", name="Desk 3"),
        ]
    )


@pytest.fixture()
def fake_client() -> FakeClient:
    return FakeClient()


@pytest.fixture()
def dynamo_ledger(fake_client: FakeClient) -> DynamoLedger:
    return DynamoLedger(
        table=FakeTable("bookings", "booking_id", fake_client),
        calendar_table=FakeTable("booking_calendars", "calendar_key", fake_client),
        client=fake_client,  # type: ignore[arg-type]
    )


@pytest.fixture(params=["memory", "dynamodb"])
def ledger(request: pytest.FixtureRequest, fake_client: FakeClient) -> Any:
    if request.param == "memory":
        return InMemoryLedger()
    return request.getfixturevalue("dynamo_ledger")


@pytest.fixture()
def service(ledger: Any, spaces: InMemorySpaceDirectory, clock: FakeClock) -> BookingService:
    return BookingService(ledger=ledger, spaces=spaces, clock=clock)
