from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Any, Protocol, cast

from aws_lambda_powertools import Logger

if TYPE_CHECKING:
    from mypy_boto3_dynamodb.service_resource import Table as DynamoDBTable
else:
    DynamoDBTable = Any  # type: ignore[assignment]

from .exceptions import SpaceNotFound
from .models import Space

logger = Logger()

FLOOR_INDEX = "floor_id_index"


class SpaceDirectory(Protocol):
    """Read side of the space catalogue maintained by the admin CRUD layer."""

    def get_space(self, space_id: str) -> Space: ...

    def list_by_floor(self, floor_id: str) -> list[Space]: ...


class InMemorySpaceDirectory:
    def __init__(self, spaces: Iterable[Space] = ()) -> None:
        self._spaces: dict[str, Space] = {s.space_id: s for s in spaces}

    def add(self, space: Space) -> None:
        self._spaces[space.space_id] = space

    def get_space(self, space_id: str) -> Space:
        try:
            return self._spaces[space_id]
        except KeyError as exc:
            raise SpaceNotFound(space_id) from exc

    def list_by_floor(self, floor_id: str) -> list[Space]:
        return sorted(
            (s for s in self._spaces.values() if s.floor_id == floor_id),
            key=lambda s: (s.name, s.space_id),
        )


class DynamoSpaceDirectory:
    def __init__(self, table: DynamoDBTable) -> None:
        self._table = table

    def get_space(self, space_id: str) -> Space:
        resp = cast(dict[str, Any], self._table.get_item(Key={"space_id": space_id}))
        item = resp.get("Item")
        if not isinstance(item, dict):
            raise SpaceNotFound(space_id)
        return _to_model(item)

    def list_by_floor(self, floor_id: str) -> list[Space]:
        kwargs: dict[str, Any] = {
            "IndexName": FLOOR_INDEX,
            "KeyConditionExpression": "#k = :k",
            "ExpressionAttributeNames": {"#k": "floor_id"},
            "ExpressionAttributeValues": {":k": floor_id},
        }
        items: list[dict[str, Any]] = []
        while True:
            resp = cast(dict[str, Any], self._table.query(**kwargs))
            items.extend(it for it in resp.get("Items", []) if isinstance(it, dict))
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                break
            kwargs["ExclusiveStartKey"] = last_key
        logger.debug("Loaded floor spaces", extra={"floor_id": floor_id, "count": len(items)})
        return sorted((_to_model(it) for it in items), key=lambda s: (s.name, s.space_id))


def _to_model(item: dict[str, Any]) -> Space:
    capacity = item.get("capacity")
    return Space(
        space_id=item["space_id"],
        floor_id=item["floor_id"],
        name=item["name"],
        space_type=item.get("space_type"),
        # DynamoDB numbers come back as Decimal
        capacity=int(capacity) if capacity is not None else None,
        features=list(item.get("features") or []),
        is_bookable=bool(item.get("is_bookable", True)),
        is_active=bool(item.get("is_active", True)),
    )
