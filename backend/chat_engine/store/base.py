"""
Document store interface used for chats, messages, memory records and the
knowledge base.

Collections are addressed by path (e.g. "chats/<chat_id>/messages"); records
are plain JSON dicts that always carry their own "id". Field names in filters,
ordering and updates may be dotted ("processing_metadata.progress").
"""
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

Record = Dict[str, Any]
Operation = Tuple[str, str, str, Optional[Record]] # (kind, collection, record_id, data)

_MISSING = object()


def get_field(record: Record, path: str, default: Any = None) -> Any:
    value: Any = record
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return default
        value = value[part]
    return value


def set_field(record: Record, path: str, value: Any) -> None:
    parts = path.split(".")
    target = record
    for part in parts[:-1]:
        if not isinstance(target.get(part), dict):
            target[part] = {}
        target = target[part]
    target[parts[-1]] = value


def apply_query(
    records: List[Record],
    filters: Optional[Dict[str, Any]] = None,
    order_by: Optional[str] = None,
    descending: bool = False,
    limit: Optional[int] = None,
) -> List[Record]:
    """
    Equality filters, a sort on one field, then a limit.

    Ties keep insertion order ascending and newest-first when descending.
    """
    matched = [
        r for r in records
        if all(get_field(r, field, _MISSING) == value for field, value in (filters or {}).items())
    ]
    if order_by:
        matched.sort(key=lambda r: _sort_key(get_field(r, order_by)))
        if descending:
            matched.reverse()
    if limit is not None:
        matched = matched[:limit]
    return matched


def _sort_key(value: Any) -> Tuple[int, Any]:
    # Missing values sort first in ascending order
    return (0, "") if value is None else (1, value)


class WriteBatch:
    """Collects writes and applies them all-or-nothing on commit()."""

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._operations: List[Operation] = []

    def set(self, collection: str, record_id: str, data: Record) -> "WriteBatch":
        self._operations.append(("set", collection, record_id, {**data, "id": record_id}))
        return self

    def update(self, collection: str, record_id: str, fields: Record) -> "WriteBatch":
        self._operations.append(("update", collection, record_id, dict(fields)))
        return self

    def delete(self, collection: str, record_id: str) -> "WriteBatch":
        self._operations.append(("delete", collection, record_id, None))
        return self

    def __len__(self) -> int:
        return len(self._operations)

    async def commit(self) -> None:
        operations, self._operations = self._operations, []
        if operations:
            await self._store._commit(operations)


class DocumentStore(ABC):

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex

    @abstractmethod
    async def get(self, collection: str, record_id: str) -> Optional[Record]:
        ...

    @abstractmethod
    async def set(self, collection: str, record_id: str, data: Record) -> None:
        """Creates or replaces a record."""

    @abstractmethod
    async def update(self, collection: str, record_id: str, fields: Record) -> None:
        """Merges (dotted) fields into an existing record; StoreError if it does not exist."""

    @abstractmethod
    async def delete(self, collection: str, record_id: str) -> None:
        """Removes a record; deleting a missing record is not an error."""

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Record]:
        ...

    @abstractmethod
    async def _commit(self, operations: List[Operation]) -> None:
        ...

    async def add(self, collection: str, data: Record) -> str:
        """Stores a new record under a generated id and returns the id."""
        record_id = data.get("id") or self.new_id()
        await self.set(collection, record_id, {**data, "id": record_id})
        return record_id

    def batch(self) -> WriteBatch:
        return WriteBatch(self)
