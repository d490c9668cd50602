import asyncio
import copy
import logging
from typing import Any, Dict, List, Optional

from .base import DocumentStore, Operation, Record, apply_query, set_field
from ..errors import StoreError

logger = logging.getLogger(__name__)


class InMemoryDocumentStore(DocumentStore):
    """
    Process-local store. Records are copied on the way in and out so callers
    never share mutable state with the store. Insertion order is preserved,
    which keeps ties stable when ordering by timestamp.
    """

    def __init__(self):
        self._collections: Dict[str, Dict[str, Record]] = {}
        self._lock = asyncio.Lock()

    async def get(self, collection: str, record_id: str) -> Optional[Record]:
        record = self._collections.get(collection, {}).get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def set(self, collection: str, record_id: str, data: Record) -> None:
        async with self._lock:
            self._collections.setdefault(collection, {})[record_id] = copy.deepcopy({**data, "id": record_id})

    async def update(self, collection: str, record_id: str, fields: Record) -> None:
        async with self._lock:
            record = self._collections.get(collection, {}).get(record_id)
            if record is None:
                raise StoreError(f"Record '{record_id}' not found in '{collection}'")
            for path, value in fields.items():
                set_field(record, path, copy.deepcopy(value))

    async def delete(self, collection: str, record_id: str) -> None:
        async with self._lock:
            self._collections.get(collection, {}).pop(record_id, None)

    async def query(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Record]:
        records = list(self._collections.get(collection, {}).values())
        return copy.deepcopy(apply_query(records, filters, order_by, descending, limit))

    async def _commit(self, operations: List[Operation]) -> None:
        async with self._lock:
            # Apply to a copy of the touched collections, swap in only if every write succeeded
            touched = {collection for _, collection, _, _ in operations}
            staged = {name: copy.deepcopy(self._collections.get(name, {})) for name in touched}
            for kind, collection, record_id, data in operations:
                records = staged[collection]
                if kind == "set":
                    records[record_id] = copy.deepcopy(data)
                elif kind == "update":
                    if record_id not in records:
                        raise StoreError(f"Batch update failed: '{record_id}' not found in '{collection}'")
                    for path, value in data.items():
                        set_field(records[record_id], path, copy.deepcopy(value))
                elif kind == "delete":
                    records.pop(record_id, None)
                else:
                    raise StoreError(f"Unknown batch operation '{kind}'")
            self._collections.update(staged)
        logger.debug(f"Committed batch of {len(operations)} operations")
