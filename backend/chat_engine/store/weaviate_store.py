import asyncio
import copy
import json
import logging
from functools import partial
from typing import Any, Dict, List, Optional, Tuple

import weaviate
import weaviate.classes as wvc # New way to import classes in v4
from weaviate.classes.init import AdditionalConfig, Timeout
from weaviate.exceptions import WeaviateBaseError
from weaviate.util import generate_uuid5

from .base import DocumentStore, Operation, Record, apply_query, set_field
from ..config import settings
from ..errors import StoreError

logger = logging.getLogger(__name__)

# Upper bound on objects fetched per collection path; filtering and ordering happen in Python
QUERY_FETCH_LIMIT = 10000

_client = None

def get_weaviate_client() -> Optional[weaviate.WeaviateClient]:
    """Initializes and returns a Weaviate client instance (None if not configured)."""
    global _client
    if _client is not None:
        return _client

    if not settings.WEAVIATE_URL or not settings.WEAVIATE_API_KEY:
        logger.warning("Weaviate connection skipped: URL or API Key not configured.")
        return None

    logger.info(f"Connecting to Weaviate at {settings.WEAVIATE_URL}...")
    client = weaviate.connect_to_weaviate_cloud(
        cluster_url=settings.WEAVIATE_URL,
        auth_credentials=weaviate.auth.AuthApiKey(settings.WEAVIATE_API_KEY),
        additional_config=AdditionalConfig(
                                timeout=Timeout(init=30, query=60, insert=120)  # Values in seconds
                            )
    )
    _client = client
    logger.info("Weaviate client connected successfully.")
    return _client

def ensure_records_schema(client: weaviate.WeaviateClient, class_name: str) -> None:
    """Ensures the records class exists in Weaviate."""
    if client.collections.exists(class_name):
        return
    logger.info(f"Creating Weaviate class: {class_name}")
    client.collections.create(
        name=class_name,
        properties=[
            # Field tokenization so equality on a path is an exact match
            wvc.config.Property(
                name="record_path", data_type=wvc.config.DataType.TEXT, tokenization=wvc.config.Tokenization.FIELD
            ),
            wvc.config.Property(
                name="record_id", data_type=wvc.config.DataType.TEXT, tokenization=wvc.config.Tokenization.FIELD
            ),
            wvc.config.Property(name="data_json", data_type=wvc.config.DataType.TEXT), # Full record as JSON string
        ],
    )


class WeaviateDocumentStore(DocumentStore):
    """
    DocumentStore kept in a single Weaviate class. Each record is one object
    keyed by a deterministic UUID derived from its path and id.

    Weaviate has no multi-object transactions: a batch validates every write
    before touching anything, then writes and only then deletes. A failure in
    the write phase raises StoreError and can leave some writes applied, but
    never removes a record.
    """

    def __init__(self, client: weaviate.WeaviateClient, class_name: str):
        self._client = client
        self._class_name = class_name
        ensure_records_schema(client, class_name)
        self._collection = client.collections.get(class_name)

    @classmethod
    def from_settings(cls) -> "WeaviateDocumentStore":
        client = get_weaviate_client()
        if client is None:
            raise StoreError("Weaviate store selected but WEAVIATE_URL / WEAVIATE_API_KEY are not set.")
        return cls(client, settings.WEAVIATE_RECORDS_CLASS)

    # --- DocumentStore API --- #

    async def get(self, collection: str, record_id: str) -> Optional[Record]:
        return await self._run(self._get_sync, collection, record_id)

    async def set(self, collection: str, record_id: str, data: Record) -> None:
        await self._run(self._upsert_sync, collection, record_id, {**data, "id": record_id})

    async def update(self, collection: str, record_id: str, fields: Record) -> None:
        await self._run(self._update_sync, collection, record_id, dict(fields))

    async def delete(self, collection: str, record_id: str) -> None:
        await self._run(self._delete_sync, collection, record_id)

    async def query(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Record]:
        records = await self._run(self._fetch_path_sync, collection)
        return apply_query(records, filters, order_by, descending, limit)

    async def _commit(self, operations: List[Operation]) -> None:
        await self._run(self._commit_sync, operations)

    # --- Synchronous helpers (run in the default executor) --- #

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(fn, *args))
        except WeaviateBaseError as e:
            logger.error(f"Weaviate operation {fn.__name__} failed: {e}")
            raise StoreError(str(e)) from e

    @staticmethod
    def _object_uuid(collection: str, record_id: str) -> str:
        return str(generate_uuid5(f"{collection}/{record_id}"))

    @staticmethod
    def _properties(collection: str, record_id: str, data: Record) -> Dict[str, str]:
        return {"record_path": collection, "record_id": record_id, "data_json": json.dumps(data)}

    def _get_sync(self, collection: str, record_id: str) -> Optional[Record]:
        obj = self._collection.query.fetch_object_by_id(self._object_uuid(collection, record_id))
        if obj is None:
            return None
        return json.loads(obj.properties["data_json"])

    def _upsert_sync(self, collection: str, record_id: str, data: Record) -> None:
        object_uuid = self._object_uuid(collection, record_id)
        properties = self._properties(collection, record_id, data)
        if self._collection.data.exists(object_uuid):
            self._collection.data.replace(uuid=object_uuid, properties=properties)
        else:
            self._collection.data.insert(properties, uuid=object_uuid)

    def _update_sync(self, collection: str, record_id: str, fields: Record) -> None:
        record = self._get_sync(collection, record_id)
        if record is None:
            raise StoreError(f"Update failed: '{record_id}' not found in '{collection}'")
        for path, value in fields.items():
            set_field(record, path, copy.deepcopy(value))
        self._collection.data.replace(
            uuid=self._object_uuid(collection, record_id),
            properties=self._properties(collection, record_id, record),
        )

    def _delete_sync(self, collection: str, record_id: str) -> None:
        object_uuid = self._object_uuid(collection, record_id)
        if self._collection.data.exists(object_uuid):
            self._collection.data.delete_by_id(object_uuid)

    def _fetch_path_sync(self, collection: str) -> List[Record]:
        response = self._collection.query.fetch_objects(
            filters=wvc.query.Filter.by_property("record_path").equal(collection),
            limit=QUERY_FETCH_LIMIT,
        )
        return [
            json.loads(obj.properties["data_json"])
            for obj in response.objects
            if obj.properties.get("record_path") == collection
        ]

    def _commit_sync(self, operations: List[Operation]) -> None:
        # Resolve the final state of every touched record before writing anything
        final: Dict[Tuple[str, str], Optional[Record]] = {}
        for kind, collection, record_id, data in operations:
            key = (collection, record_id)
            if kind == "set":
                final[key] = copy.deepcopy(data)
            elif kind == "delete":
                final[key] = None
            elif kind == "update":
                if key not in final:
                    final[key] = self._get_sync(collection, record_id)
                if final[key] is None:
                    raise StoreError(f"Batch update failed: '{record_id}' not found in '{collection}'")
                for path, value in data.items():
                    set_field(final[key], path, copy.deepcopy(value))

        objects = [
            wvc.data.DataObject(
                properties=self._properties(collection, record_id, record),
                uuid=self._object_uuid(collection, record_id),
            )
            for (collection, record_id), record in final.items()
            if record is not None
        ]
        if objects:
            # Batch inserts replace objects that already exist under the same uuid
            result = self._collection.data.insert_many(objects)
            if result.has_errors:
                raise StoreError(f"Weaviate batch write failed for {len(result.errors)} objects")

        # Deletes go last so a failed write never loses existing records
        deleted = [
            self._object_uuid(collection, record_id)
            for (collection, record_id), record in final.items()
            if record is None
        ]
        if deleted:
            self._collection.data.delete_many(where=wvc.query.Filter.by_id().contains_any(deleted))
