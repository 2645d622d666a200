"""
MongoDB access for the storefront.

One collection per table: product, order, order_item, user, session and
placement. Everything above this module talks to a ``Backend`` so the
routes and the order placement flow never touch pymongo directly.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from bson.errors import InvalidId
from bson.objectid import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient, ReturnDocument
from pymongo.errors import PyMongoError

from config import DATABASE_NAME, DATABASE_URL

logger = logging.getLogger(__name__)

PRODUCTS = "product"
ORDERS = "order"
ORDER_ITEMS = "order_item"
USERS = "user"
SESSIONS = "session"
PLACEMENTS = "placement"


class BackendError(Exception):
    """A backend call failed for any reason other than "no rows matched"."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def to_object_id(value) -> Optional[ObjectId]:
    """Parse an id coming from a client. Malformed ids yield None."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def serialize_doc(doc):
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.get("_id")
    if isinstance(_id, ObjectId):
        doc["id"] = str(_id)
        del doc["_id"]
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
        elif isinstance(v, datetime):
            doc[k] = v.isoformat()
    return doc


def _now():
    return datetime.now(timezone.utc)


class Backend:
    """Select/insert/update/delete over named collections.

    Every pymongo failure is re-raised as BackendError. Single-row reads
    return None when nothing matched.
    """

    def __init__(self, database):
        self.db = database

    def _call(self, what: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except PyMongoError as e:
            logger.error("%s failed: %s", what, e)
            raise BackendError(str(e)) from e

    def select(
        self,
        table: str,
        filters: Optional[dict] = None,
        sort: Optional[Sequence[Tuple[str, int]]] = None,
        limit: Optional[int] = None,
    ) -> List[dict]:
        def run():
            cursor = self.db[table].find(filters or {})
            if sort:
                cursor = cursor.sort(list(sort))
            if limit:
                cursor = cursor.limit(limit)
            return list(cursor)

        return self._call(f"select {table}", run)

    def select_one(self, table: str, filters: dict, sort=None) -> Optional[dict]:
        rows = self.select(table, filters, sort=sort, limit=1)
        return rows[0] if rows else None

    def get(self, table: str, doc_id) -> Optional[dict]:
        oid = to_object_id(doc_id)
        if oid is None:
            return None
        return self.select_one(table, {"_id": oid})

    def count(self, table: str, filters: Optional[dict] = None) -> int:
        return self._call(f"count {table}", self.db[table].count_documents, filters or {})

    def create_document(self, table: str, data: Union[BaseModel, Dict[str, Any]]) -> dict:
        """Insert one document, stamping created_at/updated_at. Returns the stored row."""
        if isinstance(data, BaseModel):
            doc = data.model_dump(mode="json")
        else:
            doc = dict(data)
        now = _now()
        doc.setdefault("created_at", now)
        doc["updated_at"] = now
        result = self._call(f"insert {table}", self.db[table].insert_one, doc)
        doc["_id"] = result.inserted_id
        return doc

    def insert_many(self, table: str, rows: List[dict]) -> List[dict]:
        now = _now()
        docs = []
        for row in rows:
            doc = dict(row)
            doc.setdefault("created_at", now)
            doc["updated_at"] = now
            docs.append(doc)
        result = self._call(f"insert {table}", self.db[table].insert_many, docs)
        for doc, _id in zip(docs, result.inserted_ids):
            doc["_id"] = _id
        return docs

    def update(self, table: str, doc_id, patch: dict) -> Optional[dict]:
        """Set fields on one row. Returns the updated row, or None if no row matched."""
        oid = to_object_id(doc_id)
        if oid is None:
            return None
        patch = {**patch, "updated_at": _now()}
        return self._call(
            f"update {table}",
            self.db[table].find_one_and_update,
            {"_id": oid},
            {"$set": patch},
            return_document=ReturnDocument.AFTER,
        )

    def update_where(self, table: str, filters: dict, changes: dict) -> Optional[dict]:
        """Apply a raw update document to the first row matching ``filters``.

        The match and the write are one atomic call, so this doubles as a
        claim: None means another writer got there first.
        """
        changes = {**changes, "$set": {**changes.get("$set", {}), "updated_at": _now()}}
        return self._call(
            f"update {table}",
            self.db[table].find_one_and_update,
            filters,
            changes,
            return_document=ReturnDocument.AFTER,
        )

    def decrement_if_available(self, table: str, doc_id, field: str, amount: int) -> bool:
        """Atomically subtract ``amount`` from ``field`` unless that would go below zero.

        Returns False when the row is missing or holds less than ``amount``.
        """
        oid = to_object_id(doc_id)
        if oid is None:
            return False
        result = self._call(
            f"decrement {table}",
            self.db[table].update_one,
            {"_id": oid, field: {"$gte": amount}},
            {"$inc": {field: -amount}, "$set": {"updated_at": _now()}},
        )
        return result.matched_count == 1

    def increment(self, table: str, doc_id, field: str, amount: int) -> bool:
        oid = to_object_id(doc_id)
        if oid is None:
            return False
        result = self._call(
            f"increment {table}",
            self.db[table].update_one,
            {"_id": oid},
            {"$inc": {field: amount}, "$set": {"updated_at": _now()}},
        )
        return result.matched_count == 1

    def delete(self, table: str, filters: dict) -> int:
        result = self._call(f"delete {table}", self.db[table].delete_many, filters)
        return result.deleted_count


def _connect():
    if not DATABASE_URL:
        logger.warning("DATABASE_URL is not set; backend unavailable")
        return None
    client = MongoClient(DATABASE_URL)
    return client[DATABASE_NAME]


db = _connect()
