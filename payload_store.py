"""
Small document store for opaque JSON payloads.

Records live in a SQLite table keyed by (namespace, id). Writes are
upserts; reads distinguish a missing record from one whose stored text no
longer parses as JSON.
"""
import json
import logging
import sqlite3
import uuid
from contextlib import closing
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

SCHEMA = (
    "CREATE TABLE IF NOT EXISTS payloads ("
    "namespace TEXT NOT NULL, id TEXT NOT NULL, data TEXT NOT NULL, "
    "PRIMARY KEY (namespace, id))"
)
UPSERT = (
    "INSERT INTO payloads (namespace, id, data) VALUES (?, ?, ?) "
    "ON CONFLICT(namespace, id) DO UPDATE SET data=excluded.data"
)
SELECT = "SELECT data FROM payloads WHERE namespace = ? AND id = ?"


class PayloadStoreError(Exception):
    """Storage-level failure while reading or writing a payload."""


class PayloadNotFoundError(LookupError):
    pass


class CorruptedPayloadError(PayloadStoreError):
    pass


class PayloadSerializationError(ValueError):
    pass


@dataclass(frozen=True)
class PayloadRecord:
    id: str
    data: Any


class PayloadStore:
    def __init__(self, db_path: str, namespace: str = "payload-db"):
        self.db_path = db_path
        self.namespace = namespace
        self._initialize_schema()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _initialize_schema(self) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute(SCHEMA)
        logger.info(f"Payload store ready at {self.db_path} (namespace: {self.namespace})")

    def put(self, record_id: str, data: Any) -> PayloadRecord:
        if not record_id:
            raise ValueError("Record id is required")
        try:
            serialized = json.dumps(data)
        except (TypeError, ValueError) as e:
            raise PayloadSerializationError(f"Payload must be JSON serializable: {e}")

        try:
            with closing(self._connect()) as conn, conn:
                conn.execute(UPSERT, (self.namespace, record_id, serialized))
        except sqlite3.Error as e:
            logger.error(f"Failed to store payload {record_id}: {e}")
            raise PayloadStoreError(f"Failed to store payload: {e}")
        return PayloadRecord(id=record_id, data=data)

    def create(self, data: Any) -> PayloadRecord:
        """Store `data` under a newly generated id."""
        return self.put(str(uuid.uuid4()), data)

    def get(self, record_id: str) -> Any:
        if not record_id:
            raise ValueError("Record id is required")
        try:
            with closing(self._connect()) as conn:
                row = conn.execute(SELECT, (self.namespace, record_id)).fetchone()
        except sqlite3.Error as e:
            logger.error(f"Failed to retrieve payload {record_id}: {e}")
            raise PayloadStoreError(f"Failed to retrieve payload: {e}")

        if row is None or row[0] is None:
            raise PayloadNotFoundError(record_id)

        try:
            return json.loads(row[0])
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse stored payload {record_id}: {e}")
            raise CorruptedPayloadError("Stored payload is corrupted")
