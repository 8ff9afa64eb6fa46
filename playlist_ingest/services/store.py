"""Document store — keyed collections with batched writes over SQLite."""
from __future__ import annotations

import json
import logging
import re
import sqlite3
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from playlist_ingest.database import db_connect
from playlist_ingest.errors import PersistenceError

logger = logging.getLogger(__name__)

# Matches common document-store transaction limits.
MAX_BATCH_SIZE = 500

_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")
_OPERATORS = {"==", "!=", "<", "<=", ">", ">="}

Filter = tuple[str, str, Any]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def deep_merge(base: dict, updates: dict) -> dict:
    """Merge *updates* into a copy of *base*, recursing into nested dicts."""
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_dotted(doc: dict, updates: dict) -> dict:
    """Apply ``{"a.b": 1}`` style updates to nested fields."""
    result = dict(doc)
    for key, value in updates.items():
        parts = key.split(".")
        target = result
        for part in parts[:-1]:
            nested = target.get(part)
            nested = dict(nested) if isinstance(nested, dict) else {}
            target[part] = nested
            target = nested
        target[parts[-1]] = value
    return result


class DocumentStore(ABC):
    """Abstract keyed-document store used by the pipeline.

    Documents are plain dicts. Reads return them with their key under ``id``.
    """

    @abstractmethod
    def query(
        self,
        collection: str,
        where: Optional[Iterable[Filter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict]: ...

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[dict]: ...

    @abstractmethod
    def set(self, collection: str, doc_id: str, data: dict, merge: bool = False) -> None: ...

    @abstractmethod
    def update(self, collection: str, doc_id: str, data: dict) -> None: ...

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> None: ...

    @abstractmethod
    def batch_write(
        self, collection: str, docs: list[tuple[Optional[str], dict]], merge: bool = False
    ) -> list[str]: ...

    @abstractmethod
    def batch_delete(self, collection: str, doc_ids: list[str]) -> int: ...

    def add(self, collection: str, data: dict) -> str:
        return self.batch_write(collection, [(None, data)])[0]


class SqliteDocumentStore(DocumentStore):
    """:class:`DocumentStore` backed by the ``documents`` table."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _json_path(field: str) -> str:
        if not _FIELD_RE.match(field):
            raise PersistenceError(f"Invalid field name: {field!r}")
        return f"$.{field}"

    @staticmethod
    def _row_to_doc(row: sqlite3.Row) -> dict:
        doc = json.loads(row["data"])
        doc["id"] = row["id"]
        return doc

    @staticmethod
    def _check_batch(size: int) -> None:
        if size > MAX_BATCH_SIZE:
            raise PersistenceError(f"Batch of {size} exceeds the limit of {MAX_BATCH_SIZE}")

    @staticmethod
    def _dump(data: dict) -> str:
        body = {k: v for k, v in data.items() if k != "id"}
        return json.dumps(body, default=str)

    def _read(self, conn: sqlite3.Connection, collection: str, doc_id: str) -> Optional[dict]:
        row = conn.execute(
            "SELECT id, data FROM documents WHERE collection = ? AND id = ?",
            (collection, doc_id),
        ).fetchone()
        return self._row_to_doc(row) if row else None

    def _write(
        self, conn: sqlite3.Connection, collection: str, doc_id: str, data: dict, merge: bool
    ) -> None:
        existing = self._read(conn, collection, doc_id)
        now = _now_iso()
        if existing is not None and merge:
            body = deep_merge(existing, data)
        else:
            body = dict(data)
        body["created_at"] = (existing or {}).get("created_at") or body.get("created_at") or now
        body["updated_at"] = now
        conn.execute(
            "INSERT OR REPLACE INTO documents (collection, id, data) VALUES (?,?,?)",
            (collection, doc_id, self._dump(body)),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def query(
        self,
        collection: str,
        where: Optional[Iterable[Filter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict]:
        clauses = ["collection = ?"]
        params: list[Any] = [collection]
        for field, op, value in where or []:
            if op not in _OPERATORS:
                raise PersistenceError(f"Unsupported operator: {op!r}")
            path = self._json_path(field)
            if value is None and op in ("==", "!="):
                clauses.append(f"json_extract(data, '{path}') IS {'' if op == '==' else 'NOT '}NULL")
                continue
            clauses.append(f"json_extract(data, '{path}') {'=' if op == '==' else op} ?")
            params.append(value)

        sql = f"SELECT id, data FROM documents WHERE {' AND '.join(clauses)}"
        if order_by:
            sql += f" ORDER BY json_extract(data, '{self._json_path(order_by)}') {'DESC' if descending else 'ASC'}, id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        conn = db_connect(self.db_path)
        try:
            rows = conn.execute(sql, params).fetchall()
            return [self._row_to_doc(r) for r in rows]
        except sqlite3.Error as e:
            raise PersistenceError(f"Query on {collection} failed: {e}") from e
        finally:
            conn.close()

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        conn = db_connect(self.db_path)
        try:
            return self._read(conn, collection, doc_id)
        except sqlite3.Error as e:
            raise PersistenceError(f"Read of {collection}/{doc_id} failed: {e}") from e
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Single-document writes
    # ------------------------------------------------------------------

    def set(self, collection: str, doc_id: str, data: dict, merge: bool = False) -> None:
        conn = db_connect(self.db_path)
        try:
            self._write(conn, collection, doc_id, data, merge)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Write of {collection}/{doc_id} failed: {e}") from e
        finally:
            conn.close()

    def update(self, collection: str, doc_id: str, data: dict) -> None:
        conn = db_connect(self.db_path)
        try:
            existing = self._read(conn, collection, doc_id)
            if existing is None:
                raise PersistenceError(f"No document {collection}/{doc_id} to update")
            self._write(conn, collection, doc_id, _apply_dotted(existing, data), merge=False)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Update of {collection}/{doc_id} failed: {e}") from e
        finally:
            conn.close()

    def delete(self, collection: str, doc_id: str) -> None:
        self.batch_delete(collection, [doc_id])

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def batch_write(
        self, collection: str, docs: list[tuple[Optional[str], dict]], merge: bool = False
    ) -> list[str]:
        self._check_batch(len(docs))
        ids: list[str] = []
        conn = db_connect(self.db_path)
        try:
            for doc_id, data in docs:
                doc_id = doc_id or uuid.uuid4().hex
                self._write(conn, collection, doc_id, data, merge)
                ids.append(doc_id)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Batch write to {collection} failed: {e}") from e
        finally:
            conn.close()
        logger.debug(f"Wrote {len(ids)} document(s) to {collection}")
        return ids

    def batch_delete(self, collection: str, doc_ids: list[str]) -> int:
        self._check_batch(len(doc_ids))
        if not doc_ids:
            return 0
        conn = db_connect(self.db_path)
        try:
            placeholders = ",".join("?" * len(doc_ids))
            cur = conn.execute(
                f"DELETE FROM documents WHERE collection = ? AND id IN ({placeholders})",
                [collection, *doc_ids],
            )
            conn.commit()
            return cur.rowcount
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Batch delete from {collection} failed: {e}") from e
        finally:
            conn.close()
