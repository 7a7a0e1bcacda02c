"""SQLite implementation of the step instance store."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Optional

from ..catalog import StepCatalog
from ..errors import NotFoundError, PersistenceError, StaleStateError
from .models import (
    AuditEvent,
    Document,
    Dossier,
    FieldValue,
    StepInstance,
    TransitionRecord,
)
from .repository import StepInstanceStore

logger = logging.getLogger(__name__)


class SQLiteStepInstanceStore(StepInstanceStore):
    """Persist workflow state using SQLite.

    Rows keep their lookup keys in columns and the full record as JSON.
    All calls run in a worker thread; a lock serialises use of the shared
    connection.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        statements = [
            """
            CREATE TABLE IF NOT EXISTS catalogs (
                product_id TEXT PRIMARY KEY,
                data TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS dossiers (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS step_instances (
                id TEXT PRIMARY KEY,
                dossier_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                revision INTEGER NOT NULL,
                data TEXT NOT NULL,
                UNIQUE (dossier_id, step_id)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS field_values (
                step_instance_id TEXT NOT NULL,
                field_key TEXT NOT NULL,
                data TEXT NOT NULL,
                PRIMARY KEY (step_instance_id, field_key)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                step_instance_id TEXT NOT NULL,
                revision INTEGER NOT NULL,
                data TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS events (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL,
                dossier_id TEXT NOT NULL,
                idempotency_key TEXT,
                data TEXT NOT NULL
            )
            """,
        ]
        with self._lock:
            for statement in statements:
                self._conn.execute(statement)

    # ------------------------------------------------------------------
    # Helper methods
    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            try:
                return self._conn.execute(query, params).fetchone()
            except sqlite3.Error as exc:
                raise PersistenceError(f"SQLite query failed: {exc}") from exc

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(query, params).fetchall()
            except sqlite3.Error as exc:
                raise PersistenceError(f"SQLite query failed: {exc}") from exc

    def _execute(self, query: str, *params: Any) -> None:
        with self._lock:
            try:
                self._conn.execute(query, params)
            except sqlite3.IntegrityError as exc:
                raise PersistenceError(f"SQLite constraint violated: {exc}") from exc
            except sqlite3.Error as exc:
                raise PersistenceError(f"SQLite write failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Repository API
    async def save_catalog(self, catalog: StepCatalog) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO catalogs (product_id, data) VALUES (?, ?)",
            catalog.product_id,
            catalog.model_dump_json(),
        )

    async def get_step_catalog(self, product_id: str) -> Optional[StepCatalog]:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM catalogs WHERE product_id = ?", product_id
        )
        return StepCatalog.model_validate_json(row["data"]) if row else None

    async def create_dossier(self, dossier: Dossier) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO dossiers (id, data) VALUES (?, ?)",
            dossier.id,
            dossier.model_dump_json(),
        )

    async def get_dossier(self, dossier_id: str) -> Optional[Dossier]:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM dossiers WHERE id = ?", dossier_id
        )
        return Dossier.model_validate_json(row["data"]) if row else None

    async def get_or_create_step_instance(
        self, dossier_id: str, step_id: str, instance: StepInstance
    ) -> StepInstance:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR IGNORE INTO step_instances (id, dossier_id, step_id, revision, data)
            VALUES (?, ?, ?, ?, ?)
            """,
            instance.id,
            dossier_id,
            step_id,
            instance.revision,
            instance.model_dump_json(),
        )
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM step_instances WHERE dossier_id = ? AND step_id = ?",
            dossier_id,
            step_id,
        )
        return StepInstance.model_validate_json(row["data"])

    async def get_step_instance(self, instance_id: str) -> Optional[StepInstance]:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM step_instances WHERE id = ?", instance_id
        )
        return StepInstance.model_validate_json(row["data"]) if row else None

    async def list_step_instances(self, dossier_id: str) -> list[StepInstance]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM step_instances WHERE dossier_id = ?",
            dossier_id,
        )
        return [StepInstance.model_validate_json(r["data"]) for r in rows]

    async def get_field_values(self, step_instance_id: str) -> list[FieldValue]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM field_values WHERE step_instance_id = ? ORDER BY field_key",
            step_instance_id,
        )
        return [FieldValue.model_validate_json(r["data"]) for r in rows]

    async def list_documents(self, step_instance_id: str) -> list[Document]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM documents WHERE step_instance_id = ?",
            step_instance_id,
        )
        return [Document.model_validate_json(r["data"]) for r in rows]

    async def get_document(self, document_id: str) -> Optional[Document]:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM documents WHERE id = ?", document_id
        )
        return Document.model_validate_json(row["data"]) if row else None

    async def commit(self, record: TransitionRecord) -> None:
        await asyncio.to_thread(self._commit, record)

    def _commit(self, record: TransitionRecord) -> None:
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute("BEGIN IMMEDIATE")
                self._apply(cur, record)
                cur.execute("COMMIT")
            except sqlite3.Error as exc:
                if self._conn.in_transaction:
                    cur.execute("ROLLBACK")
                raise PersistenceError(f"SQLite commit failed: {exc}") from exc
            except BaseException:
                if self._conn.in_transaction:
                    cur.execute("ROLLBACK")
                raise

    def _apply(self, cur: sqlite3.Cursor, record: TransitionRecord) -> None:
        if record.instance is not None:
            instance = record.instance
            row = cur.execute(
                "SELECT revision FROM step_instances WHERE id = ?", (instance.id,)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Step instance {instance.id} not found")
            if row["revision"] != record.expected_instance_revision:
                raise StaleStateError(
                    instance.id,
                    expected=record.expected_instance_revision,
                    actual=row["revision"],
                )
            cur.execute(
                "UPDATE step_instances SET revision = ?, data = ? WHERE id = ?",
                (instance.revision, instance.model_dump_json(), instance.id),
            )

        if record.document is not None:
            document = record.document
            row = cur.execute(
                "SELECT revision FROM documents WHERE id = ?", (document.id,)
            ).fetchone()
            actual = row["revision"] if row else None
            if record.expected_document_revision is None:
                if row is not None:
                    raise StaleStateError(document.id, expected=None, actual=actual)
                cur.execute(
                    "INSERT INTO documents (id, step_instance_id, revision, data) VALUES (?, ?, ?, ?)",
                    (
                        document.id,
                        document.step_instance_id,
                        document.revision,
                        document.model_dump_json(),
                    ),
                )
            else:
                if actual != record.expected_document_revision:
                    raise StaleStateError(
                        document.id,
                        expected=record.expected_document_revision,
                        actual=actual,
                    )
                cur.execute(
                    "UPDATE documents SET revision = ?, data = ? WHERE id = ?",
                    (document.revision, document.model_dump_json(), document.id),
                )

        for value in record.field_values:
            cur.execute(
                """
                INSERT INTO field_values (step_instance_id, field_key, data) VALUES (?, ?, ?)
                ON CONFLICT (step_instance_id, field_key) DO UPDATE SET data = excluded.data
                """,
                (value.step_instance_id, value.field_key, value.model_dump_json()),
            )

        if record.dossier is not None:
            cur.execute(
                "UPDATE dossiers SET data = ? WHERE id = ?",
                (record.dossier.model_dump_json(), record.dossier.id),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"Dossier {record.dossier.id} not found")

        for event in record.events:
            cur.execute(
                "INSERT INTO events (id, dossier_id, idempotency_key, data) VALUES (?, ?, ?, ?)",
                (event.id, event.dossier_id, event.idempotency_key, event.model_dump_json()),
            )

    async def find_event(self, idempotency_key: str) -> Optional[AuditEvent]:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM events WHERE idempotency_key = ? ORDER BY seq LIMIT 1",
            idempotency_key,
        )
        return AuditEvent.model_validate_json(row["data"]) if row else None

    async def list_events(self, dossier_id: str) -> list[AuditEvent]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM events WHERE dossier_id = ? ORDER BY seq",
            dossier_id,
        )
        return [AuditEvent.model_validate_json(r["data"]) for r in rows]

    def close(self) -> None:
        self._conn.close()
