"""PostgreSQL implementation of the step instance store."""

from __future__ import annotations

from typing import Optional

import asyncpg

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


class PostgresStepInstanceStore(StepInstanceStore):
    """Persist workflow state using PostgreSQL.

    Records are stored as JSONB next to the columns used for lookups and the
    optimistic revision check.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
        except (OSError, asyncpg.PostgresError) as exc:
            raise PersistenceError(f"Could not connect to PostgreSQL: {exc}") from exc
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS catalogs (
                product_id TEXT PRIMARY KEY,
                data JSONB NOT NULL
            );
            CREATE TABLE IF NOT EXISTS dossiers (
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL
            );
            CREATE TABLE IF NOT EXISTS step_instances (
                id TEXT PRIMARY KEY,
                dossier_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                revision INTEGER NOT NULL,
                data JSONB NOT NULL,
                UNIQUE (dossier_id, step_id)
            );
            CREATE TABLE IF NOT EXISTS field_values (
                step_instance_id TEXT NOT NULL,
                field_key TEXT NOT NULL,
                data JSONB NOT NULL,
                PRIMARY KEY (step_instance_id, field_key)
            );
            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                step_instance_id TEXT NOT NULL,
                revision INTEGER NOT NULL,
                data JSONB NOT NULL
            );
            CREATE TABLE IF NOT EXISTS events (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT NOT NULL,
                dossier_id TEXT NOT NULL,
                idempotency_key TEXT,
                data JSONB NOT NULL
            );
            """
        )

    async def _fetchrow(self, query: str, *params) -> Optional[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"PostgreSQL query failed: {exc}") from exc
        finally:
            await conn.close()

    async def _fetch(self, query: str, *params) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"PostgreSQL query failed: {exc}") from exc
        finally:
            await conn.close()

    async def _execute(self, query: str, *params) -> None:
        conn = await self._connect()
        try:
            await conn.execute(query, *params)
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"PostgreSQL write failed: {exc}") from exc
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def save_catalog(self, catalog: StepCatalog) -> None:
        await self._execute(
            """
            INSERT INTO catalogs (product_id, data) VALUES ($1, $2)
            ON CONFLICT (product_id) DO UPDATE SET data = EXCLUDED.data
            """,
            catalog.product_id,
            catalog.model_dump_json(),
        )

    async def get_step_catalog(self, product_id: str) -> Optional[StepCatalog]:
        row = await self._fetchrow(
            "SELECT data::text AS data FROM catalogs WHERE product_id = $1", product_id
        )
        return StepCatalog.model_validate_json(row["data"]) if row else None

    async def create_dossier(self, dossier: Dossier) -> None:
        await self._execute(
            "INSERT INTO dossiers (id, data) VALUES ($1, $2)",
            dossier.id,
            dossier.model_dump_json(),
        )

    async def get_dossier(self, dossier_id: str) -> Optional[Dossier]:
        row = await self._fetchrow(
            "SELECT data::text AS data FROM dossiers WHERE id = $1", dossier_id
        )
        return Dossier.model_validate_json(row["data"]) if row else None

    async def get_or_create_step_instance(
        self, dossier_id: str, step_id: str, instance: StepInstance
    ) -> StepInstance:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO step_instances (id, dossier_id, step_id, revision, data)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (dossier_id, step_id) DO NOTHING
                """,
                instance.id,
                dossier_id,
                step_id,
                instance.revision,
                instance.model_dump_json(),
            )
            row = await conn.fetchrow(
                "SELECT data::text AS data FROM step_instances WHERE dossier_id = $1 AND step_id = $2",
                dossier_id,
                step_id,
            )
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"PostgreSQL write failed: {exc}") from exc
        finally:
            await conn.close()
        return StepInstance.model_validate_json(row["data"])

    async def get_step_instance(self, instance_id: str) -> Optional[StepInstance]:
        row = await self._fetchrow(
            "SELECT data::text AS data FROM step_instances WHERE id = $1", instance_id
        )
        return StepInstance.model_validate_json(row["data"]) if row else None

    async def list_step_instances(self, dossier_id: str) -> list[StepInstance]:
        rows = await self._fetch(
            "SELECT data::text AS data FROM step_instances WHERE dossier_id = $1",
            dossier_id,
        )
        return [StepInstance.model_validate_json(r["data"]) for r in rows]

    async def get_field_values(self, step_instance_id: str) -> list[FieldValue]:
        rows = await self._fetch(
            """
            SELECT data::text AS data FROM field_values
            WHERE step_instance_id = $1 ORDER BY field_key
            """,
            step_instance_id,
        )
        return [FieldValue.model_validate_json(r["data"]) for r in rows]

    async def list_documents(self, step_instance_id: str) -> list[Document]:
        rows = await self._fetch(
            "SELECT data::text AS data FROM documents WHERE step_instance_id = $1",
            step_instance_id,
        )
        return [Document.model_validate_json(r["data"]) for r in rows]

    async def get_document(self, document_id: str) -> Optional[Document]:
        row = await self._fetchrow(
            "SELECT data::text AS data FROM documents WHERE id = $1", document_id
        )
        return Document.model_validate_json(row["data"]) if row else None

    async def commit(self, record: TransitionRecord) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await self._apply(conn, record)
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"PostgreSQL commit failed: {exc}") from exc
        finally:
            await conn.close()

    async def _apply(self, conn: asyncpg.Connection, record: TransitionRecord) -> None:
        if record.instance is not None:
            instance = record.instance
            actual = await conn.fetchval(
                "SELECT revision FROM step_instances WHERE id = $1 FOR UPDATE",
                instance.id,
            )
            if actual is None:
                raise NotFoundError(f"Step instance {instance.id} not found")
            if actual != record.expected_instance_revision:
                raise StaleStateError(
                    instance.id, expected=record.expected_instance_revision, actual=actual
                )
            await conn.execute(
                "UPDATE step_instances SET revision = $1, data = $2 WHERE id = $3",
                instance.revision,
                instance.model_dump_json(),
                instance.id,
            )

        if record.document is not None:
            document = record.document
            actual = await conn.fetchval(
                "SELECT revision FROM documents WHERE id = $1 FOR UPDATE", document.id
            )
            if record.expected_document_revision is None:
                if actual is not None:
                    raise StaleStateError(document.id, expected=None, actual=actual)
                await conn.execute(
                    """
                    INSERT INTO documents (id, step_instance_id, revision, data)
                    VALUES ($1, $2, $3, $4)
                    """,
                    document.id,
                    document.step_instance_id,
                    document.revision,
                    document.model_dump_json(),
                )
            else:
                if actual != record.expected_document_revision:
                    raise StaleStateError(
                        document.id,
                        expected=record.expected_document_revision,
                        actual=actual,
                    )
                await conn.execute(
                    "UPDATE documents SET revision = $1, data = $2 WHERE id = $3",
                    document.revision,
                    document.model_dump_json(),
                    document.id,
                )

        for value in record.field_values:
            await conn.execute(
                """
                INSERT INTO field_values (step_instance_id, field_key, data)
                VALUES ($1, $2, $3)
                ON CONFLICT (step_instance_id, field_key) DO UPDATE SET data = EXCLUDED.data
                """,
                value.step_instance_id,
                value.field_key,
                value.model_dump_json(),
            )

        if record.dossier is not None:
            status = await conn.execute(
                "UPDATE dossiers SET data = $1 WHERE id = $2",
                record.dossier.model_dump_json(),
                record.dossier.id,
            )
            if status.endswith(" 0"):
                raise NotFoundError(f"Dossier {record.dossier.id} not found")

        for event in record.events:
            await conn.execute(
                """
                INSERT INTO events (id, dossier_id, idempotency_key, data)
                VALUES ($1, $2, $3, $4)
                """,
                event.id,
                event.dossier_id,
                event.idempotency_key,
                event.model_dump_json(),
            )

    async def find_event(self, idempotency_key: str) -> Optional[AuditEvent]:
        row = await self._fetchrow(
            """
            SELECT data::text AS data FROM events
            WHERE idempotency_key = $1 ORDER BY seq LIMIT 1
            """,
            idempotency_key,
        )
        return AuditEvent.model_validate_json(row["data"]) if row else None

    async def list_events(self, dossier_id: str) -> list[AuditEvent]:
        rows = await self._fetch(
            "SELECT data::text AS data FROM events WHERE dossier_id = $1 ORDER BY seq",
            dossier_id,
        )
        return [AuditEvent.model_validate_json(r["data"]) for r in rows]
