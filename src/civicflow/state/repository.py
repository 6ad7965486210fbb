"""PostgreSQL WorkflowStore.

This module implements the WorkflowStore protocol using asyncpg for async
PostgreSQL access. It provides:
- Connection pooling for production use
- Atomic transactions pairing each state write with its audit record
- Optimistic locking via the version field
- Per-workflow record sequence numbers assigned inside the transaction

The schema lives in migrations/001_workflow_state.sql. Audit records are
insert-only; nothing in this module updates or deletes them.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, List, Optional

import asyncpg

from src.civicflow.audit.models import ProcessingStepRecord
from src.civicflow.errors import DatabaseError, NotFoundError, VersionConflictError
from src.civicflow.state.models import StepState, WorkflowState, WorkflowStatus
from src.civicflow.workflow_config import WorkflowConfig


logger = logging.getLogger(__name__)


_STATE_COLUMNS = """
    workflow_id,
    issue_id,
    city_id,
    status,
    step_cursor,
    steps,
    config,
    context,
    error,
    created_at,
    updated_at,
    version
"""


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _json(value: Any) -> Any:
    # asyncpg returns jsonb as text unless a codec is registered
    return json.loads(value) if isinstance(value, str) else value


def _row_to_state(row: asyncpg.Record) -> WorkflowState:
    return WorkflowState(
        workflow_id=row["workflow_id"],
        issue_id=row["issue_id"],
        city_id=row["city_id"],
        status=WorkflowStatus(row["status"]),
        cursor=row["step_cursor"],
        steps=[StepState.model_validate(s) for s in _json(row["steps"])],
        config=WorkflowConfig.model_validate(_json(row["config"])),
        context=_json(row["context"]) or {},
        error=row["error"],
        created_at=_utc(row["created_at"]),
        updated_at=_utc(row["updated_at"]),
        version=row["version"],
    )


class PostgresWorkflowStore:
    """PostgreSQL implementation of the WorkflowStore protocol.

    Attributes:
        connection_string: PostgreSQL connection URL.
        pool: Connection pool (initialized via connect()).
        min_pool_size: Minimum connections in pool.
        max_pool_size: Maximum connections in pool.

    Example:
        >>> async with PostgresWorkflowStore("postgresql://...") as store:
        ...     state = await store.get(workflow_id)
    """

    def __init__(
        self,
        connection_string: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.connection_string = connection_string
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool.

        Raises:
            DatabaseError: If the pool is not initialized.
        """
        if self._pool is None:
            raise DatabaseError("Database pool not initialized. Call connect() first.")
        return self._pool

    async def connect(self) -> None:
        """Initialize the connection pool.

        Raises:
            DatabaseError: If connection fails.
        """
        if self._pool is not None:
            logger.warning("Connection pool already initialized")
            return

        try:
            logger.info(
                "Connecting to PostgreSQL",
                extra={
                    "min_pool_size": self.min_pool_size,
                    "max_pool_size": self.max_pool_size,
                },
            )
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
            logger.info("PostgreSQL connection pool established")
        except Exception as e:
            logger.error("Failed to connect to PostgreSQL", extra={"error": str(e)})
            raise DatabaseError(
                f"Failed to connect to PostgreSQL: {e}",
                original_error=e,
            ) from e

    async def disconnect(self) -> None:
        if self._pool is not None:
            logger.info("Closing PostgreSQL connection pool")
            await self._pool.close()
            self._pool = None

    async def __aenter__(self) -> "PostgresWorkflowStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def _insert_record(
        self, conn: asyncpg.Connection, record: ProcessingStepRecord
    ) -> ProcessingStepRecord:
        """Append a record, assigning the next sequence of its workflow.

        The workflow row is locked by the caller's transaction (insert or
        update), so concurrent appends to the same workflow serialize.
        """
        sequence = await conn.fetchval(
            """
            SELECT COALESCE(MAX(sequence) + 1, 0)
            FROM processing_records
            WHERE workflow_id = $1
            """,
            record.workflow_id,
        )
        stored = record.model_copy(update={"sequence": sequence})
        await conn.execute(
            """
            INSERT INTO processing_records (
                record_id,
                workflow_id,
                issue_id,
                city_id,
                sequence,
                kind,
                started_at,
                body
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            stored.record_id,
            stored.workflow_id,
            stored.issue_id,
            stored.city_id,
            stored.sequence,
            stored.kind.value,
            stored.started_at,
            stored.model_dump_json(),
        )
        return stored

    async def create(
        self, state: WorkflowState, record: ProcessingStepRecord
    ) -> ProcessingStepRecord:
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO workflow_states ({_STATE_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                    """,
                    state.workflow_id,
                    state.issue_id,
                    state.city_id,
                    state.status.value,
                    state.cursor,
                    json.dumps([s.model_dump(mode="json") for s in state.steps]),
                    state.config.model_dump_json(),
                    json.dumps(state.context),
                    state.error,
                    state.created_at,
                    state.updated_at,
                    state.version,
                )
                stored = await self._insert_record(conn, record)

            logger.info(
                "Saved workflow state",
                extra={"workflow_id": state.workflow_id, "version": state.version},
            )
            return stored

        except asyncpg.UniqueViolationError as e:
            raise DatabaseError(
                f"Workflow already exists: {state.workflow_id}",
                original_error=e,
            ) from e
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(
                "Failed to save workflow state",
                extra={"workflow_id": state.workflow_id, "error": str(e)},
            )
            raise DatabaseError(f"Failed to save workflow state: {e}", original_error=e) from e

    async def _fetch_state(self, where: str, value: str) -> Optional[WorkflowState]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_STATE_COLUMNS} FROM workflow_states WHERE {where} = $1",
                    value,
                )
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(
                "Failed to get workflow state",
                extra={where: value, "error": str(e)},
            )
            raise DatabaseError(f"Failed to get workflow state: {e}", original_error=e) from e
        return _row_to_state(row) if row else None

    async def get(self, workflow_id: str) -> Optional[WorkflowState]:
        return await self._fetch_state("workflow_id", workflow_id)

    async def get_by_issue(self, issue_id: str) -> Optional[WorkflowState]:
        return await self._fetch_state("issue_id", issue_id)

    async def list_by_status(self, status: WorkflowStatus) -> List[WorkflowState]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {_STATE_COLUMNS}
                    FROM workflow_states
                    WHERE status = $1
                    ORDER BY created_at ASC
                    """,
                    status.value,
                )
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(
                "Failed to list workflow states by status",
                extra={"status": status.value, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to list workflow states by status: {e}",
                original_error=e,
            ) from e

        logger.debug(
            "Listed workflow states by status",
            extra={"status": status.value, "count": len(rows)},
        )
        return [_row_to_state(row) for row in rows]

    async def _write_state(
        self,
        conn: asyncpg.Connection,
        state: WorkflowState,
        expected_version: Optional[int],
    ) -> str:
        version_clause = "AND version = $9" if expected_version is not None else ""
        args = [
            state.workflow_id,
            state.status.value,
            state.cursor,
            json.dumps([s.model_dump(mode="json") for s in state.steps]),
            json.dumps(state.context),
            state.error,
            state.updated_at,
            state.version,
        ]
        if expected_version is not None:
            args.append(expected_version)
        return await conn.execute(
            f"""
            UPDATE workflow_states
            SET
                status = $2,
                step_cursor = $3,
                steps = $4,
                context = $5,
                error = $6,
                updated_at = $7,
                version = $8
            WHERE workflow_id = $1 {version_clause}
            """,
            *args,
        )

    async def commit_step(
        self, state: WorkflowState, record: ProcessingStepRecord
    ) -> ProcessingStepRecord:
        expected_version = state.version - 1
        try:
            async with self._transaction() as conn:
                result = await self._write_state(conn, state, expected_version)
                rows_affected = int(result.split()[-1])
                if rows_affected == 0:
                    logger.warning(
                        "Version conflict during workflow commit",
                        extra={
                            "workflow_id": state.workflow_id,
                            "expected_version": expected_version,
                        },
                    )
                    raise VersionConflictError(state.workflow_id, expected_version)
                stored = await self._insert_record(conn, record)

            logger.info(
                "Committed workflow step",
                extra={
                    "workflow_id": state.workflow_id,
                    "status": state.status.value,
                    "version": state.version,
                    "sequence": stored.sequence,
                },
            )
            return stored

        except (VersionConflictError, DatabaseError):
            raise
        except Exception as e:
            logger.error(
                "Failed to commit workflow step",
                extra={"workflow_id": state.workflow_id, "error": str(e)},
            )
            raise DatabaseError(f"Failed to commit workflow step: {e}", original_error=e) from e

    async def append_record(self, record: ProcessingStepRecord) -> ProcessingStepRecord:
        try:
            async with self._transaction() as conn:
                # Row lock so sequence assignment serializes with commits
                exists = await conn.fetchval(
                    "SELECT 1 FROM workflow_states WHERE workflow_id = $1 FOR UPDATE",
                    record.workflow_id,
                )
                if exists is None:
                    raise NotFoundError("workflow", record.workflow_id)
                return await self._insert_record(conn, record)
        except (NotFoundError, DatabaseError):
            raise
        except Exception as e:
            logger.error(
                "Failed to append audit record",
                extra={"workflow_id": record.workflow_id, "error": str(e)},
            )
            raise DatabaseError(f"Failed to append audit record: {e}", original_error=e) from e

    async def restore(
        self, state: WorkflowState, record: ProcessingStepRecord
    ) -> ProcessingStepRecord:
        try:
            async with self._transaction() as conn:
                result = await self._write_state(conn, state, expected_version=None)
                if int(result.split()[-1]) == 0:
                    raise NotFoundError("workflow", state.workflow_id)
                return await self._insert_record(conn, record)
        except (NotFoundError, DatabaseError):
            raise
        except Exception as e:
            logger.error(
                "Failed to restore workflow state",
                extra={"workflow_id": state.workflow_id, "error": str(e)},
            )
            raise DatabaseError(f"Failed to restore workflow state: {e}", original_error=e) from e

    async def _fetch_records(self, where: str, value: str) -> List[ProcessingStepRecord]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT body
                    FROM processing_records
                    WHERE {where} = $1
                    ORDER BY sequence ASC, started_at ASC
                    """,
                    value,
                )
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(
                "Failed to list audit records",
                extra={where: value, "error": str(e)},
            )
            raise DatabaseError(f"Failed to list audit records: {e}", original_error=e) from e
        return [ProcessingStepRecord.model_validate(_json(row["body"])) for row in rows]

    async def list_records(self, workflow_id: str) -> List[ProcessingStepRecord]:
        return await self._fetch_records("workflow_id", workflow_id)

    async def list_records_for_issue(self, issue_id: str) -> List[ProcessingStepRecord]:
        return await self._fetch_records("issue_id", issue_id)

    async def health_check(self) -> bool:
        """Check whether the database answers a trivial query."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.warning("Database health check failed", extra={"error": str(e)})
            return False
