"""SQLite-backed run log.

Design Pattern: Adapter Pattern
SqliteRunLog adapts an SQLite database to the RunLog interface.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads (the CLI and a long-running engine may
  share one file)
- One ``usage`` row per (run, layer), indexed by time, so quota lookups
  never have to decode stored results
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

from pycgmb.models import LayerType, TaskGraph, WorkflowResult
from pycgmb.storage.base import (
    RunLog,
    RunRecord,
    StorageError,
    UsageTotals,
    encode_json,
    from_millis,
    to_millis,
    usage_by_layer,
)


class SqliteRunLog(RunLog):
    """SQLite-backed run log.

    After __init__, the instance is not yet usable. Call connect() first.

    Usage:
        run_log = SqliteRunLog("~/.cgmb/runs.db")
        await run_log.connect()
        try:
            await run_log.record_run(result.run_id, graph, result)
        finally:
            await run_log.close()
    """

    def __init__(self, db_path: str):
        self.db_path = db_path if db_path == ":memory:" else str(Path(db_path).expanduser())
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    @classmethod
    async def in_memory(cls) -> SqliteRunLog:
        """
        Create a connected in-memory run log for testing.

        Example:
            run_log = await SqliteRunLog.in_memory()
        """
        instance = cls(":memory:")
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        if self.db_path == ":memory:":
            return "SqliteRunLog(in-memory)"
        return f"SqliteRunLog({self.db_path})"

    async def connect(self) -> None:
        """Open the database connection and initialize the schema.

        Fixed initialization sequence:
        1. Open connection
        2. Enable WAL mode
        3. Create tables and indexes
        """
        if self._connection is not None:
            return

        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._connection = await aiosqlite.connect(
                self.db_path,
                timeout=5.0,
                isolation_level=None,
            )
        except (OSError, aiosqlite.Error) as e:
            raise StorageError(f"Cannot open run log {self.db_path}: {e}") from e

        # In-memory databases report "memory" and don't support WAL
        cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
        result = await cursor.fetchone()
        await cursor.close()
        if result:
            mode = result[0].upper()
            if mode not in ("WAL", "MEMORY"):
                raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")
        await self._create_schema()
        await self._connection.commit()

    async def _create_schema(self) -> None:
        """Create tables and indexes.

        Schema design:
        - runs holds one row per run with the serialized result and graph
        - usage holds per-layer totals of each run
        - INTEGER timestamps (milliseconds since epoch, UTC)
        """
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                fingerprint INTEGER NOT NULL,
                success INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                summary TEXT NOT NULL,
                graph TEXT NOT NULL,
                result TEXT NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_runs_created_at
            ON runs(created_at)
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS usage (
                run_id TEXT NOT NULL REFERENCES runs(run_id) ON DELETE CASCADE,
                layer TEXT CHECK( layer IN ('claude','gemini','aistudio') ) NOT NULL,
                created_at INTEGER NOT NULL,
                requests INTEGER NOT NULL,
                tokens INTEGER NOT NULL,
                cost REAL NOT NULL,
                PRIMARY KEY (run_id, layer)
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_usage_layer_time
            ON usage(layer, created_at)
        """)

    def _check_connected(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")
        return self._connection

    async def record_run(self, run_id: str, graph: TaskGraph, result: WorkflowResult) -> RunRecord:
        connection = self._check_connected()
        created_at = datetime.now(UTC)
        created_ms = to_millis(created_at)
        graph_data = graph.to_dict()

        async with self._lock:
            try:
                await connection.execute("BEGIN IMMEDIATE")
                await connection.execute(
                    """
                    INSERT INTO runs (
                        run_id, fingerprint, success, created_at, summary, graph, result
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        graph.fingerprint(),
                        int(result.success),
                        created_ms,
                        result.summary,
                        encode_json(graph_data),
                        encode_json(result.to_dict()),
                    ),
                )
                await connection.executemany(
                    """
                    INSERT INTO usage (run_id, layer, created_at, requests, tokens, cost)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (run_id, layer.value, created_ms, usage.requests, usage.tokens, usage.cost)
                        for layer, usage in usage_by_layer(result).items()
                    ],
                )
                await connection.execute("COMMIT")
            except aiosqlite.IntegrityError as e:
                await connection.execute("ROLLBACK")
                raise StorageError(f"Run {run_id} already recorded") from e
            except Exception:
                await connection.execute("ROLLBACK")
                raise

        return RunRecord(
            run_id=run_id,
            fingerprint=graph.fingerprint(),
            created_at=from_millis(created_ms),
            result=result,
            graph=graph_data,
        )

    async def get_run(self, run_id: str) -> RunRecord | None:
        connection = self._check_connected()
        async with connection.execute(
            "SELECT run_id, fingerprint, created_at, graph, result FROM runs WHERE run_id = ?",
            (run_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return self._parse_record(row) if row else None

    async def list_runs(self, limit: int = 20) -> list[RunRecord]:
        connection = self._check_connected()
        async with connection.execute(
            """
            SELECT run_id, fingerprint, created_at, graph, result FROM runs
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (limit,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._parse_record(row) for row in rows]

    async def usage_since(self, since: datetime, layer: LayerType | None = None) -> UsageTotals:
        connection = self._check_connected()
        query = (
            "SELECT COALESCE(SUM(requests), 0), COALESCE(SUM(tokens), 0), "
            "COALESCE(SUM(cost), 0.0) FROM usage WHERE created_at >= ?"
        )
        params: list[object] = [to_millis(since)]
        if layer is not None:
            query += " AND layer = ?"
            params.append(layer.value)

        async with connection.execute(query, params) as cursor:
            row = await cursor.fetchone()
        requests, tokens, cost = row
        return UsageTotals(requests=int(requests), tokens=int(tokens), cost=float(cost))

    async def reset(self) -> None:
        """Clear all data. After reset, storage is empty but functional."""
        connection = self._check_connected()
        await connection.execute("DELETE FROM usage")
        await connection.execute("DELETE FROM runs")
        await connection.commit()

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    @staticmethod
    def _parse_record(row) -> RunRecord:
        run_id, fingerprint, created_at, graph, result = row
        return RunRecord(
            run_id=run_id,
            fingerprint=int(fingerprint),
            created_at=from_millis(created_at),
            result=WorkflowResult.from_dict(json.loads(result)),
            graph=json.loads(graph),
        )
