"""In-memory run log.

Design Pattern: Adapter Pattern
InMemoryRunLog adapts plain dictionaries to the RunLog interface.

Instance is immediately usable after __init__.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

from pycgmb.models import LayerType, TaskGraph, WorkflowResult
from pycgmb.storage.base import (
    RunLog,
    RunRecord,
    StorageError,
    UsageTotals,
    as_utc,
    usage_by_layer,
)


class InMemoryRunLog(RunLog):
    """In-memory run log for tests and one-shot CLI runs.

    Can be substituted for SqliteRunLog without changing client code.

    Usage:
        run_log = InMemoryRunLog()
        await run_log.record_run(result.run_id, graph, result)
    """

    def __init__(self):
        self._runs: dict[str, RunRecord] = {}
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return "InMemoryRunLog"

    async def record_run(self, run_id: str, graph: TaskGraph, result: WorkflowResult) -> RunRecord:
        async with self._lock:
            if run_id in self._runs:
                raise StorageError(f"Run {run_id} already recorded")
            record = RunRecord(
                run_id=run_id,
                fingerprint=graph.fingerprint(),
                created_at=datetime.now(UTC),
                result=result,
                graph=graph.to_dict(),
            )
            self._runs[run_id] = record
            return record

    async def get_run(self, run_id: str) -> RunRecord | None:
        return self._runs.get(run_id)

    async def list_runs(self, limit: int = 20) -> list[RunRecord]:
        records = sorted(
            reversed(list(self._runs.values())), key=lambda r: r.created_at, reverse=True
        )
        return records[:limit]

    async def usage_since(self, since: datetime, layer: LayerType | None = None) -> UsageTotals:
        since = as_utc(since)
        totals = UsageTotals()
        for record in self._runs.values():
            if record.created_at < since:
                continue
            for run_layer, usage in usage_by_layer(record.result).items():
                if layer is None or run_layer is layer:
                    totals = totals + usage
        return totals

    async def reset(self) -> None:
        async with self._lock:
            self._runs.clear()
