"""
RunLog protocol - Abstract interface for run ledgers.

Design Pattern: Adapter Pattern
RunLog defines the target interface that all storage adapters implement.
Different backends (SQLite, Redis, Memory) adapt to this common interface.

The engine itself keeps no state between runs. A RunLog is attached from
the outside (``WorkflowEngine(run_log=...)``) and receives each finished
WorkflowResult. It answers two questions afterwards: what happened in a
given run, and how much of each layer has been used lately. The quota
monitor relies on the latter.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pycgmb.models import LayerType, TaskGraph, WorkflowResult


class StorageError(Exception):
    """Storage operation failed."""


@dataclass(frozen=True)
class UsageTotals:
    """Requests, tokens and cost summed over a period."""

    requests: int = 0
    tokens: int = 0
    cost: float = 0.0

    def __add__(self, other: UsageTotals) -> UsageTotals:
        return UsageTotals(
            requests=self.requests + other.requests,
            tokens=self.tokens + other.tokens,
            cost=self.cost + other.cost,
        )


@dataclass(frozen=True)
class RunRecord:
    """
    One recorded workflow run.

    Attributes:
        run_id: Run identifier (uuid7, sortable by creation time)
        fingerprint: Hash of the graph definition that ran
        created_at: When the run was recorded (UTC)
        result: The run's WorkflowResult
        graph: The graph definition, as plain data
    """

    run_id: str
    fingerprint: int
    created_at: datetime
    result: WorkflowResult
    graph: Mapping[str, Any]

    @property
    def success(self) -> bool:
        return self.result.success


def usage_by_layer(result: WorkflowResult) -> dict[LayerType, UsageTotals]:
    """
    Per-layer usage of one run.

    Every attempt of an executed step counts as a request; steps that never
    ran cost nothing.
    """
    usage: dict[LayerType, UsageTotals] = {}
    for step_result in result.results.values():
        if not step_result.executed:
            continue
        meta = step_result.metadata
        entry = UsageTotals(
            requests=max(meta.attempts, 1),
            tokens=meta.tokens_used or 0,
            cost=meta.cost or 0.0,
        )
        usage[meta.layer] = usage.get(meta.layer, UsageTotals()) + entry
    return usage


def encode_json(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, sort_keys=True, default=str)


def as_utc(moment: datetime) -> datetime:
    return moment.replace(tzinfo=UTC) if moment.tzinfo is None else moment


def to_millis(moment: datetime) -> int:
    return int(as_utc(moment).timestamp() * 1000)


def from_millis(millis: int) -> datetime:
    return datetime.fromtimestamp(millis / 1000, tz=UTC)


class RunLog(ABC):
    """
    Abstract run ledger.

    Clients program to this interface, not to concrete implementations.
    ``InMemoryRunLog`` is usable straight away; the SQLite and Redis
    adapters need ``connect()`` first.
    """

    async def connect(self) -> None:
        """Open connections and create schema. Idempotent."""

    @abstractmethod
    async def record_run(self, run_id: str, graph: TaskGraph, result: WorkflowResult) -> RunRecord:
        """
        Store a finished run.

        Raises:
            StorageError: If a run with the same id was already recorded
        """

    @abstractmethod
    async def get_run(self, run_id: str) -> RunRecord | None:
        """Fetch one run, or None if unknown."""

    @abstractmethod
    async def list_runs(self, limit: int = 20) -> list[RunRecord]:
        """Most recent runs first."""

    @abstractmethod
    async def usage_since(self, since: datetime, layer: LayerType | None = None) -> UsageTotals:
        """Usage recorded at or after ``since``, for one layer or all of them."""

    @abstractmethod
    async def reset(self) -> None:
        """Clear all data (for testing)."""

    async def close(self) -> None:
        """Release connections."""

    async def __aenter__(self) -> RunLog:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


__all__ = [
    "RunLog",
    "RunRecord",
    "StorageError",
    "UsageTotals",
    "usage_by_layer",
]
