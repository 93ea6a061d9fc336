"""Redis-based run log.

Lets several engine processes (or machines) share one ledger, so quota
usage seen by one process includes the runs of the others.

Data Structures:
- cgmb:run:{run_id} (HASH): Run metadata, serialized graph and result
- cgmb:runs (ZSET): Run ids (score = created_at in ms)
- cgmb:usage:{layer} (ZSET): Per-run usage entries of a layer (score = created_at in ms)

Design: Adapter Pattern
Implements the RunLog interface on top of the Redis key-value store.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime

import redis.asyncio as redis

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

RUNS_KEY = "cgmb:runs"


class RedisRunLog(RunLog):
    """Redis run log using connection pooling.

    Usage:
        run_log = RedisRunLog("redis://localhost:6379")
        await run_log.connect()
        await run_log.record_run(result.run_id, graph, result)
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", max_connections: int = 16):
        """Initialize Redis run log.

        Args:
            redis_url: Redis connection URL
            max_connections: Maximum pool size
        """
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._redis: redis.Redis | None = None

    def __repr__(self) -> str:
        return f"RedisRunLog({self._redis_url})"

    async def connect(self) -> None:
        """Establish Redis connection pool."""
        if self._redis is not None:
            return
        self._redis = redis.from_url(
            self._redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=self._max_connections,
        )

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _check_connected(self) -> redis.Redis:
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")
        return self._redis

    @staticmethod
    def _run_key(run_id: str) -> str:
        return f"cgmb:run:{run_id}"

    @staticmethod
    def _usage_key(layer: LayerType) -> str:
        return f"cgmb:usage:{layer.value}"

    async def record_run(self, run_id: str, graph: TaskGraph, result: WorkflowResult) -> RunRecord:
        client = self._check_connected()
        created_ms = to_millis(datetime.now(UTC))
        graph_data = graph.to_dict()
        key = self._run_key(run_id)

        if not await client.hsetnx(key, "run_id", run_id):
            raise StorageError(f"Run {run_id} already recorded")

        async with client.pipeline(transaction=True) as pipe:
            pipe.hset(
                key,
                mapping={
                    "fingerprint": str(graph.fingerprint()),
                    "success": "1" if result.success else "0",
                    "created_at": str(created_ms),
                    "summary": result.summary,
                    "graph": encode_json(graph_data),
                    "result": encode_json(result.to_dict()),
                },
            )
            pipe.zadd(RUNS_KEY, {run_id: created_ms})
            for layer, usage in usage_by_layer(result).items():
                entry = encode_json(
                    {
                        "run_id": run_id,
                        "requests": usage.requests,
                        "tokens": usage.tokens,
                        "cost": usage.cost,
                    }
                )
                pipe.zadd(self._usage_key(layer), {entry: created_ms})
            await pipe.execute()

        return RunRecord(
            run_id=run_id,
            fingerprint=graph.fingerprint(),
            created_at=from_millis(created_ms),
            result=result,
            graph=graph_data,
        )

    async def get_run(self, run_id: str) -> RunRecord | None:
        client = self._check_connected()
        data = await client.hgetall(self._run_key(run_id))
        if not data or "result" not in data:
            return None
        return self._parse_record(data)

    async def list_runs(self, limit: int = 20) -> list[RunRecord]:
        client = self._check_connected()
        run_ids = await client.zrevrange(RUNS_KEY, 0, limit - 1)
        records = []
        for run_id in run_ids:
            record = await self.get_run(run_id)
            if record is not None:
                records.append(record)
        return records

    async def usage_since(self, since: datetime, layer: LayerType | None = None) -> UsageTotals:
        client = self._check_connected()
        layers = [layer] if layer is not None else list(LayerType)
        totals = UsageTotals()
        for current in layers:
            entries = await client.zrangebyscore(self._usage_key(current), to_millis(since), "+inf")
            for raw in entries:
                entry = json.loads(raw)
                totals = totals + UsageTotals(
                    requests=int(entry["requests"]),
                    tokens=int(entry["tokens"]),
                    cost=float(entry["cost"]),
                )
        return totals

    async def reset(self) -> None:
        """Delete every key owned by the run log."""
        client = self._check_connected()
        keys = [key async for key in client.scan_iter(match="cgmb:*")]
        if keys:
            await client.delete(*keys)

    @staticmethod
    def _parse_record(data: dict[str, str]) -> RunRecord:
        return RunRecord(
            run_id=data["run_id"],
            fingerprint=int(data["fingerprint"]),
            created_at=from_millis(int(data["created_at"])),
            result=WorkflowResult.from_dict(json.loads(data["result"])),
            graph=json.loads(data["graph"]),
        )
