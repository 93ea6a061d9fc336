"""
Tests for the run log backends.

The same behaviour is checked against the in-memory and SQLite adapters;
Redis runs only when REDIS_URL points at a server.
"""

import os
from datetime import UTC, datetime, timedelta

import pytest
from conftest import step

from pycgmb.models import (
    ExecutionMode,
    LayerType,
    StepResult,
    StepStatus,
    TaskGraph,
    WorkflowMetadata,
    WorkflowResult,
)
from pycgmb.storage import (
    InMemoryRunLog,
    SqliteRunLog,
    StorageError,
    UsageTotals,
    open_run_log,
    usage_by_layer,
)

GRAPH = TaskGraph(
    steps=(
        step("a"),
        step("img", "a", layer=LayerType.AISTUDIO, action="generate_image"),
        step("late", "img"),
    )
)


def _result(run_id, success=True):
    return WorkflowResult(
        run_id=run_id,
        success=success,
        results={
            "a": StepResult.succeeded(
                "a", LayerType.CLAUDE, "text", duration=0.5, attempts=2, tokens_used=100
            ),
            "img": StepResult.succeeded(
                "img",
                LayerType.AISTUDIO,
                {"content": "", "media": []},
                duration=1.0,
                attempts=1,
                tokens_used=300,
                cost=0.001,
            ),
            "late": StepResult.not_run("late", LayerType.CLAUDE, "halted", StepStatus.NOT_EXECUTED),
        },
        metadata=WorkflowMetadata(
            total_duration=1.5,
            steps_completed=2,
            steps_failed=1,
            steps_skipped=1,
            total_tokens=400,
            total_cost=0.001,
            mode=ExecutionMode.SEQUENTIAL,
            phases=(("a",), ("img",), ("late",)),
        ),
        summary="2/3 workflow steps completed successfully, 1 failed.",
    )


@pytest.fixture(params=["memory", "sqlite"])
async def run_log(request, in_memory_run_log, sqlite_memory_run_log):
    if request.param == "memory":
        return in_memory_run_log
    return sqlite_memory_run_log


def test_usage_by_layer_skips_steps_that_never_ran():
    usage = usage_by_layer(_result("r"))

    assert usage == {
        LayerType.CLAUDE: UsageTotals(requests=2, tokens=100, cost=0.0),
        LayerType.AISTUDIO: UsageTotals(requests=1, tokens=300, cost=0.001),
    }


@pytest.mark.asyncio
async def test_record_and_get(run_log):
    result = _result("run-1", success=False)

    record = await run_log.record_run("run-1", GRAPH, result)
    fetched = await run_log.get_run("run-1")

    assert record.fingerprint == GRAPH.fingerprint()
    assert fetched.run_id == "run-1"
    assert fetched.result == result
    assert not fetched.success
    assert fetched.graph["steps"][1]["id"] == "img"
    assert fetched.created_at.tzinfo is not None


@pytest.mark.asyncio
async def test_unknown_run(run_log):
    assert await run_log.get_run("nope") is None


@pytest.mark.asyncio
async def test_duplicate_run_id_is_rejected(run_log):
    await run_log.record_run("dup", GRAPH, _result("dup"))

    with pytest.raises(StorageError):
        await run_log.record_run("dup", GRAPH, _result("dup"))

    assert len(await run_log.list_runs()) == 1


@pytest.mark.asyncio
async def test_list_runs_newest_first(run_log):
    for run_id in ("r1", "r2", "r3"):
        await run_log.record_run(run_id, GRAPH, _result(run_id))

    records = await run_log.list_runs(limit=2)

    assert [record.run_id for record in records] == ["r3", "r2"]


@pytest.mark.asyncio
async def test_usage_since_per_layer(run_log):
    await run_log.record_run("r1", GRAPH, _result("r1"))
    await run_log.record_run("r2", GRAPH, _result("r2"))
    hour_ago = datetime.now(UTC) - timedelta(hours=1)

    aistudio = await run_log.usage_since(hour_ago, LayerType.AISTUDIO)
    everything = await run_log.usage_since(hour_ago)
    future = await run_log.usage_since(datetime.now(UTC) + timedelta(hours=1))

    assert aistudio.requests == 2
    assert aistudio.tokens == 600
    assert aistudio.cost == pytest.approx(0.002)
    assert everything.requests == 6
    assert everything.tokens == 800
    assert future == UsageTotals()


@pytest.mark.asyncio
async def test_reset(run_log):
    await run_log.record_run("r1", GRAPH, _result("r1"))

    await run_log.reset()

    assert await run_log.list_runs() == []
    assert await run_log.get_run("r1") is None


@pytest.mark.asyncio
async def test_sqlite_file_persists_across_connections(temp_db_path):
    async with SqliteRunLog(str(temp_db_path)) as first:
        await first.record_run("r1", GRAPH, _result("r1"))

    async with SqliteRunLog(str(temp_db_path)) as second:
        record = await second.get_run("r1")

    assert record is not None
    assert record.result.summary == "2/3 workflow steps completed successfully, 1 failed."


@pytest.mark.asyncio
async def test_sqlite_requires_connect():
    with pytest.raises(StorageError, match="Not connected"):
        await SqliteRunLog(":memory:").get_run("x")


@pytest.mark.asyncio
async def test_open_run_log_schemes(temp_db_path):
    memory = await open_run_log("memory://")
    sqlite_memory = await open_run_log("sqlite://:memory:")
    sqlite_file = await open_run_log(f"sqlite://{temp_db_path}")

    assert isinstance(memory, InMemoryRunLog)
    assert sqlite_memory.db_path == ":memory:"
    assert sqlite_file.db_path == str(temp_db_path)

    await sqlite_memory.close()
    await sqlite_file.close()

    with pytest.raises(ValueError, match="Unsupported"):
        await open_run_log("postgres://localhost/runs")


@pytest.mark.redis
@pytest.mark.asyncio
@pytest.mark.skipif(not os.environ.get("REDIS_URL"), reason="REDIS_URL not set")
async def test_redis_round_trip():
    from pycgmb.storage import RedisRunLog

    run_log = RedisRunLog(os.environ["REDIS_URL"])
    await run_log.connect()
    try:
        await run_log.reset()
        await run_log.record_run("r1", GRAPH, _result("r1"))
        await run_log.record_run("r2", GRAPH, _result("r2"))

        fetched = await run_log.get_run("r1")
        listed = await run_log.list_runs()
        usage = await run_log.usage_since(datetime.now(UTC) - timedelta(minutes=5))

        assert fetched.result == _result("r1")
        assert [record.run_id for record in listed] == ["r2", "r1"]
        assert usage.tokens == 800
        with pytest.raises(StorageError):
            await run_log.record_run("r1", GRAPH, _result("r1"))
    finally:
        await run_log.reset()
        await run_log.close()
