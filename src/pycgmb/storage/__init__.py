"""Run ledgers for finished workflows.

Provides multiple storage implementations behind a common interface:
    - RunLog: Abstract interface
    - InMemoryRunLog: In-memory storage for tests and one-shot runs
    - SqliteRunLog: SQLite-backed storage
    - RedisRunLog: Redis-backed shared storage

Design: Adapter Pattern + Dependency Inversion
    The engine and the quota monitor depend on RunLog only.
"""

from pycgmb.storage.base import RunLog, RunRecord, StorageError, UsageTotals, usage_by_layer


def __getattr__(name: str):
    """Lazy import storage implementations so their drivers load on demand."""
    if name == "InMemoryRunLog":
        from pycgmb.storage.memory import InMemoryRunLog

        return InMemoryRunLog
    elif name == "RedisRunLog":
        from pycgmb.storage.redis import RedisRunLog

        return RedisRunLog
    elif name == "SqliteRunLog":
        from pycgmb.storage.sqlite import SqliteRunLog

        return SqliteRunLog
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


async def open_run_log(url: str) -> RunLog:
    """
    Create and connect a run log from a URL.

    Supported forms:
        ``memory://``, ``sqlite:///path/to/runs.db``, ``sqlite://:memory:``,
        ``redis://host:port/db``

    Raises:
        ValueError: Unknown scheme
    """
    if url == "memory://" or not url:
        from pycgmb.storage.memory import InMemoryRunLog

        run_log: RunLog = InMemoryRunLog()
    elif url.startswith("sqlite://"):
        from pycgmb.storage.sqlite import SqliteRunLog

        path = url.removeprefix("sqlite://")
        if path.startswith("/~"):
            path = path[1:]
        run_log = SqliteRunLog(path or ":memory:")
    elif url.startswith(("redis://", "rediss://", "unix://")):
        from pycgmb.storage.redis import RedisRunLog

        run_log = RedisRunLog(url)
    else:
        raise ValueError(f"Unsupported run log URL: {url!r}")

    await run_log.connect()
    return run_log


__all__ = [
    "RunLog",
    "RunRecord",
    "StorageError",
    "UsageTotals",
    "usage_by_layer",
    "open_run_log",
    "InMemoryRunLog",
    "SqliteRunLog",
    "RedisRunLog",
]
