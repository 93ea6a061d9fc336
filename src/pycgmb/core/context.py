"""Per-run execution context: layer availability and cancellation.

Both objects are created for one ``execute_workflow()`` call and passed
down explicitly. Nothing here is global, so two workflows can run side by
side in the same event loop without seeing each other's state.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime

from pycgmb.models import LayerType


@dataclass(frozen=True)
class LayerContext:
    """
    Read-only snapshot of which layers are usable for a run.

    Produced by ``LayerRegistry.probe()`` (or built by hand in tests) and
    consulted by the step executor and the fallback manager. A layer that
    is missing from the snapshot counts as unavailable.

    Attributes:
        availability: Layer -> usable right now
        probed_at: When the snapshot was taken
        notes: Optional per-layer reason (e.g. why a probe failed)
    """

    availability: Mapping[LayerType, bool]
    probed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    notes: Mapping[LayerType, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "availability", dict(self.availability))
        object.__setattr__(self, "notes", dict(self.notes))

    def is_available(self, layer: LayerType) -> bool:
        return self.availability.get(layer, False)

    @property
    def available_layers(self) -> list[LayerType]:
        return [layer for layer, ok in self.availability.items() if ok]

    @classmethod
    def all_available(cls, layers: Iterable[LayerType] = tuple(LayerType)) -> LayerContext:
        return cls({layer: True for layer in layers})


class CancellationToken:
    """
    Single cancellation signal shared by every step of a run.

    The workflow timeout calls ``cancel()``; in-flight layer calls, retry
    backoffs and fallbacks all watch the same token, so one cancel stops
    the whole run uniformly.

    Usage:
        ```python
        token = CancellationToken()
        loop.call_later(30.0, token.cancel, "workflow timed out after 30s")

        if not await token.sleep(0.5):
            ...  # cancelled while backing off
        ```
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "workflow cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """
        Sleep for ``delay`` seconds unless cancelled first.

        Returns:
            True if the full delay elapsed, False if the token was cancelled.
        """
        if self.cancelled:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(delay, 0.0))
        except TimeoutError:
            return True
        return False

    def __repr__(self) -> str:
        state = f"cancelled: {self._reason}" if self.cancelled else "active"
        return f"CancellationToken({state})"


__all__ = ["LayerContext", "CancellationToken"]
