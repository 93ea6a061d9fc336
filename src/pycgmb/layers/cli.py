"""
Layers backed by a local command line tool.

Every call spawns the tool with ``asyncio.create_subprocess_exec``. If the
calling task is cancelled (step timeout, workflow timeout) the process is
killed and reaped before the cancellation propagates, so no orphaned
process outlives its step.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from abc import abstractmethod
from collections.abc import Mapping, Sequence

from pycgmb.core.errors import LayerInitializationError, LayerUnavailableError
from pycgmb.layers.base import Layer, LayerResponse
from pycgmb.layers.failures import classify_layer_failure
from pycgmb.models import Step

logger = logging.getLogger(__name__)

STDERR_DETAIL_CHARS = 500


class CliLayer(Layer):
    """
    Base class for CLI-backed layers.

    Subclasses provide ``build_args()`` and ``parse_output()``.

    Args:
        executable: Command name or path of the tool
        extra_args: Arguments placed before the step's own arguments
        env: Extra environment variables for the process
        max_concurrency: Concurrent processes allowed per run
        timeout: Base step timeout in seconds, overriding the layer default
    """

    def __init__(
        self,
        executable: str,
        *,
        extra_args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        max_concurrency: int = 2,
        timeout: float | None = None,
    ):
        super().__init__(max_concurrency=max_concurrency, timeout=timeout)
        self.executable = executable
        self.extra_args = tuple(extra_args)
        self._env = dict(env or {})
        self._path: str | None = None

    @property
    def path(self) -> str | None:
        """Resolved executable path, once initialized."""
        return self._path

    async def _setup(self) -> None:
        path = shutil.which(self.executable)
        if path is None:
            raise LayerInitializationError(
                self.layer_type, f"'{self.executable}' was not found on PATH"
            )
        self._path = path
        logger.debug(f"{self.layer_type} layer using {path}")

    async def is_available(self) -> bool:
        return self._path is not None and os.access(self._path, os.X_OK)

    @abstractmethod
    def build_args(self, step: Step) -> list[str]:
        """Command line arguments for ``step`` (without the executable)."""

    @abstractmethod
    def parse_output(self, step: Step, args: Sequence[str], stdout: str) -> LayerResponse:
        """Turn the tool's standard output into a LayerResponse."""

    async def execute(self, step: Step) -> LayerResponse:
        if not self._initialized:
            try:
                await self.initialize()
            except LayerInitializationError as e:
                raise LayerUnavailableError(self.layer_type, e.reason) from e

        args = [*self.extra_args, *self.build_args(step)]
        stdout = await self.run(args)
        return self.parse_output(step, args, stdout)

    async def run(self, args: Sequence[str]) -> str:
        """
        Run the tool once and return its standard output.

        Raises:
            LayerUnavailableError: The executable vanished
            StepError: Non-zero exit, classified from the tool's output
        """
        env = {**os.environ, **self._env} if self._env else None
        try:
            process = await asyncio.create_subprocess_exec(
                self._path or self.executable,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError as e:
            raise LayerUnavailableError(self.layer_type, f"'{self.executable}' not found") from e

        try:
            raw_out, raw_err = await process.communicate()
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        stdout = raw_out.decode("utf-8", errors="replace")
        stderr = raw_err.decode("utf-8", errors="replace")
        if process.returncode != 0:
            classification = classify_layer_failure(
                self.layer_type,
                exit_code=process.returncode,
                stdout=stdout,
                stderr=stderr,
            )
            detail = (stderr.strip() or stdout.strip())[-STDERR_DETAIL_CHARS:]
            logger.debug(
                f"{self.layer_type} exited {process.returncode} "
                f"({classification.reason_code}, pattern={classification.matched_pattern!r})"
            )
            raise classification.to_error(detail)
        return stdout

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
        logger.debug(f"Killed {self.layer_type} process {process.pid}")

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.executable!r}, max_concurrency={self.max_concurrency})"


__all__ = ["CliLayer"]
