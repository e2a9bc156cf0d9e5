"""Launch and observe transcoder subprocesses."""
from __future__ import annotations

import asyncio
import inspect
import logging
import signal
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Deque, Sequence

logger = logging.getLogger(__name__)

# ffmpeg traps SIGINT and exits with 255; shells report 130 and asyncio reports
# a negative signal number when the child dies from the signal itself.
GRACEFUL_STOP_CODES: frozenset[int] = frozenset({255, 130, -int(signal.SIGINT)})


class ExitKind(str, Enum):
    CLEAN = "clean"
    STOPPED = "stopped"
    ABNORMAL = "abnormal"


def classify_exit(returncode: int | None) -> ExitKind:
    """Map a raw exit code onto clean, stopped-by-signal or abnormal."""

    if returncode == 0:
        return ExitKind.CLEAN
    if returncode is not None and returncode in GRACEFUL_STOP_CODES:
        return ExitKind.STOPPED
    return ExitKind.ABNORMAL


@dataclass(frozen=True, slots=True)
class ProcessExit:
    pid: int
    returncode: int | None
    kind: ExitKind
    stderr_tail: tuple[str, ...] = ()

    @property
    def clean(self) -> bool:
        return self.kind is not ExitKind.ABNORMAL

    def describe(self) -> str:
        message = f"exited with code {self.returncode}"
        if self.stderr_tail:
            message = f"{message}: {self.stderr_tail[-1]}"
        return message


class SpawnError(RuntimeError):
    """Raised when the operating system fails to launch a subprocess."""


ExitCallback = Callable[[ProcessExit], "Awaitable[None] | None"]


class ProcessHandle:
    """Running subprocess tracked by the supervisor."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        label: str,
        tail_lines: int,
    ) -> None:
        self._process = process
        self.label = label
        self.started_at = time.time()
        self._tail: Deque[str] = deque(maxlen=max(1, tail_lines))
        self._exited: asyncio.Future[ProcessExit] = (
            asyncio.get_running_loop().create_future()
        )

    @property
    def pid(self) -> int:
        return int(self._process.pid)

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def running(self) -> bool:
        return not self._exited.done() and self._process.returncode is None

    @property
    def stderr_tail(self) -> tuple[str, ...]:
        return tuple(self._tail)

    def terminate(self) -> bool:
        """Ask the process to finish its output and exit."""

        if not self.running:
            return False
        try:
            self._process.send_signal(signal.SIGINT)
        except ProcessLookupError:
            return False
        logger.debug("Sent SIGINT to %s (pid %s)", self.label, self.pid)
        return True

    def kill(self) -> None:
        if not self.running:
            return
        try:
            self._process.kill()
        except ProcessLookupError:  # pragma: no cover - raced with exit
            pass

    async def wait(self) -> ProcessExit:
        return await asyncio.shield(self._exited)

    def _record_line(self, line: str) -> None:
        self._tail.append(line)

    def _set_exit(self, result: ProcessExit) -> None:
        if not self._exited.done():
            self._exited.set_result(result)


class ProcessSupervisor:
    """Spawn subprocesses and report each termination exactly once."""

    def __init__(self, *, stderr_tail_lines: int = 20) -> None:
        self._tail_lines = stderr_tail_lines
        self._watchers: set[asyncio.Task[None]] = set()

    async def spawn(
        self,
        argv: Sequence[str],
        on_exit: ExitCallback,
        *,
        label: str | None = None,
    ) -> ProcessHandle:
        """Start *argv* and return its handle.

        The exit callback is scheduled on a watcher task, so callers can
        register the returned handle before the callback can possibly run.
        """

        if not argv:
            raise SpawnError("Empty command line")
        name = label or str(argv[0])
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise SpawnError(f"Failed to launch {argv[0]}: {exc}") from exc
        handle = ProcessHandle(process, label=name, tail_lines=self._tail_lines)
        logger.info("Started %s (pid %s)", name, handle.pid)
        watcher = asyncio.create_task(self._watch(handle, on_exit))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)
        return handle

    async def join(self) -> None:
        """Wait for every watcher, including pending exit callbacks."""

        if self._watchers:
            await asyncio.gather(*list(self._watchers), return_exceptions=True)

    async def _watch(self, handle: ProcessHandle, on_exit: ExitCallback) -> None:
        reader = asyncio.create_task(self._drain_stderr(handle))
        returncode = await handle._process.wait()
        try:
            await asyncio.wait_for(reader, timeout=5.0)
        except asyncio.TimeoutError:  # pragma: no cover - stderr held open elsewhere
            logger.debug("stderr of %s still open after exit", handle.label)
        result = ProcessExit(
            pid=handle.pid,
            returncode=returncode,
            kind=classify_exit(returncode),
            stderr_tail=handle.stderr_tail,
        )
        log = logger.info if result.clean else logger.warning
        log("%s (pid %s) %s", handle.label, handle.pid, result.describe())
        handle._set_exit(result)
        try:
            outcome = on_exit(result)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("Exit handler for %s failed", handle.label)

    async def _drain_stderr(self, handle: ProcessHandle) -> None:
        stream = handle._process.stderr
        if stream is None:  # pragma: no cover - stderr is always piped
            return
        while True:
            try:
                raw = await stream.readline()
            except (ValueError, asyncio.LimitOverrunError):
                raw = await stream.read(65536)
            if not raw:
                break
            text = raw.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            handle._record_line(text)
            if "error" in text.lower():
                logger.warning("[%s] %s", handle.label, text)
            else:
                logger.debug("[%s] %s", handle.label, text)


__all__ = [
    "ExitKind",
    "GRACEFUL_STOP_CODES",
    "ProcessExit",
    "ProcessHandle",
    "ProcessSupervisor",
    "SpawnError",
    "classify_exit",
]
