"""Child process supervision — spawn, stream output, observe exit, stop."""
from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Mapping, Sequence

from sharedrop.core import subprocess_tracker
from sharedrop.core.errors import SpawnError
from sharedrop.core.events import EventBus, ProcessExitedEvent

logger = logging.getLogger(__name__)

# Called as hook(stream, text) with stream "out" or "err"
OutputHook = Callable[[str, str], None]

# Per-stream cap on the text kept in ManagedProcess buffers (tail is kept).
MAX_BUFFER_CHARS = 256 * 1024
_READ_CHUNK = 4096
# How long the exit watcher waits for stdout/stderr to drain after exit.
_DRAIN_TIMEOUT = 2.0


class ProcessState(Enum):
    RUNNING = "running"
    STOPPING = "stopping"
    EXITED = "exited"


@dataclass
class ManagedProcess:
    """One spawned child and everything observed about it."""

    role: str
    executable: str
    process: asyncio.subprocess.Process
    state: ProcessState = ProcessState.RUNNING
    stdout: str = ""
    stderr: str = ""
    returncode: int | None = None
    started_at: float = field(default_factory=time.time)
    stop_requested: bool = False
    _exited: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _tasks: list[asyncio.Task] = field(default_factory=list, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def is_alive(self) -> bool:
        return self.state is not ProcessState.EXITED

    @property
    def output(self) -> str:
        """Everything captured so far, stdout followed by stderr."""
        return self.stdout + self.stderr

    def append(self, stream: str, text: str) -> None:
        if stream == "out":
            self.stdout = (self.stdout + text)[-MAX_BUFFER_CHARS:]
        else:
            self.stderr = (self.stderr + text)[-MAX_BUFFER_CHARS:]

    async def wait(self) -> int | None:
        """Block until the exit watcher has recorded the exit."""
        await self._exited.wait()
        return self.returncode


def check_executable(role: str, executable: str) -> str:
    """Return an absolute path to *executable* or raise SpawnError.

    Bare names are looked up on PATH; anything with a separator must point
    at an existing, executable regular file.
    """
    if os.sep in executable or (os.altsep and os.altsep in executable):
        path = Path(executable)
        if not path.exists():
            raise SpawnError(role, executable, "not found")
        if not path.is_file():
            raise SpawnError(role, executable, "not a file")
        if not os.access(path, os.X_OK):
            raise SpawnError(role, executable, "not executable")
        return str(path)

    resolved = shutil.which(executable)
    if not resolved:
        raise SpawnError(role, executable, "not found in PATH")
    return resolved


class ProcessSupervisor:
    """Owns at most one live child per role.

    Exits are never raised: they are recorded on the ManagedProcess and
    published as ProcessExitedEvent so the owner can decide what to do.
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        stop_timeout: float = 5.0,
    ) -> None:
        self._event_bus = event_bus
        self._stop_timeout = stop_timeout
        self._processes: dict[str, ManagedProcess] = {}

    def get(self, role: str) -> ManagedProcess | None:
        """Live process for *role*, or None."""
        managed = self._processes.get(role)
        if managed and managed.is_alive:
            return managed
        return None

    async def start(
        self,
        role: str,
        executable: str,
        args: Sequence[str] = (),
        cwd: str | os.PathLike[str] | None = None,
        env: Mapping[str, str] | None = None,
        on_output: OutputHook | None = None,
    ) -> ManagedProcess:
        """Spawn *executable* under *role*.

        Raises SpawnError if the role is already live, the executable is
        missing or not runnable, or the OS refuses to start it.
        """
        if self.get(role):
            raise SpawnError(role, executable, "already running")

        path = check_executable(role, executable)
        child_env = {**os.environ, **env} if env else None

        logger.info("Starting %s: %s %s (cwd=%s)", role, path, " ".join(args), cwd)
        try:
            proc = await asyncio.create_subprocess_exec(
                path,
                *args,
                cwd=cwd,
                env=child_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SpawnError(role, executable, str(e)) from e

        managed = ManagedProcess(role=role, executable=path, process=proc)
        self._processes[role] = managed
        subprocess_tracker.track(proc.pid, role)
        logger.info("Started %s (pid %d)", role, proc.pid)

        readers = [
            asyncio.create_task(self._pump(managed, proc.stdout, "out", on_output)),
            asyncio.create_task(self._pump(managed, proc.stderr, "err", on_output)),
        ]
        watcher = asyncio.create_task(self._watch(managed, readers))
        managed._tasks = [*readers, watcher]
        return managed

    async def stop(self, managed: ManagedProcess, timeout: float | None = None) -> None:
        """SIGTERM, wait up to *timeout*, then SIGKILL.  Safe to call twice."""
        if managed.state is ProcessState.EXITED:
            return
        timeout = self._stop_timeout if timeout is None else timeout
        managed.stop_requested = True
        managed.state = ProcessState.STOPPING

        try:
            managed.process.terminate()
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(managed.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "%s (pid %d) ignored SIGTERM for %.1fs, killing",
                managed.role, managed.pid, timeout,
            )
            try:
                managed.process.kill()
            except ProcessLookupError:
                pass
            await managed.wait()
        logger.info("Stopped %s process", managed.role)

    async def stop_role(self, role: str, timeout: float | None = None) -> bool:
        """Stop the live process for *role*.  Returns False if there was none."""
        managed = self.get(role)
        if not managed:
            return False
        await self.stop(managed, timeout)
        return True

    async def stop_all(self) -> None:
        """Stop every live child, most recently started first."""
        for managed in reversed(list(self._processes.values())):
            await self.stop(managed)

    # ------------------------------------------------------------------

    async def _pump(
        self,
        managed: ManagedProcess,
        stream: asyncio.StreamReader | None,
        label: str,
        on_output: OutputHook | None,
    ) -> None:
        """Copy one output stream into the buffer, the log and the hook."""
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        partial = ""
        while True:
            chunk = await stream.read(_READ_CHUNK)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                managed.append(label, text)
                partial += text
                *lines, partial = partial.split("\n")
                for line in lines:
                    if line.strip():
                        logger.debug("%s(%s): %s", managed.role, label, line.rstrip())
                if on_output:
                    try:
                        on_output(label, text)
                    except Exception:
                        logger.exception("Output hook for %s failed", managed.role)
            if not chunk:
                break
        if partial.strip():
            logger.debug("%s(%s): %s", managed.role, label, partial.rstrip())

    async def _watch(self, managed: ManagedProcess, readers: list[asyncio.Task]) -> None:
        """Record the exit once the process is gone and its output drained."""
        returncode = await managed.process.wait()
        # Let the hooks see the last bytes before anyone learns of the exit
        _, pending = await asyncio.wait(readers, timeout=_DRAIN_TIMEOUT)
        for task in pending:
            task.cancel()

        managed.returncode = returncode
        managed.state = ProcessState.EXITED
        subprocess_tracker.untrack(managed.pid)
        if self._processes.get(managed.role) is managed:
            del self._processes[managed.role]

        if managed.stop_requested:
            logger.info("%s (pid %d) exited with code %s", managed.role, managed.pid, returncode)
        else:
            logger.warning(
                "%s (pid %d) exited unexpectedly with code %s",
                managed.role, managed.pid, returncode,
            )
        managed._exited.set()

        if self._event_bus:
            self._event_bus.publish(ProcessExitedEvent(
                role=managed.role,
                pid=managed.pid,
                returncode=returncode,
                expected=managed.stop_requested,
            ))
