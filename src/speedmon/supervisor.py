"""
Supervision of the external measurement tool.

High level
----------
`ToolSupervisor.run()` spawns the tool, pumps its stdout line by line and
its stderr chunk by chunk, and turns what it reads into `Outcome` values
handed to an async sink:

- stdout JSON lines go through the `ProgressNormalizer`; a `result` line, or
  an `{"error": ...}` line, ends the measurement.
- stderr text is classified by `classify_stderr`. Connectivity, socket and
  opaque tool failures end the measurement and stop the tool; protocol noise
  is logged and ignored.
- if the tool exits cleanly without a `result` line, the last complete JSON
  object of the whole stdout buffer is shaped instead, through the same
  `shape_result` used by the streaming path.
- a watchdog enforces the hard timeout: SIGTERM, then SIGKILL after the
  grace period.

A latch guarantees that exactly one `Terminal` reaches the sink and that
nothing follows it. `cancel()` is synchronous so that an observer disconnect
signals the tool before control returns to the event loop.
"""

from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional, Sequence

from .config import Settings
from .measurement import last_json_object, shape_result
from .normalizer import ProgressNormalizer
from .outcome import (
    NETWORK_UNAVAILABLE_MESSAGE,
    PARSE_FAILURE_MESSAGE,
    SOCKET_ERROR_MESSAGE,
    UNKNOWN_TOOL_ERROR_MESSAGE,
    Outcome,
    Progress,
    Terminal,
    TerminalKind,
    exit_failure_message,
)

LOGGER = logging.getLogger(__name__)

# Tool results are a few KB; leave headroom for verbose builds.
STREAM_LIMIT = 1024 * 1024
STDERR_CHUNK = 4096

Sink = Callable[[Outcome], Awaitable[None]]


# ------------------------------------------------------------------------------
# stderr classification
# ------------------------------------------------------------------------------


class StderrClass(Enum):
    NETWORK_UNAVAILABLE = "network_unavailable"
    SOCKET_ERROR = "socket_error"
    UNKNOWN_TOOL_ERROR = "unknown_tool_error"
    PROTOCOL_NOISE = "protocol_noise"
    UNRECOGNIZED = "unrecognized"


def classify_stderr(text: str) -> StderrClass:
    """
    Map raw stderr text to a class. Checks run in this order, so text that
    mentions both a socket and a protocol error is a socket error.
    """
    if "No servers" in text or "Unable to connect" in text:
        return StderrClass.NETWORK_UNAVAILABLE
    if "Cannot open socket" in text or "socket" in text:
        return StderrClass.SOCKET_ERROR
    if "Unknown error" in text or "Error: [0]" in text:
        return StderrClass.UNKNOWN_TOOL_ERROR
    if "Protocol error" in text or "Did not receive HELLO" in text:
        return StderrClass.PROTOCOL_NOISE
    return StderrClass.UNRECOGNIZED


def stderr_terminal(verdict: StderrClass) -> Optional[Terminal]:
    """The terminal outcome for a fatal stderr class, None for non-fatal ones."""
    if verdict is StderrClass.NETWORK_UNAVAILABLE:
        return Terminal(TerminalKind.NETWORK_UNAVAILABLE, NETWORK_UNAVAILABLE_MESSAGE)
    if verdict is StderrClass.SOCKET_ERROR:
        return Terminal(TerminalKind.SOCKET_ERROR, SOCKET_ERROR_MESSAGE, network_error=True)
    if verdict is StderrClass.UNKNOWN_TOOL_ERROR:
        return Terminal(TerminalKind.UNKNOWN_TOOL_ERROR, UNKNOWN_TOOL_ERROR_MESSAGE, retryable=True)
    return None


# ------------------------------------------------------------------------------
# Process handle
# ------------------------------------------------------------------------------


class ProcessHandle:
    """
    Thin wrapper over an asyncio subprocess exposing incremental stdout
    lines, incremental stderr chunks, the exit code and termination.
    """

    def __init__(self, process: asyncio.subprocess.Process):
        self._process = process

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    async def stdout_lines(self) -> AsyncIterator[str]:
        stream = self._process.stdout
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            yield line.decode("utf-8", errors="replace")

    async def stderr_chunks(self) -> AsyncIterator[str]:
        stream = self._process.stderr
        if stream is None:
            return
        while True:
            chunk = await stream.read(STDERR_CHUNK)
            if not chunk:
                break
            yield chunk.decode("utf-8", errors="replace")

    async def wait(self) -> int:
        return await self._process.wait()

    def terminate(self) -> None:
        if self._process.returncode is not None:
            return
        try:
            self._process.terminate()
        except ProcessLookupError:
            pass

    def kill(self) -> None:
        if self._process.returncode is not None:
            return
        try:
            self._process.kill()
        except ProcessLookupError:
            pass

    async def shutdown(self, grace_seconds: float) -> Optional[int]:
        """SIGTERM, then SIGKILL if the process outlives `grace_seconds`."""
        if self._process.returncode is not None:
            return self._process.returncode
        self.terminate()
        if grace_seconds > 0:
            try:
                return await asyncio.wait_for(self._process.wait(), timeout=grace_seconds)
            except asyncio.TimeoutError:
                LOGGER.warning(f"Process {self.pid} ignored SIGTERM for {grace_seconds}s, killing")
        self.kill()
        return await self._process.wait()


async def start(command: str, args: Sequence[str]) -> ProcessHandle:
    """Spawn `command` with piped stdout/stderr and return its handle."""
    process = await asyncio.create_subprocess_exec(
        command,
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        limit=STREAM_LIMIT,
    )
    return ProcessHandle(process)


async def tool_version(settings: Settings, timeout: float = 5.0) -> Optional[str]:
    """Return the tool's `--version` banner, or None if it cannot be run."""
    try:
        handle = await start(settings.command, list(settings.tool_command[1:]) + ["--version"])
    except OSError as e:
        LOGGER.warning(f"Measurement tool {settings.command!r} is not available: {e}")
        return None
    lines: list[str] = []

    async def _collect() -> int:
        async for line in handle.stdout_lines():
            lines.append(line.strip())
        return await handle.wait()

    try:
        code = await asyncio.wait_for(_collect(), timeout=timeout)
    except asyncio.TimeoutError:
        await handle.shutdown(0)
        return None
    if code != 0:
        return None
    return next((line for line in lines if line), "")


# ------------------------------------------------------------------------------
# Supervisor
# ------------------------------------------------------------------------------


class ToolSupervisor:
    """
    Runs one measurement tool invocation and reports its outcomes.

    Parameters
    ----------
    settings : Settings
        Tool command, timeout and kill grace.
    sink : async callable
        Receives every `Progress` and exactly one `Terminal`.
    request_id : str
        Used to prefix log messages.
    """

    def __init__(self, settings: Settings, sink: Sink, request_id: str = "-"):
        self._settings = settings
        self._sink = sink
        self._request_id = request_id
        self._normalizer = ProgressNormalizer()
        self._handle: Optional[ProcessHandle] = None
        self._latched = False
        self._terminal: Optional[Terminal] = None
        self._buffer: list[str] = []
        self._stopper: Optional[asyncio.Task] = None

    @property
    def normalizer(self) -> ProgressNormalizer:
        return self._normalizer

    @property
    def handle(self) -> Optional[ProcessHandle]:
        return self._handle

    @property
    def terminal(self) -> Optional[Terminal]:
        return self._terminal

    @property
    def finished(self) -> bool:
        return self._latched

    def _log(self, level: int, message: str) -> None:
        LOGGER.log(level, f"[{self._request_id}] {message}")

    async def _report(self, outcome: Outcome) -> None:
        if self._latched:
            self._log(logging.DEBUG, f"Discarding {type(outcome).__name__} after termination")
            return
        if isinstance(outcome, Terminal):
            self._latched = True
            self._terminal = outcome
            self._log(logging.INFO, f"Terminal outcome: {outcome.kind.value}")
        await self._sink(outcome)

    def _request_stop(self) -> None:
        if self._handle is None or self._handle.returncode is not None:
            return
        self._handle.terminate()
        if self._stopper is None:
            self._stopper = asyncio.ensure_future(self._handle.shutdown(self._settings.kill_grace))

    def cancel(self) -> None:
        """
        Stop the measurement without reporting anything further. Safe to call
        at any time, including before the tool has been spawned.
        """
        if not self._latched:
            self._latched = True
            self._terminal = Terminal(TerminalKind.CANCELLED, "Measurement cancelled")
            self._log(logging.INFO, "Cancelled, terminating measurement tool")
        self._request_stop()

    async def run(self) -> Optional[Terminal]:
        command, args = self._settings.command, self._settings.tool_args()
        self._log(logging.INFO, f"Starting {command} {' '.join(args)}")
        try:
            self._handle = await start(command, args)
        except OSError as e:
            self._log(logging.ERROR, f"Could not start measurement tool: {e}")
            await self._report(Terminal(TerminalKind.SPAWN_FAILED, str(e)))
            return self._terminal

        self._log(logging.INFO, f"Measurement tool running with PID {self._handle.pid}")
        if self._latched:
            # cancelled while spawning
            self._request_stop()

        watchdog = asyncio.ensure_future(self._watchdog())
        try:
            await asyncio.gather(self._pump_stdout(), self._pump_stderr())
            code = await self._handle.wait()
            await self._on_exit(code)
        finally:
            watchdog.cancel()
            await self._handle.shutdown(self._settings.kill_grace)
            if self._stopper is not None:
                await asyncio.gather(self._stopper, return_exceptions=True)
        return self._terminal

    async def _watchdog(self) -> None:
        await asyncio.sleep(self._settings.timeout)
        if self._latched:
            return
        self._log(logging.WARNING, f"Timed out after {self._settings.timeout}s, terminating")
        await self._report(
            Terminal(
                TerminalKind.TIMEOUT,
                f"Speed test timed out after {self._settings.timeout_label()}. Please try again.",
            )
        )
        await self._handle.shutdown(self._settings.kill_grace)

    async def _pump_stdout(self) -> None:
        async for line in self._handle.stdout_lines():
            self._buffer.append(line)
            text = line.strip()
            if self._latched or not text.startswith("{"):
                continue
            try:
                event = json.loads(text)
            except json.JSONDecodeError:
                self._log(logging.DEBUG, f"Ignoring malformed JSON line: {text[:120]}")
                continue
            if not isinstance(event, dict):
                continue
            await self._on_event(event)

    async def _on_event(self, event: dict) -> None:
        if event.get("error"):
            self._log(logging.ERROR, f"Measurement tool reported: {event['error']}")
            await self._report(Terminal(TerminalKind.TOOL_ERROR, f"Speedtest error: {event['error']}"))
            self._request_stop()
            return

        if event.get("type") == "result":
            self._normalizer.consume(event)
            await self._report(Terminal(TerminalKind.COMPLETED, result=shape_result(event)))
            return

        progress = self._normalizer.consume(event)
        if progress is not None:
            await self._report(Progress(progress))

    async def _pump_stderr(self) -> None:
        async for chunk in self._handle.stderr_chunks():
            if self._latched:
                continue
            verdict = classify_stderr(chunk)
            terminal = stderr_terminal(verdict)
            if terminal is not None:
                self._log(logging.ERROR, f"Fatal stderr ({verdict.value}): {chunk.strip()}")
                await self._report(terminal)
                self._request_stop()
            elif verdict is StderrClass.PROTOCOL_NOISE:
                self._log(logging.WARNING, f"Protocol noise on stderr, continuing: {chunk.strip()}")
            else:
                self._log(logging.INFO, f"stderr: {chunk.strip()}")

    async def _on_exit(self, code: int) -> None:
        self._log(logging.INFO, f"Measurement tool exited with code {code}")
        if self._latched:
            return
        if code != 0:
            await self._report(Terminal(TerminalKind.EXIT_FAILURE, exit_failure_message(code)))
            return

        self._log(logging.INFO, "Clean exit without a result event, parsing accumulated output")
        tool_json = last_json_object("".join(self._buffer))
        if tool_json is None:
            await self._report(Terminal(TerminalKind.PARSE_FAILURE, PARSE_FAILURE_MESSAGE))
            return
        self._normalizer.consume({**tool_json, "type": "result"})
        await self._report(Terminal(TerminalKind.COMPLETED, result=shape_result(tool_json)))
