"""Shared Analyzer launch algorithm; environments override two hooks only."""

from __future__ import annotations

import logging
import queue
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from course_queue.errors import (
    ExecutionTimeoutError,
    TransientExecutionError,
    ValidationError,
)
from course_queue.workspace import Workspace

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_POLL_SECONDS = 0.1
_TERMINATE_GRACE_SECONDS = 2.0
_MAX_CAPTURED_LINES = 5_000

ProgressLineCallback = Callable[[str], None]
AbortCheck = Callable[[], bool]


@dataclass(slots=True)
class ValidationResult:
    """Outcome of a strategy precondition check."""

    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def raise_if_invalid(self, strategy_name: str) -> None:
        if not self.valid:
            raise ValidationError(
                f"{strategy_name} validation failed: {'; '.join(self.errors)}",
                errors=self.errors,
            )


@dataclass(slots=True)
class CommandConfig:
    """Fully resolved Analyzer invocation."""

    executable: str
    arguments: list[str]
    environment: dict[str, str]
    timeout_seconds: float | None
    cwd: Path | None = None

    @property
    def argv(self) -> list[str]:
        return [self.executable, *self.arguments]


@dataclass(slots=True)
class ExecutionResult:
    """Analyzer process outcome."""

    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False
    aborted: bool = False
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.aborted

    def raise_for_status(self, *, timeout_seconds: float | None = None) -> None:
        """Raise the transient error matching a failed run; no-op on success or abort."""

        if self.timed_out:
            raise ExecutionTimeoutError(f"Analyzer timed out after {timeout_seconds or '?'}s")
        if self.exit_code != 0 and not self.aborted:
            raise TransientExecutionError(f"Analyzer exited with code {self.exit_code}")


class ExecutionStrategy(ABC):
    """Template method: spawn, stream lines, enforce timeout and abort.

    Subclasses decide only *whether* the Analyzer may run (:meth:`validate`) and
    *how* it is launched (:meth:`get_command_config`).
    """

    name = "base"

    @abstractmethod
    def validate(self) -> ValidationResult:
        """Check launch preconditions without side effects."""

    @abstractmethod
    def get_command_config(self, workspace: Workspace) -> CommandConfig:
        """Build the Analyzer invocation for a materialized workspace."""

    def execute(
        self,
        workspace: Workspace,
        on_progress_line: ProgressLineCallback | None = None,
        abort_requested: AbortCheck | None = None,
    ) -> ExecutionResult:
        """Run the Analyzer to completion, delivering stdout lines in order.

        Lines are handed to ``on_progress_line`` on the calling thread. A
        configured timeout or a positive ``abort_requested()`` terminates the
        process (SIGTERM, then SIGKILL after a grace period).
        """

        config = self.get_command_config(workspace)
        logger.info(
            "Starting Analyzer via %s strategy: %s (timeout=%s)",
            self.name,
            config.executable,
            config.timeout_seconds if config.timeout_seconds is not None else "none",
        )
        started = time.monotonic()
        try:
            process = subprocess.Popen(  # noqa: S603
                config.argv,
                env=config.environment,
                cwd=str(config.cwd) if config.cwd is not None else None,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError as error:
            raise ValidationError(f"Analyzer executable not found: {config.executable}") from error
        except OSError as error:
            raise TransientExecutionError(f"Analyzer failed to start: {error}") from error

        lines: queue.Queue[tuple[str, str | None]] = queue.Queue()
        readers = [
            _start_reader(process.stdout, "stdout", lines),
            _start_reader(process.stderr, "stderr", lines),
        ]
        stdout_lines: deque[str] = deque(maxlen=_MAX_CAPTURED_LINES)
        stderr_lines: deque[str] = deque(maxlen=_MAX_CAPTURED_LINES)
        open_streams = {"stdout", "stderr"}
        timed_out = False
        aborted = False

        try:
            while open_streams or process.poll() is None:
                try:
                    stream, line = lines.get(timeout=_POLL_SECONDS)
                except queue.Empty:
                    stream, line = "", None
                if stream and line is None:
                    open_streams.discard(stream)
                elif stream == "stdout" and line is not None:
                    stdout_lines.append(line)
                    if on_progress_line is not None:
                        on_progress_line(line)
                elif stream == "stderr" and line is not None:
                    stderr_lines.append(line)
                    logger.debug("Analyzer stderr: %s", line)

                elapsed = time.monotonic() - started
                if config.timeout_seconds is not None and elapsed >= config.timeout_seconds:
                    logger.warning("Analyzer exceeded %.0fs timeout, terminating", config.timeout_seconds)
                    timed_out = True
                    break
                if abort_requested is not None and abort_requested():
                    logger.info("Abort requested, terminating Analyzer")
                    aborted = True
                    break
        finally:
            if process.poll() is None:
                _terminate_process(process)
            for reader in readers:
                reader.join(timeout=_TERMINATE_GRACE_SECONDS)

        # Tail that arrived between the last poll and process exit.
        while True:
            try:
                stream, line = lines.get_nowait()
            except queue.Empty:
                break
            if line is None:
                continue
            if stream == "stdout":
                stdout_lines.append(line)
                if on_progress_line is not None and not (timed_out or aborted):
                    on_progress_line(line)
            else:
                stderr_lines.append(line)

        exit_code = process.returncode if process.returncode is not None else -1
        if timed_out:
            exit_code = TIMEOUT_EXIT_CODE
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Analyzer finished: exit_code=%s timed_out=%s aborted=%s duration_ms=%s",
            exit_code,
            timed_out,
            aborted,
            duration_ms,
        )
        return ExecutionResult(
            exit_code=exit_code,
            stdout="\n".join(stdout_lines),
            stderr="\n".join(stderr_lines),
            timed_out=timed_out,
            aborted=aborted,
            duration_ms=duration_ms,
        )


def filtered_environment(
    source: Mapping[str, str],
    *,
    include: tuple[str, ...] | None = None,
    exclude_prefixes: tuple[str, ...] = (),
    exclude_names: tuple[str, ...] = (),
) -> dict[str, str]:
    """Copy ``source`` keeping only ``include`` names (when given) minus exclusions."""

    result: dict[str, str] = {}
    for key, value in source.items():
        if include is not None and key not in include:
            continue
        if key in exclude_names or key.startswith(exclude_prefixes):
            continue
        result[key] = value
    return result


def _start_reader(
    stream: IO[str] | None,
    name: str,
    sink: queue.Queue[tuple[str, str | None]],
) -> threading.Thread:
    def _pump() -> None:
        try:
            if stream is not None:
                for raw in iter(stream.readline, ""):
                    sink.put((name, raw.rstrip("\r\n")))
        except (OSError, ValueError):
            logger.debug("Analyzer %s stream closed abruptly", name)
        finally:
            sink.put((name, None))

    thread = threading.Thread(target=_pump, name=f"analyzer-{name}", daemon=True)
    thread.start()
    return thread


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=_TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=_TERMINATE_GRACE_SECONDS)
