"""Subprocess execution with cancellation support.

Every external tool (toolchain installer, compiler, binding generator, test
runner) goes through ``run_command`` so that one CancellationToken can
terminate all in-flight processes of a pipeline run.
"""

from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import structlog

from bindery_core.errors import ConfigurationError, PipelineCancelled

logger = structlog.get_logger(__name__)

# Seconds between SIGTERM and SIGKILL to a command's process group on cancellation
TERMINATE_GRACE_SECONDS = 5.0


def render(template: str, values: Mapping[str, object]) -> str:
    """Substitute ``{placeholder}`` values into a template string.

    Raises:
        ConfigurationError: If the template references an unknown placeholder.

    Example:
        >>> render("--target={triple}", {"triple": "aarch64-apple-darwin"})
        '--target=aarch64-apple-darwin'
    """
    try:
        return template.format_map({k: "" if v is None else str(v) for k, v in values.items()})
    except KeyError as e:
        available = ", ".join(sorted(values))
        raise ConfigurationError(
            f"Unknown placeholder {{{e.args[0]}}} in '{template}'. Available: {available}"
        ) from None
    except (IndexError, ValueError) as e:
        raise ConfigurationError(f"Invalid template '{template}': {e}") from None


def render_command(command: list[str], values: Mapping[str, object]) -> list[str]:
    return [render(part, values) for part in command]


def render_env(env: Mapping[str, str], values: Mapping[str, object]) -> dict[str, str]:
    return {key: render(value, values) for key, value in env.items()}


class CancellationToken:
    """Cooperative cancellation shared by all stages of one run.

    Stages check ``cancelled`` between units of work; ``cancel()`` also
    terminates every subprocess registered through ``run_command``.

    Example:
        >>> token = CancellationToken()
        >>> token.cancelled
        False
        >>> token.cancel()
        >>> token.cancelled
        True
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._processes: set[subprocess.Popen[bytes]] = set()
        self._log = logger.bind(component="cancellation")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str = "pipeline", subject: str | None = None) -> None:
        if self.cancelled:
            raise PipelineCancelled(stage=stage, subject=subject)

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def register(self, process: subprocess.Popen[bytes]) -> None:
        with self._lock:
            self._processes.add(process)
            cancelled = self.cancelled
        if cancelled:
            _terminate(process)

    def unregister(self, process: subprocess.Popen[bytes]) -> None:
        with self._lock:
            self._processes.discard(process)

    @property
    def active_processes(self) -> int:
        with self._lock:
            return len(self._processes)

    def cancel(self) -> None:
        """Cancel the run and terminate all registered subprocesses."""
        with self._lock:
            self._event.set()
            processes = list(self._processes)
        self._log.warning("pipeline_cancel_requested", in_flight=len(processes))
        for process in processes:
            _terminate(process)


def _session_kwargs() -> dict[str, object]:
    if os.name == "posix":
        return {"start_new_session": True}
    return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}


def _signal_group(process: subprocess.Popen[bytes], sig: int) -> None:
    try:
        os.killpg(process.pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


def _terminate(process: subprocess.Popen[bytes]) -> None:
    """Stop a command and everything it spawned.

    Each command leads its own process group, so compiler drivers and test
    runners that fork workers are stopped together: SIGTERM to the group,
    then SIGKILL to whatever is left after the grace period.
    """
    if os.name != "posix":
        if process.poll() is None:
            process.terminate()
        return
    _signal_group(process, signal.SIGTERM)
    try:
        process.wait(timeout=TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        pass
    _signal_group(process, signal.SIGKILL)


def _kill(process: subprocess.Popen[bytes]) -> None:
    if os.name == "posix":
        _signal_group(process, signal.SIGKILL)
    else:
        process.kill()


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one external command."""

    command: list[str]
    returncode: int
    output: str
    duration_ms: int
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.cancelled


def run_command(
    command: list[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    log_path: Path | None = None,
    token: CancellationToken | None = None,
    timeout_seconds: float | None = None,
) -> CommandResult:
    """Run a command to completion, capturing combined output.

    Args:
        command: Argument vector (no shell).
        cwd: Working directory.
        env: Extra environment merged over the current process environment.
        log_path: If set, output is streamed there line by line while the
            command runs, after a ``$ <argv>`` header line.
        token: Cancellation token; the process is registered with it.
        timeout_seconds: Kill the process group after this many seconds.

    Returns:
        CommandResult. A timeout is reported as returncode -1.

    Raises:
        FileNotFoundError: If the executable does not exist.
        PipelineCancelled: If the token was cancelled before start.
    """
    if token is not None:
        token.raise_if_cancelled()

    full_env = dict(os.environ)
    if env:
        full_env.update(env)

    log = logger.bind(command=command[0], cwd=str(cwd) if cwd else None)
    log.debug("command_started", argv=command)
    start = time.monotonic()

    process = subprocess.Popen(
        command,
        cwd=cwd,
        env=full_env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        **_session_kwargs(),
    )

    log_file = None
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_file = log_path.open("w", encoding="utf-8")
        log_file.write(f"$ {' '.join(command)}\n")
        log_file.flush()

    lines: list[str] = []

    def pump() -> None:
        assert process.stdout is not None
        for raw in iter(process.stdout.readline, b""):
            line = raw.decode("utf-8", errors="replace")
            lines.append(line)
            if log_file is not None:
                log_file.write(line)
                log_file.flush()

    reader = threading.Thread(target=pump, name=f"bindery-output-{process.pid}", daemon=True)
    reader.start()

    if token is not None:
        token.register(process)
    try:
        try:
            returncode = process.wait(timeout=timeout_seconds)
        except subprocess.TimeoutExpired:
            _kill(process)
            process.wait()
            returncode = -1
            log.error("command_timeout", timeout_seconds=timeout_seconds)
        reader.join()
    finally:
        if token is not None:
            token.unregister(process)
        if process.stdout is not None:
            process.stdout.close()
        if log_file is not None:
            log_file.close()

    output = "".join(lines)
    duration_ms = int((time.monotonic() - start) * 1000)
    cancelled = token is not None and token.cancelled

    log.debug(
        "command_finished",
        returncode=returncode,
        duration_ms=duration_ms,
        cancelled=cancelled,
    )
    return CommandResult(
        command=command,
        returncode=returncode,
        output=output,
        duration_ms=duration_ms,
        cancelled=cancelled,
    )
