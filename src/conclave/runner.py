# Copyright (c) Syntropy Systems
"""Process runner with timeouts and orphan prevention."""
from __future__ import annotations

import contextlib
import ctypes
import logging
import os
import signal
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass
from typing import IO, TYPE_CHECKING, Optional

from conclave.errors import SubprocessFailure

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

logger = logging.getLogger(__name__)


def setup_pdeathsig() -> None:
    """Set PDEATHSIG so child dies when parent dies.

    This prevents orphan agent processes when conclave crashes.
    Only works on Linux.
    """
    if sys.platform != "linux":
        return
    try:
        libc = ctypes.CDLL("libc.so.6", use_errno=True)
        pr_set_pdeathsig = 1
        libc.prctl(pr_set_pdeathsig, signal.SIGKILL)
    except (AttributeError, OSError):
        # Can't set PDEATHSIG, continue without it
        return


class ProcessRunner:
    """Runs one external command with proper process management.

    Features:
    - Uses start_new_session=True for reliable process group
    - Sets PDEATHSIG on Linux to prevent orphans
    - Spools stdout/stderr to temporary files so large output never blocks a pipe
    - Kills the whole process group when the timeout expires
    """

    argv: list[str]
    cwd: Path
    env: dict[str, str]
    _process: subprocess.Popen[str] | None
    _exit_code: int | None
    _stdout: IO[str] | None
    _stderr: IO[str] | None
    _timed_out: bool

    def __init__(
        self,
        argv: Sequence[str],
        cwd: Path,
        env: dict[str, str] | None = None,
    ) -> None:
        """Initialize a process runner.

        Args:
            argv: Command as list of argv tokens (no shell)
            cwd: Working directory to run the command in
            env: Additional environment variables

        """
        self.argv = list(argv)
        self.cwd = cwd

        # Merge environment
        self.env = os.environ.copy()
        if env:
            self.env.update(env)

        self._process = None
        self._exit_code = None
        self._stdout = None
        self._stderr = None
        self._timed_out = False

    def start(self) -> None:
        """Start the process."""
        self._stdout = tempfile.TemporaryFile("w+", encoding="utf-8")  # noqa: SIM115
        self._stderr = tempfile.TemporaryFile("w+", encoding="utf-8")  # noqa: SIM115

        self._process = subprocess.Popen(  # noqa: S603
            self.argv,
            stdin=subprocess.DEVNULL,
            stdout=self._stdout,
            stderr=self._stderr,
            env=self.env,
            cwd=str(self.cwd),
            text=True,
            start_new_session=True,  # Creates new process group
            preexec_fn=setup_pdeathsig if sys.platform == "linux" else None,  # noqa: PLW1509
        )

    def wait(self, timeout: float | None = None) -> int:
        """Wait for the process to finish and return its exit code.

        On timeout the process group is killed and timed_out is set.
        """
        if self._process is None:
            return self._exit_code or 0

        try:
            code = self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._timed_out = True
            code = self.kill()

        self._exit_code = code
        return code

    def kill(self, grace_period: float = 5.0) -> int:
        """Kill the process.

        First sends SIGTERM to the process group, waits for grace_period,
        then sends SIGKILL if still alive.

        Returns:
            Exit code (negative signal number if killed)

        """
        if self._process is None:
            return self._exit_code or 0

        if self._process.poll() is not None:
            self._exit_code = self._process.returncode or 0
            return self._exit_code

        try:
            pgid = os.getpgid(self._process.pid)
        except (OSError, ProcessLookupError):
            return self._exit_code or -signal.SIGKILL

        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(pgid, signal.SIGTERM)

        deadline = time.time() + grace_period
        while time.time() < deadline:
            if self._process.poll() is not None:
                self._exit_code = self._process.returncode or 0
                return self._exit_code
            time.sleep(0.1)

        # Still alive - SIGKILL
        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(pgid, signal.SIGKILL)

        with contextlib.suppress(subprocess.TimeoutExpired):
            _ = self._process.wait(timeout=5.0)

        self._exit_code = self._process.returncode or -signal.SIGKILL
        return self._exit_code

    def _read(self, handle: IO[str] | None) -> str:
        if handle is None:
            return ""
        handle.seek(0)
        return handle.read()

    @property
    def stdout(self) -> str:
        return self._read(self._stdout)

    @property
    def stderr(self) -> str:
        return self._read(self._stderr)

    def close(self) -> None:
        """Release the spooled output files."""
        for handle in (self._stdout, self._stderr):
            if handle is not None:
                with contextlib.suppress(OSError):
                    handle.close()
        self._stdout = None
        self._stderr = None

    @property
    def pid(self) -> int | None:
        """Get the process ID."""
        if self._process is None:
            return None
        return self._process.pid

    @property
    def exit_code(self) -> int | None:
        """Get the exit code if finished."""
        return self._exit_code

    @property
    def timed_out(self) -> bool:
        return self._timed_out


@dataclass
class CommandResult:
    """Exit code and captured output of a finished command."""

    returncode: int
    stdout: str
    stderr: str


def run_command(
    argv: Sequence[str],
    cwd: Path,
    timeout: float | None,
    env: Optional[dict[str, str]] = None,
) -> CommandResult:
    """Run a command to completion whatever its exit code.

    Raises SubprocessFailure only on a timeout or a missing executable.
    """
    runner = ProcessRunner(argv, cwd, env=env)
    try:
        try:
            runner.start()
        except OSError as e:
            raise SubprocessFailure(argv, None, str(e)) from e

        code = runner.wait(timeout)
        if runner.timed_out:
            logger.warning("%s timed out after %ss", argv[0], timeout)
            raise SubprocessFailure(argv, code, runner.stderr or runner.stdout, timed_out=True)
        return CommandResult(code, runner.stdout, runner.stderr)
    finally:
        runner.close()


def run_process(
    argv: Sequence[str],
    cwd: Path,
    timeout: float | None,
    env: Optional[dict[str, str]] = None,
) -> str:
    """Run a command to completion and return its stdout.

    Raises SubprocessFailure on a non-zero exit, a timeout, or a missing
    executable.
    """
    result = run_command(argv, cwd, timeout, env)
    if result.returncode != 0:
        raise SubprocessFailure(argv, result.returncode, result.stderr or result.stdout)
    return result.stdout
