"""
Process — External Program Invocation
=======================================
Every call Bastion makes to a native utility (ipset, iptables,
firewall-cmd, netsh, wmic, powershell, bash) goes through run_process().

Behaviour:
  - Logged at INFO before execution
  - No console window on Windows, sudo on POSIX when configured
  - Hard timeout (30s by default); the whole process tree is killed
  - Exit codes are only enforced when the caller passes allowed codes
"""

import logging
import os
import shlex
import subprocess
import tempfile
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Sequence, Union

import psutil

from Bastion import config

logger = logging.getLogger("bastion.process")

PROCESS_TIMEOUT = 30            # Seconds before the process is killed
MISSING_PROGRAM_EXIT_CODE = 127
KILL_WAIT_TIMEOUT = 5           # Seconds to wait for killed processes and their output


class ProcessError(RuntimeError):
    """A checked process exited with a code outside the allowed set."""

    def __init__(self, message: str, result: Optional["ProcessResult"] = None):
        super().__init__(message)
        self.result = result


@dataclass
class ProcessResult:
    """Outcome of a single run_process() call."""
    command: str                   # Program and arguments, for logging
    exit_code: int = -1
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def lines(self) -> list[str]:
        """Non-blank stdout lines, right-stripped."""
        return [line.rstrip() for line in self.stdout.splitlines() if line.strip()]


@contextmanager
def scratch_file(suffix: str = ".txt") -> Iterator[str]:
    """
    Yield a fresh temp path (not created) for a utility to read or write.
    The file is removed on exit, whatever happened in between.
    """
    path = os.path.join(tempfile.gettempdir(), f"bastion_{uuid.uuid4().hex}{suffix}")
    try:
        yield path
    finally:
        if os.path.exists(path):
            try:
                os.remove(path)
            except OSError as e:
                logger.warning("Could not remove temp file %s: %s", path, e)


def _build_command(
    program: str,
    args: Union[str, Sequence[str], None],
    elevate: bool,
) -> tuple[Union[str, list[str]], str]:
    """Return (Popen argument, display string) for a program + args."""
    if args is None:
        args = ""

    if isinstance(args, str):
        display = f"{program} {args}".strip()
        if os.name == "nt":
            # CreateProcess takes a raw command line; keep cmd.exe quoting intact
            return display, display
        argv = [program, *shlex.split(args)]
    else:
        argv = [program, *(str(a) for a in args)]
        display = " ".join(argv)

    if elevate and os.name == "posix" and os.geteuid() != 0:
        argv = ["sudo", "-n", *argv]
        display = f"sudo -n {display}"

    return argv, display


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """
    Kill a process and every descendant it spawned.

    Descendants started through sudo belong to root and may refuse the
    signal; those are logged and skipped. The direct child is always
    killed through Popen, which works for sudo itself.
    """
    try:
        children = psutil.Process(proc.pid).children(recursive=True)
    except psutil.Error:
        children = []

    killed = []
    for child in children:
        try:
            child.kill()
            killed.append(child)
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied:
            logger.warning("No permission to kill child process %d of %d", child.pid, proc.pid)

    try:
        proc.kill()
    except OSError:
        pass

    # The direct child is reaped by Popen itself
    psutil.wait_procs(killed, timeout=KILL_WAIT_TIMEOUT)


def _drain(proc: subprocess.Popen, display: str) -> tuple[str, str]:
    """Collect what a killed process wrote, without waiting on survivors."""
    try:
        return proc.communicate(timeout=KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        # A descendant that could not be killed still holds the pipes
        logger.warning("Program %s left children running, discarding their output", display)
        for stream in (proc.stdin, proc.stdout, proc.stderr):
            if stream is not None:
                stream.close()
        proc.wait()
        return "", ""


def run_process(
    program: str,
    args: Union[str, Sequence[str], None] = "",
    allowed_exit_codes: Iterable[int] = (),
    timeout: float = PROCESS_TIMEOUT,
    input_text: Optional[str] = None,
    elevate: Optional[bool] = None,
) -> ProcessResult:
    """
    Run a program and wait for it to finish.

    Args:
        program:            Executable name or path.
        args:               Argument string (shell-split) or sequence.
        allowed_exit_codes: If non-empty, any other exit code raises.
        timeout:            Seconds to wait before killing the process.
        input_text:         Optional stdin payload (e.g. for `ipset restore`).
        elevate:            Prefix `sudo -n` on POSIX when not root.
                            Defaults to config.USE_SUDO.

    Returns:
        ProcessResult with captured output.

    Raises:
        ProcessError: exit code checking was requested and failed
                      (including timeouts and programs that never started).
    """
    allowed = tuple(allowed_exit_codes)
    if elevate is None:
        elevate = config.USE_SUDO
    argv, display = _build_command(program, args, elevate)

    logger.info("Executing process %s...", display)

    popen_kwargs = dict(
        stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        errors="replace",
    )
    if os.name == "nt":
        popen_kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW

    try:
        proc = subprocess.Popen(argv, **popen_kwargs)
    except OSError as e:
        result = ProcessResult(
            command=display,
            exit_code=MISSING_PROGRAM_EXIT_CODE,
            stderr=str(e),
        )
        if allowed:
            raise ProcessError(f"Program {display}: failed to start: {e}", result) from e
        logger.warning("Program %s could not be started: %s", display, e)
        return result

    timed_out = False
    try:
        stdout, stderr = proc.communicate(input=input_text, timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning("Program %s timed out after %s seconds, killing it", display, timeout)
        _kill_process_tree(proc)
        stdout, stderr = _drain(proc, display)
        timed_out = True

    result = ProcessResult(
        command=display,
        exit_code=proc.returncode,
        stdout=stdout or "",
        stderr=stderr or "",
        timed_out=timed_out,
    )

    if allowed and result.exit_code not in allowed:
        raise ProcessError(
            f"Program {display}: failed with exit code {result.exit_code}"
            + (" (timed out)" if timed_out else ""),
            result,
        )
    return result
