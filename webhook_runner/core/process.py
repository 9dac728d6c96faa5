"""Blocking subprocess execution with hard timeouts.

Each child is started in its own session so that a timeout can kill the
whole process group (``git clone`` forks ``git-remote-https`` / ``ssh``,
shell commands fork arbitrarily).  A timed-out process never keeps
running in the background.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

from webhook_runner.core.exceptions import CommandFailedError, ProcessTimeoutError

logger = logging.getLogger(__name__)


def run_process(
    args: Sequence[str],
    *,
    timeout: float | None,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    stdin: bytes | None = None,
    check: bool = True,
) -> subprocess.CompletedProcess[bytes]:
    """Run ``args`` to completion and capture its output.

    Args:
        args: Program and arguments; never passed through a shell.
        timeout: Seconds before the process group is killed, or None.
        cwd: Working directory for the child.
        env: Extra environment variables layered over ``os.environ``.
        stdin: Bytes written to the child's standard input.
        check: Raise ``CommandFailedError`` on a nonzero exit code.

    Returns:
        The completed process with ``stdout`` / ``stderr`` as bytes.

    Raises:
        ProcessTimeoutError: The timeout expired; the process group is dead.
        CommandFailedError: ``check`` is set and the exit code is nonzero.
        OSError: The program could not be spawned.
    """
    command = " ".join(args)
    child_env = {**os.environ, **env} if env else None

    if timeout is not None and timeout <= 0:
        raise ProcessTimeoutError(command, timeout)

    proc = subprocess.Popen(  # noqa: S603
        list(args),
        cwd=cwd,
        env=child_env,
        stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        start_new_session=True,
    )

    try:
        stdout, stderr = proc.communicate(input=stdin, timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning(
            "Process timed out, killing process group",
            extra={"command": command, "timeout": timeout, "pid": proc.pid},
        )
        _kill_group(proc)
        raise ProcessTimeoutError(command, timeout) from None
    except BaseException:
        _kill_group(proc)
        raise

    logger.debug(
        "Process finished",
        extra={"command": command, "returncode": proc.returncode},
    )

    if check and proc.returncode != 0:
        raise CommandFailedError(
            command,
            proc.returncode,
            stderr.decode("utf-8", errors="replace").strip(),
        )

    return subprocess.CompletedProcess(list(args), proc.returncode, stdout, stderr)


def _kill_group(proc: subprocess.Popen[bytes]) -> None:
    """SIGKILL the child's process group and reap the child."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    proc.communicate()
