"""Running the operator's command against a verified checkout.

The router decides *whether* a command may run; a dispatcher only runs
it.  ``SubprocessDispatcher`` executes the configured command line in
the checkout directory with the raw webhook body on stdin.
"""

from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Protocol

from webhook_runner.core.exceptions import CommandFailedError
from webhook_runner.core.process import run_process
from webhook_runner.models.push_event import PushEvent

logger = logging.getLogger(__name__)


class CommandDispatcher(Protocol):
    """Runs an authorized command for one push event."""

    def dispatch(self, command: str, checkout: Path, event: PushEvent, raw_body: bytes) -> None:
        ...


class SubprocessDispatcher:
    """Run the command as a subprocess bounded by ``timeout`` seconds."""

    def __init__(self, timeout: float | None) -> None:
        self.timeout = timeout

    def dispatch(self, command: str, checkout: Path, event: PushEvent, raw_body: bytes) -> None:
        """Run ``command`` inside ``checkout``.

        Raises:
            CommandFailedError: Nonzero exit status or the program is missing.
            ProcessTimeoutError: The command ran longer than the timeout.
        """
        args = shlex.split(command)
        if not args:
            raise CommandFailedError(command, -1, "empty command")

        env = {
            "WEBHOOK_REF": event.ref,
            "WEBHOOK_COMMIT": event.head_commit_id or "",
            "WEBHOOK_REPOSITORY": event.repository.clone_url,
        }

        logger.info("Running command", extra={"command": command, "directory": str(checkout)})
        try:
            result = run_process(
                args,
                cwd=checkout,
                env=env,
                stdin=raw_body,
                timeout=self.timeout,
                check=False,
            )
        except OSError as exc:
            raise CommandFailedError(command, -1, str(exc)) from exc

        _dump_output(args[0], result.stdout, result.stderr)

        if result.returncode != 0:
            raise CommandFailedError(
                command,
                result.returncode,
                result.stderr.decode("utf-8", errors="replace").strip(),
            )


def _dump_output(program: str, stdout: bytes, stderr: bytes) -> None:
    """Log the command's output line by line, prefixed by the program name."""
    prefix = Path(program).name
    for stream in (stdout, stderr):
        for line in stream.decode("utf-8", errors="replace").splitlines():
            logger.debug("%s: %s", prefix, line)
