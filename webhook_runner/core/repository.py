"""Repository fetching with ref-integrity enforcement.

``fetch_repository()`` clones into a fresh temporary directory, resolves
the requested commit id through full ref resolution, checks the resolved
object out in detached form, and refuses anything whose resolved id is
not byte-for-byte the id that was asked for.

Checking out by resolved object id (never by name) defeats a branch
named like a commit hash: HEAD is never attached to a branch.

Runs git through the CLI; every call shares one deadline.  On timeout
the git process group is killed and the directory is removed.
"""

from __future__ import annotations

import logging
import shlex
import tempfile
import time
from pathlib import Path
from types import TracebackType
from urllib.parse import urlsplit, urlunsplit

from webhook_runner.core.commit import CommitObject, parse_commit
from webhook_runner.core.exceptions import (
    CommandFailedError,
    GitOperationError,
    RepositoryIntegrityError,
)
from webhook_runner.core.process import run_process

logger = logging.getLogger(__name__)

GIT_BIN = "git"
DEFAULT_SSH_USER = "git"
TEMPDIR_PREFIX = "webhook-runner-"


# =============================================================================
#  Handle
# =============================================================================


class RepositoryHandle:
    """A checkout exclusively owned by one event.

    The working tree lives in a ``tempfile.TemporaryDirectory`` that is
    deleted by ``close()``; use the handle as a context manager so this
    happens on every exit path.
    """

    def __init__(self, tmp_dir: tempfile.TemporaryDirectory[str], commit_id: str) -> None:
        self._tmp_dir = tmp_dir
        self.path = Path(tmp_dir.name)
        self.commit_id = commit_id
        self._closed = False

    def __enter__(self) -> RepositoryHandle:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"RepositoryHandle(path={str(self.path)!r}, commit_id={self.commit_id!r})"

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Delete the checkout.  Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._tmp_dir.cleanup()
        logger.debug("Repository directory removed", extra={"directory": str(self.path)})

    def git(self, *args: str, timeout: float | None = 30.0) -> bytes:
        """Run a git command inside the checkout and return its stdout."""
        if self._closed:
            raise GitOperationError("repository handle is closed")
        return _run_git(list(args), cwd=self.path, timeout=timeout)

    def head(self) -> str:
        """Object id HEAD currently points at."""
        return self.git("rev-parse", "--verify", "HEAD").decode("ascii").strip()

    def read_commit(self, commit_id: str | None = None, timeout: float | None = 30.0) -> CommitObject:
        """Read and parse a commit object (default: the checked-out commit).

        Raises:
            GitOperationError: The object does not exist or is not a commit.
        """
        oid = commit_id or self.commit_id
        raw = self.git("cat-file", "commit", oid, timeout=timeout)
        try:
            return parse_commit(oid, raw)
        except ValueError as exc:
            raise GitOperationError(f"could not parse commit {oid}: {exc}") from exc


# =============================================================================
#  Fetch
# =============================================================================


def fetch_repository(
    repository_url: str,
    commit_id: str,
    timeout: float | None,
    ssh_key: Path | str | None = None,
    workdir: Path | str | None = None,
) -> RepositoryHandle:
    """Clone ``repository_url`` and check out ``commit_id`` detached.

    Blocking.  Call it off the event loop.

    Args:
        repository_url: Anything ``git clone`` accepts.
        commit_id: Full object id the event asked for.
        timeout: Seconds for the whole fetch (clone, resolve, checkout).
        ssh_key: Private key for SSH remotes; anonymous access when None.
        workdir: Parent directory for the temporary checkout.

    Returns:
        A handle owning the checkout; close it when the event is done.

    Raises:
        ProcessTimeoutError: The deadline passed; git was killed.
        GitOperationError: Clone, resolution or checkout failed.
        RepositoryIntegrityError: The resolved id differs from ``commit_id``.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    env = dict(_GIT_ENV)
    url = repository_url

    if ssh_key is not None:
        logger.debug("Using ssh key authentication", extra={"ssh_key": str(ssh_key)})
        env["GIT_SSH_COMMAND"] = (
            f"ssh -i {shlex.quote(str(ssh_key))} -o IdentitiesOnly=yes -o BatchMode=yes"
        )
        url = with_default_user(repository_url, DEFAULT_SSH_USER)
    else:
        logger.debug("Using non-ssh key authentication")

    tmp_dir = tempfile.TemporaryDirectory(prefix=TEMPDIR_PREFIX, dir=workdir)
    directory = Path(tmp_dir.name)
    logger.debug("Created directory to clone git repository", extra={"directory": str(directory)})

    try:
        _run_git(
            ["clone", "--quiet", "--no-checkout", "--", url, str(directory)],
            cwd=None,
            timeout=_remaining(deadline),
            env=env,
        )
        logger.debug("Repository has been cloned", extra={"url": repository_url})

        resolved = (
            _run_git(
                ["rev-parse", "--verify", "--quiet", "--end-of-options", f"{commit_id}^{{commit}}"],
                cwd=directory,
                timeout=_remaining(deadline),
                env=env,
            )
            .decode("ascii")
            .strip()
        )
        if resolved != commit_id:
            raise RepositoryIntegrityError(actual=resolved, expected=commit_id)

        # "<oid>^{commit}" is never a valid ref name, so checkout cannot pick
        # a local branch that happens to be named like the object id.
        _run_git(
            ["-c", "advice.detachedHead=false", "checkout", "--quiet", "--detach", f"{resolved}^{{commit}}"],
            cwd=directory,
            timeout=_remaining(deadline),
            env=env,
        )
        head = (
            _run_git(["rev-parse", "--verify", "HEAD"], cwd=directory, timeout=_remaining(deadline), env=env)
            .decode("ascii")
            .strip()
        )

        if head != commit_id:
            raise RepositoryIntegrityError(actual=head, expected=commit_id)
    except BaseException:
        tmp_dir.cleanup()
        raise

    logger.debug("Repository has been checked out", extra={"object": resolved})
    return RepositoryHandle(tmp_dir, resolved)


def with_default_user(url: str, user: str) -> str:
    """Insert ``user@`` into SSH URLs that do not name a user.

    Handles ``ssh://host/path`` and scp-like ``host:path``; other URLs are
    returned untouched.
    """
    if url.startswith(("ssh://", "git+ssh://", "ssh+git://")):
        parts = urlsplit(url)
        if parts.username is None and parts.hostname:
            return urlunsplit(parts._replace(netloc=f"{user}@{parts.netloc}"))
        return url
    if is_scp_like(url) and "@" not in url.split(":", 1)[0]:
        return f"{user}@{url}"
    return url


def is_scp_like(url: str) -> bool:
    """``[user@]host:path`` without a scheme (and not a local path)."""
    if "://" in url or url.startswith(("/", ".")):
        return False
    host, sep, _ = url.partition(":")
    return bool(sep) and bool(host) and "/" not in host


def is_ssh_url(url: str) -> bool:
    """True for URLs that git would fetch over SSH."""
    return url.startswith(("ssh://", "git+ssh://", "ssh+git://")) or is_scp_like(url)


# =============================================================================
#  Helpers
# =============================================================================

_GIT_ENV: dict[str, str] = {
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_CONFIG_NOSYSTEM": "1",
    "LC_ALL": "C",
}


def _remaining(deadline: float | None) -> float | None:
    if deadline is None:
        return None
    return deadline - time.monotonic()


def _run_git(
    args: list[str],
    cwd: Path | None,
    timeout: float | None,
    env: dict[str, str] | None = None,
) -> bytes:
    cmd = [GIT_BIN, *args]
    try:
        result = run_process(cmd, cwd=cwd, timeout=timeout, env=env or _GIT_ENV)
    except CommandFailedError as exc:
        logger.error(
            "git failed",
            extra={"command": " ".join(cmd), "exit_code": exc.exit_code, "stderr": exc.stderr},
        )
        raise GitOperationError(
            f"performing git operation on repository failed: {' '.join(args[:1])}: {exc.stderr}"
        ) from exc
    except OSError as exc:
        raise GitOperationError(f"could not run git: {exc}") from exc
    return result.stdout
