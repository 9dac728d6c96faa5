"""Push event routing: ref classification, policy lookup, orchestration.

    ref ──► RefKind ──► policy_for() ──► Policy(command, keyring)
                                            │
            fetch_repository() ◄────────────┘
                   │
            verify_commit()        (only when the policy has a keyring)
                   │
            dispatcher.dispatch()  (only after verification succeeded)

Every per-event failure is returned as an ``Outcome`` with a
``DeathReason``; nothing raised while handling one event may take the
server down.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from webhook_runner.core.commit import CommitObject
from webhook_runner.core.dispatcher import CommandDispatcher
from webhook_runner.core.exceptions import (
    CommandFailedError,
    GitOperationError,
    InvalidSignatureError,
    MalformedSignatureError,
    ProcessingError,
    ProcessTimeoutError,
    RepositoryIntegrityError,
)
from webhook_runner.core.keyring import KeyringStore
from webhook_runner.core.repository import RepositoryHandle, fetch_repository
from webhook_runner.core.signature import verify_commit
from webhook_runner.models.push_event import PushEvent
from webhook_runner.models.status import DeathReason, Outcome, ReasonKind, Status

logger = logging.getLogger(__name__)

PUSH_EVENT = "push"

Fetcher = Callable[..., RepositoryHandle]
Verifier = Callable[..., None]


# =============================================================================
#  Policies
# =============================================================================


class RefKind(StrEnum):
    BRANCH = "branch"  # refs/heads/*, commit policy
    TAG = "tag"  # refs/tags/*, tag policy


def classify_ref(ref: str) -> RefKind | None:
    """Map a full ref name to its kind, or None for anything else."""
    if ref.startswith("refs/heads/"):
        return RefKind.BRANCH
    if ref.startswith("refs/tags/"):
        return RefKind.TAG
    return None


@dataclass(frozen=True)
class Policy:
    """What to run for a ref kind and which keyring must sign it."""

    kind: RefKind
    command: str
    keyring: KeyringStore | None = None

    @classmethod
    def from_config(
        cls, kind: RefKind, command: str | None, keyring: KeyringStore | None = None
    ) -> Policy | None:
        """Build the policy for one ref kind; None when no command is configured.

        Raises:
            ValueError: A keyring is configured without a command.
        """
        if command is None:
            if keyring is not None:
                raise ValueError(f"{kind} keyring defined without defining {kind} command")
            return None
        return cls(kind, command, keyring)


@dataclass(frozen=True)
class PolicySet:
    """Commit and tag policies, built once at startup."""

    commit: Policy | None = None
    tag: Policy | None = None

    def policy_for(self, kind: RefKind) -> Policy | None:
        """Return the policy for ``kind``, or None when it has no command."""
        return self.commit if kind is RefKind.BRANCH else self.tag


# =============================================================================
#  Router
# =============================================================================


class PushEventRouter:
    """Decides whether a push may trigger its command, and triggers it."""

    def __init__(
        self,
        policies: PolicySet,
        dispatcher: CommandDispatcher,
        *,
        repository_url: str | None = None,
        ssh_key: Path | str | None = None,
        clone_timeout: float | None = None,
        verify_timeout: float | None = None,
        workdir: Path | str | None = None,
        fetcher: Fetcher = fetch_repository,
        verifier: Verifier = verify_commit,
    ) -> None:
        self.policies = policies
        self.dispatcher = dispatcher
        self.repository_url = repository_url
        self.ssh_key = ssh_key
        self.clone_timeout = clone_timeout
        self.verify_timeout = verify_timeout
        self.workdir = workdir
        self._fetch = fetcher
        self._verify = verifier

    def route(self, event_type: str, event: PushEvent, raw_body: bytes = b"") -> Outcome:
        """Handle one webhook event.  Blocking; run it off the event loop."""
        if event_type != PUSH_EVENT:
            logger.debug("Unhandled event type, returning no-op", extra={"event": event_type})
            return Outcome(status=Status.IGNORED)

        commit = event.head_commit
        if commit is None:
            return self._fail(event, DeathReason.invalid_webhook("commits"))

        kind = classify_ref(event.ref)
        if kind is None:
            return self._fail(event, DeathReason.invalid_webhook("ref", event.ref))

        policy = self.policies.policy_for(kind)
        if policy is None:
            logger.info("No command configured", extra={"ref": event.ref, "kind": kind.value})
            return Outcome(status=Status.NO_COMMAND, ref=event.ref, commit=commit.id)

        logger.debug("Determined operation to run", extra={"command": policy.command, "ref": event.ref})
        return self._run_policy(policy, event, commit.id, raw_body)

    def _run_policy(self, policy: Policy, event: PushEvent, commit_id: str, raw_body: bytes) -> Outcome:
        url = self.repository_url or event.repository.clone_url

        try:
            handle = self._fetch(url, commit_id, self.clone_timeout, self.ssh_key, self.workdir)
        except RepositoryIntegrityError as exc:
            return self._fail(
                event,
                DeathReason(
                    kind=ReasonKind.REPOSITORY_INTEGRITY,
                    message=str(exc),
                    details={"actual": exc.actual, "expected": exc.expected},
                ),
            )
        except (ProcessingError, OSError) as exc:
            return self._fail(
                event,
                DeathReason(kind=ReasonKind.FAILED_CLONE, message=f"Cloning the repository failed: {exc}"),
            )

        with handle:
            if policy.keyring is not None:
                reason = self._verify_head(handle, commit_id, policy.keyring)
                if reason is not None:
                    return self._fail(event, reason)

            try:
                self.dispatcher.dispatch(policy.command, handle.path, event, raw_body)
            except (CommandFailedError, ProcessTimeoutError) as exc:
                return self._fail(
                    event,
                    DeathReason(kind=ReasonKind.COMMAND_FAILED, message=str(exc)),
                    command=policy.command,
                )

        logger.info(
            "Command dispatched",
            extra={"ref": event.ref, "commit": commit_id, "command": policy.command},
        )
        return Outcome(status=Status.DISPATCHED, ref=event.ref, commit=commit_id, command=policy.command)

    def _verify_head(self, handle: RepositoryHandle, commit_id: str, keyring: KeyringStore) -> DeathReason | None:
        """Verify the checked-out commit; None means verified."""
        try:
            commit: CommitObject = handle.read_commit(commit_id)
        except (GitOperationError, ProcessTimeoutError) as exc:
            return DeathReason(kind=ReasonKind.REPOSITORY_ERROR, message=str(exc))

        try:
            self._verify(commit, keyring, timeout=self.verify_timeout)
        except (MalformedSignatureError, InvalidSignatureError, ProcessTimeoutError) as exc:
            return DeathReason(
                kind=ReasonKind.KEYRING_VERIFICATION,
                message=f"Error verifying commit from keyring: {exc}",
                details={"error": type(exc).__name__},
            )
        return None

    def _fail(self, event: PushEvent, reason: DeathReason, command: str | None = None) -> Outcome:
        logger.warning(
            "Push event rejected",
            extra={"ref": event.ref, "reason": reason.kind.value, "detail": reason.message},
        )
        return Outcome(
            status=Status.FAILED,
            reason=reason,
            ref=event.ref,
            commit=event.head_commit_id,
            command=command,
        )
