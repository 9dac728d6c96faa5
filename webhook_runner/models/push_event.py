"""Push webhook payload schema.

Only the fields the runner acts on are modelled; everything else in the
GitHub payload is ignored.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class CommitAuthor(BaseModel):
    """Author block of a pushed commit."""

    model_config = ConfigDict(extra="ignore")

    name: str = ""
    email: str = ""
    username: str | None = None


class PushCommit(BaseModel):
    """One entry of the ``commits`` list."""

    model_config = ConfigDict(extra="ignore")

    id: str
    message: str = ""
    author: CommitAuthor | None = None


class PushRepository(BaseModel):
    """Repository descriptor of the push."""

    model_config = ConfigDict(extra="ignore")

    clone_url: str
    full_name: str = ""


class PushEvent(BaseModel):
    """A ``push`` webhook event.

    ``commits`` is optional here so a missing list is reported as an
    invalid webhook by the router rather than as a schema error.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    ref: str
    commits: list[PushCommit] | None = None
    repository: PushRepository

    @property
    def head_commit(self) -> PushCommit | None:
        """The commit that gets acted upon: always the last one pushed."""
        return self.commits[-1] if self.commits else None

    @property
    def head_commit_id(self) -> str | None:
        commit = self.head_commit
        return commit.id if commit is not None else None
