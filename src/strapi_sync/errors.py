"""Exception hierarchy for the merge engine.

Only setup-phase errors (``SchemaIncompatible``, an unreachable instance
surfacing as ``UpstreamRequestFailed`` during snapshot loading,
``RunInProgress``) propagate out of a run.  Everything raised while a
single item is processed is caught by the executor and recorded on that
item's selection.
"""

from __future__ import annotations


class StrapiSyncError(Exception):
    """Base class for all merge engine errors."""


class SchemaIncompatible(StrapiSyncError):
    """Source and target schemas differ in a way the engine cannot bridge."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        summary = "; ".join(self.problems[:5])
        if len(self.problems) > 5:
            summary += f" (+{len(self.problems) - 5} more)"
        super().__init__(f"Schemas are incompatible: {summary}")


class UpstreamRequestFailed(StrapiSyncError):
    """Non-2xx response or transport error from an instance.

    Attributes:
        status_code: HTTP status, or ``None`` for transport errors.
        body: Response body text when one was received.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.body = body
        detail = message
        if status_code is not None:
            detail = f"{message} (HTTP {status_code})"
        if body:
            detail = f"{detail}: {body}"
        super().__init__(detail)


class MissingDependency(StrapiSyncError):
    """A link target was neither selected nor present in the target."""


class DependencySkipped(StrapiSyncError):
    """An item was not attempted because a same-run dependency failed."""


class MappingNotFound(StrapiSyncError):
    """A relation could not be translated to a target identifier."""


class FolderCreationFailed(StrapiSyncError):
    """A media folder could not be created on the target."""


class RunInProgress(StrapiSyncError):
    """Another execution is already running for the merge request."""

    def __init__(self, merge_request_id: str) -> None:
        self.merge_request_id = merge_request_id
        super().__init__(
            f"A sync run is already in progress for merge request "
            f"'{merge_request_id}'"
        )
