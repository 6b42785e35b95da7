"""Pydantic models for the merge engine.

Defines the data contracts shared by every stage of a merge run:

- ``ContentRecord`` / ``LinkRef``: one fetched entry and the relations it holds.
- ``CompareState`` / ``ComparisonResult`` / ``ComparisonSnapshot``: comparator output.
- ``Direction`` / ``Selection``: operator decisions.
- ``DocumentMapping``: persisted cross-instance identity.
- ``SyncOrderItem`` / ``ExecutionPlan``: scheduler output.
- ``ProgressEvent`` / ``ItemOutcome`` / ``RunReport``: executor output.

All models are frozen (immutable).  Mutable bookkeeping, such as a
selection's sync status, is produced with ``model_copy(update=...)``.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from ..errors import StrapiSyncError
from .schema import SchemaRegistry

FILE_CONTENT_TYPE = "plugin::upload.file"

LocaleKey = tuple[str, str, str | None]


def format_item_key(table: str, document_id: str, locale: str | None = None) -> str:
    """``table:documentId``, suffixed with ``@locale`` for localized records."""
    key = f"{table}:{document_id}"
    return f"{key}@{locale}" if locale else key


# ---------------------------------------------------------------------------
# Records and links
# ---------------------------------------------------------------------------


class LinkRef(BaseModel):
    """One related identifier found inside a content record.

    Attributes:
        source_id: Id of the record or component element owning the field.
        field: Dotted attribute path (``seo.image`` for component fields).
        target_table: Content type uid of the related record.
        target_id: Numeric id of the related record on the source side.
        target_document_id: documentId of the related record, when present.
        order: Position inside the relation list.
        link_id: Per-record sequence number, used as tie breaker.
    """

    source_id: int | None = None
    field: str
    target_table: str
    target_id: int | None = None
    target_document_id: str | None = None
    order: float = 0.0
    link_id: int = 0

    model_config = {"frozen": True}

    @property
    def root(self) -> str:
        """First segment of ``field``."""
        return self.field.split(".", 1)[0]


class ContentRecord(BaseModel):
    """One entry fetched from an instance.

    Attributes:
        table: Content type uid the record belongs to.
        id: Numeric row id on its instance.
        document_id: Stable cross-locale identifier on its instance.
        locale: Locale code, ``None`` for non-localized types.
        raw: Verbatim API payload.
        normalized: ``raw`` without technical fields, arrays sorted.
        links: Relations extracted from ``raw``.
    """

    table: str
    id: int | None = None
    document_id: str
    locale: str | None = None
    raw: dict = Field(default_factory=dict)
    normalized: dict = Field(default_factory=dict)
    links: list[LinkRef] = Field(default_factory=list)

    model_config = {"frozen": True}


class InstanceSnapshot(BaseModel):
    """Everything fetched from one instance for a comparison.

    Attributes:
        instance_id: Stable name of the instance (usually its base URL).
        registry: Content type and component schemas.
        entries: Raw entries per content type uid.
        files: Raw media library file metadata.
        folders: Raw media library folders.
    """

    instance_id: str
    registry: SchemaRegistry
    entries: dict[str, list[dict]] = Field(default_factory=dict)
    files: list[dict] = Field(default_factory=list)
    folders: list[dict] = Field(default_factory=list)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------


class CompareState(str, Enum):
    """Classification of a source/target record pair."""

    ONLY_IN_SOURCE = "ONLY_IN_SOURCE"
    ONLY_IN_TARGET = "ONLY_IN_TARGET"
    DIFFERENT = "DIFFERENT"
    IDENTICAL = "IDENTICAL"


class ComparisonResult(BaseModel):
    """Outcome of matching one record against the opposite instance."""

    table: str
    state: CompareState
    source: ContentRecord | None = None
    target: ContentRecord | None = None

    model_config = {"frozen": True}

    @property
    def document_id(self) -> str:
        """Selection key: source documentId, or target's when only in target."""
        record = self.source or self.target
        if record is None:
            raise StrapiSyncError(
                f"Comparison result for {self.table} has no record"
            )
        return record.document_id

    @property
    def locale(self) -> str | None:
        record = self.source or self.target
        return record.locale if record is not None else None


class DocumentMapping(BaseModel):
    """Persisted translation of a source identity to a target identity.

    Unique per (content_type, source_document_id, locale) for one
    source/target instance pair.
    """

    source_instance_id: str
    target_instance_id: str
    content_type: str
    source_id: int | None = None
    source_document_id: str
    target_id: int | None = None
    target_document_id: str
    locale: str | None = None
    manual: bool = False
    updated_at: str | None = None

    model_config = {"frozen": True}

    @property
    def key(self) -> tuple[str, str, str | None]:
        return (self.content_type, self.source_document_id, self.locale)


class ComparisonSnapshot(BaseModel):
    """Comparator output for a whole instance pair.

    Attributes:
        results: Comparison results per content type uid (files are
            stored under ``plugin::upload.file``).
        proposed_mappings: File mappings discovered by fallback matching.
        fingerprint: Hash of both input snapshots, usable as a cache key.
        compared_at: ISO 8601 timestamp of the comparison.
    """

    results: dict[str, list[ComparisonResult]] = Field(default_factory=dict)
    proposed_mappings: list[DocumentMapping] = Field(default_factory=list)
    fingerprint: str = ""
    compared_at: str | None = None

    model_config = {"frozen": True}

    def find(
        self, table: str, document_id: str, locale: str | None = None
    ) -> ComparisonResult | None:
        """Return the result for a selection key.

        ``document_id`` is matched against the source record first and
        the target record second.  When ``locale`` is ``None`` the first
        matching locale wins.
        """
        for result in self.results.get(table, []):
            if result.document_id != document_id:
                continue
            if locale is None or result.locale == locale:
                return result
        return None

    def find_source_by_id(
        self, table: str, record_id: int
    ) -> ContentRecord | None:
        """Return the source record of ``table`` with numeric id ``record_id``."""
        for result in self.results.get(table, []):
            if result.source is not None and result.source.id == record_id:
                return result.source
        return None

    def find_by_source_document(
        self, table: str, document_id: str
    ) -> ComparisonResult | None:
        """Return the result whose source record has ``document_id``."""
        for result in self.results.get(table, []):
            if (
                result.source is not None
                and result.source.document_id == document_id
            ):
                return result
        return None

    def counts(self) -> dict[str, dict[str, int]]:
        """Per content type counts of each comparison state."""
        summary: dict[str, dict[str, int]] = {}
        for table, results in self.results.items():
            per_state = {state.value: 0 for state in CompareState}
            for result in results:
                per_state[result.state.value] += 1
            summary[table] = per_state
        return summary


# ---------------------------------------------------------------------------
# Selections
# ---------------------------------------------------------------------------


class Direction(str, Enum):
    """What the operator wants done with a record on the target."""

    TO_CREATE = "TO_CREATE"
    TO_UPDATE = "TO_UPDATE"
    TO_DELETE = "TO_DELETE"


class Selection(BaseModel):
    """Operator decision for one record.

    ``sync_success`` and ``sync_failure_response`` are written once per
    execution attempt by the executor.
    """

    table: str
    document_id: str
    direction: Direction
    locale: str | None = None
    sync_success: bool | None = None
    sync_failure_response: str | None = None

    model_config = {"frozen": True}

    @property
    def key(self) -> tuple[str, str]:
        """Document key; every locale of a document shares it."""
        return (self.table, self.document_id)

    @property
    def locale_key(self) -> LocaleKey:
        return (self.table, self.document_id, self.locale)


class MergeRequestStatus(str, Enum):
    """Lifecycle of a merge request."""

    CREATED = "CREATED"
    SCHEMA_CHECKED = "SCHEMA_CHECKED"
    COMPARED = "COMPARED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


class DependencyEdge(BaseModel):
    """``from`` record holds a link (``via_link``) to the ``to`` record.

    Edges join documents; ``from_locale`` names the localization whose
    record holds the link.
    """

    from_table: str
    from_document_id: str
    to_table: str
    to_document_id: str
    via_link: LinkRef
    from_locale: str | None = None

    model_config = {"frozen": True}

    @property
    def from_key(self) -> tuple[str, str]:
        return (self.from_table, self.from_document_id)

    @property
    def from_locale_key(self) -> LocaleKey:
        return (self.from_table, self.from_document_id, self.from_locale)

    @property
    def to_key(self) -> tuple[str, str]:
        return (self.to_table, self.to_document_id)


class CircularDependencyEdge(DependencyEdge):
    """An edge removed from scheduling because it lies on a cycle."""


class MissingDependency(BaseModel):
    """A link whose target is neither selected nor present in the target."""

    table: str
    document_id: str
    field: str
    target_table: str
    target_id: int | None = None
    target_document_id: str | None = None
    link_id: int | None = None
    reason: str
    locale: str | None = None

    model_config = {"frozen": True}


class SyncOrderItem(BaseModel):
    """One scheduled selection with its comparison entry."""

    selection: Selection
    entry: ComparisonResult | None = None
    batch: int = 0

    model_config = {"frozen": True}

    @property
    def key(self) -> tuple[str, str]:
        return self.selection.key

    @property
    def locale_key(self) -> LocaleKey:
        return self.selection.locale_key

    @property
    def item_key(self) -> str:
        return format_item_key(*self.selection.locale_key)


class ExecutionPlan(BaseModel):
    """Scheduler output.

    Attributes:
        batches: Create/update items in dependency order.
        deletions: Delete items, executed after every batch.
        circular_edges: Links deferred to the second pass.
        missing_dependencies: Links dropped because their target is absent.
        edges: Every scheduling edge, for visualization.
        unresolved: Selections with no matching comparison entry.
    """

    batches: list[list[SyncOrderItem]] = Field(default_factory=list)
    deletions: list[SyncOrderItem] = Field(default_factory=list)
    circular_edges: list[CircularDependencyEdge] = Field(default_factory=list)
    missing_dependencies: list[MissingDependency] = Field(default_factory=list)
    edges: list[DependencyEdge] = Field(default_factory=list)
    unresolved: list[Selection] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def total_items(self) -> int:
        return (
            sum(len(batch) for batch in self.batches)
            + len(self.deletions)
            + len(self.unresolved)
        )

    def dependencies_of(self, key: tuple[str, str]) -> list[tuple[str, str]]:
        """Scheduling-graph dependencies of ``key`` (non-circular only)."""
        return sorted({e.to_key for e in self.edges if e.from_key == key})


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class ProgressStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class ProgressEvent(BaseModel):
    """One observable transition of a run.

    Attributes:
        item_key: ``table:documentId[@locale]``, ``batch:<n>`` or ``run``.
        operation: create, update, delete, relations, batch or run.
        status: Transition status.
        message: Optional human-readable detail.
        processed_items: Items with a terminal state so far.
        total_items: Items in the plan.
    """

    item_key: str
    operation: str
    status: ProgressStatus
    message: str | None = None
    processed_items: int = 0
    total_items: int = 0

    model_config = {"frozen": True}


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class ItemOutcome(BaseModel):
    """Final state of one selection after a run."""

    table: str
    document_id: str
    direction: Direction
    status: OutcomeStatus
    locale: str | None = None
    error: str | None = None
    target_document_id: str | None = None
    root_failures: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def item_key(self) -> str:
        return format_item_key(self.table, self.document_id, self.locale)


class RunReport(BaseModel):
    """Aggregate results of one execution."""

    merge_request_id: str
    outcomes: list[ItemOutcome] = Field(default_factory=list)
    events: list[ProgressEvent] = Field(default_factory=list)
    circular_edges: list[CircularDependencyEdge] = Field(default_factory=list)
    missing_dependencies: list[MissingDependency] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    cancelled: bool = False
    started_at: str
    completed_at: str | None = None

    model_config = {"frozen": True}

    def _with_status(self, status: OutcomeStatus) -> list[ItemOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def succeeded(self) -> list[ItemOutcome]:
        return self._with_status(OutcomeStatus.SUCCESS)

    @property
    def failed(self) -> list[ItemOutcome]:
        return self._with_status(OutcomeStatus.FAILED)

    @property
    def skipped(self) -> list[ItemOutcome]:
        return self._with_status(OutcomeStatus.SKIPPED)

    @property
    def not_attempted(self) -> list[ItemOutcome]:
        return self._with_status(OutcomeStatus.CANCELLED)

    @property
    def status(self) -> MergeRequestStatus:
        """COMPLETED when every item succeeded, FAILED otherwise."""
        if self.cancelled or self.failed or self.skipped:
            return MergeRequestStatus.FAILED
        return MergeRequestStatus.COMPLETED

    def outcome_for(
        self, table: str, document_id: str, locale: str | None = None
    ) -> ItemOutcome | None:
        """Outcome of a selection; any locale matches when ``locale`` is ``None``."""
        for outcome in self.outcomes:
            if outcome.table != table or outcome.document_id != document_id:
                continue
            if locale is None or outcome.locale == locale:
                return outcome
        return None
