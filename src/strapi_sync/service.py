"""Merge request orchestration.

``MergeService`` ties the stages together for one source/target pair:

1. ``check_schema()`` -- fetch both registries and verify compatibility.
2. ``compare()`` -- fetch both instances and classify every record.
3. Selections are recorded by the operator (``select()``, ``exclude()``).
4. ``plan()`` -- schedule the selections into ordered batches.
5. ``run()`` -- execute the plan against the target.

Key design choices:

* **Cached snapshots** -- the schema check and the comparison are stored
  in a ``SnapshotCache`` under the state directory and reused while
  fresh; ``force=True`` bypasses the cache.  A run invalidates the
  cached comparison since the target has changed.
* **One run per merge request** -- a second ``run()`` for a merge
  request that is already executing raises ``RunInProgress``.
* **Durable status** -- the merge request moves through
  ``SCHEMA_CHECKED``, ``COMPARED``, ``IN_PROGRESS`` and finally
  ``COMPLETED`` or ``FAILED`` in the selection store.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

from .config import Config
from .core.async_utils import gather_limited, run_sync, run_sync_limited
from .core.client import StrapiClient
from .errors import RunInProgress, SchemaIncompatible, StrapiSyncError
from .sync.cache import SnapshotCache
from .sync.comparator import ContentComparator
from .sync.executor import BatchExecutor, EventListener
from .sync.files import FileSyncProcessor
from .sync.models import (
    FILE_CONTENT_TYPE,
    CompareState,
    ComparisonSnapshot,
    Direction,
    DocumentMapping,
    ExecutionPlan,
    InstanceSnapshot,
    MergeRequestStatus,
    RunReport,
    Selection,
)
from .sync.scheduler import DependencyScheduler
from .sync.schema import CompatibilityReport, SchemaRegistry, check_compatibility
from .sync.state import MappingStore, SelectionStore

logger = logging.getLogger(__name__)

DEFAULT_MERGE_REQUEST = "default"

# Merge request ids with a run in progress, shared by every service
_running: set[str] = set()
_running_lock = threading.Lock()

_DIRECTION_FOR_STATE = {
    CompareState.ONLY_IN_SOURCE: Direction.TO_CREATE,
    CompareState.DIFFERENT: Direction.TO_UPDATE,
    CompareState.ONLY_IN_TARGET: Direction.TO_DELETE,
}


class MergeService:
    """Orchestrate merge requests between two instances.

    Args:
        source_client: Client of the source instance.
        target_client: Client of the target instance.
        state_dir: Directory for mappings, selections and caches.
        cache_ttl_seconds: Freshness timeout of cached snapshots.
    """

    def __init__(
        self,
        source_client: Any,
        target_client: Any,
        state_dir: Path | str = ".strapi_sync",
        cache_ttl_seconds: float = 3600,
    ) -> None:
        self.source = source_client
        self.target = target_client
        self.state_dir = Path(state_dir)
        self.mappings = MappingStore(
            self.state_dir, source_client.instance_id, target_client.instance_id
        )
        self.selections = SelectionStore(self.state_dir)
        self.cache = SnapshotCache(self.state_dir / "cache", cache_ttl_seconds)
        self._registry: SchemaRegistry | None = None

    @classmethod
    def from_config(cls, config: Config) -> MergeService:
        """Build a service with ``StrapiClient`` instances from ``config``."""
        return cls(
            StrapiClient(config.source, page_size=config.page_size),
            StrapiClient(config.target, page_size=config.page_size),
            state_dir=config.state_dir,
            cache_ttl_seconds=config.cache_ttl_seconds,
        )

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def check_schema(
        self, merge_request_id: str = DEFAULT_MERGE_REQUEST, force: bool = False
    ) -> CompatibilityReport:
        """Verify that the target can hold every source schema.

        Raises:
            SchemaIncompatible: If any source schema is missing or differs
                on the target.
        """
        report = self._schema_report(force)
        self.selections.set_status(merge_request_id, MergeRequestStatus.SCHEMA_CHECKED)
        return report

    def _schema_report(self, force: bool = False) -> CompatibilityReport:
        cached = None if force else self.cache.get("schema_check")
        if cached is not None:
            report = CompatibilityReport(**cached["report"])
            self._registry = SchemaRegistry(**cached["registry"])
            logger.debug("Using cached schema check")
        else:
            source_registry = self.source.get_registry()
            target_registry = self.target.get_registry()
            report = check_compatibility(source_registry, target_registry)
            self._registry = source_registry
            self.cache.put(
                "schema_check",
                {
                    "report": report.model_dump(mode="json"),
                    "registry": source_registry.model_dump(mode="json"),
                },
            )
        if not report.compatible:
            raise SchemaIncompatible(report.problems)
        return report

    @property
    def registry(self) -> SchemaRegistry:
        """Source schema registry of the last successful schema check."""
        if self._registry is None:
            self._schema_report()
        if self._registry is None:
            raise StrapiSyncError("Schema check did not load a source registry")
        return self._registry

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------

    @staticmethod
    def load_snapshot(client: Any) -> InstanceSnapshot:
        """Fetch registry, every entry and the media library of one instance."""
        registry = client.get_registry()
        entries = {
            uid: client.get_entries(schema, registry)
            for uid, schema in sorted(registry.content_types.items())
        }
        files = client.get_files()
        folders = client.get_folders()
        logger.info(
            "Loaded %s: %d entries, %d file(s)",
            client.instance_id,
            sum(len(v) for v in entries.values()),
            len(files),
        )
        return InstanceSnapshot(
            instance_id=client.instance_id,
            registry=registry,
            entries=entries,
            files=files,
            folders=folders,
        )

    def _cache_key(self, merge_request_id: str) -> str:
        return f"comparison_{merge_request_id}"

    def compare(
        self, merge_request_id: str = DEFAULT_MERGE_REQUEST, force: bool = False
    ) -> ComparisonSnapshot:
        """Compare both instances, reusing a fresh cached comparison."""
        if not force:
            cached = self.cache.get(self._cache_key(merge_request_id))
            if cached is not None:
                logger.debug("Using cached comparison for %s", merge_request_id)
                return ComparisonSnapshot.model_validate(cached)

        self.check_schema(merge_request_id, force=force)
        source = self.load_snapshot(self.source)
        target = self.load_snapshot(self.target)
        return self._store_comparison(merge_request_id, source, target)

    async def compare_async(
        self, merge_request_id: str = DEFAULT_MERGE_REQUEST, force: bool = False
    ) -> ComparisonSnapshot:
        """Like ``compare()`` but fetches both instances concurrently."""
        if not force:
            cached = self.cache.get(self._cache_key(merge_request_id))
            if cached is not None:
                return ComparisonSnapshot.model_validate(cached)

        await run_sync(self.check_schema, merge_request_id, force)
        source, target = await gather_limited(
            [
                run_sync_limited(self.load_snapshot, self.source),
                run_sync_limited(self.load_snapshot, self.target),
            ]
        )
        return self._store_comparison(merge_request_id, source, target)

    def _store_comparison(
        self,
        merge_request_id: str,
        source: InstanceSnapshot,
        target: InstanceSnapshot,
    ) -> ComparisonSnapshot:
        comparator = ContentComparator(
            self.mappings.index(), self.selections.exclusions(merge_request_id)
        )
        snapshot = comparator.compare(source, target)
        for mapping in snapshot.proposed_mappings:
            self._accept_proposed(mapping)
        self.cache.put(
            self._cache_key(merge_request_id), snapshot.model_dump(mode="json")
        )
        self.selections.set_status(merge_request_id, MergeRequestStatus.COMPARED)
        return snapshot

    def _accept_proposed(self, mapping: DocumentMapping) -> None:
        if self.mappings.get(mapping.content_type, mapping.source_document_id):
            return
        self.mappings.upsert(
            mapping.content_type,
            mapping.source_document_id,
            mapping.target_document_id,
            source_id=mapping.source_id,
            target_id=mapping.target_id,
        )

    # ------------------------------------------------------------------
    # Selections and mappings
    # ------------------------------------------------------------------

    def select(
        self,
        merge_request_id: str,
        table: str,
        document_id: str,
        direction: Direction | None = None,
        locale: str | None = None,
    ) -> Selection:
        """Select one record.

        Without ``direction`` the direction follows the comparison state
        of the record (create, update or delete).

        Raises:
            KeyError: If the record is not in the comparison, or is
                identical on both sides and no direction was given.
        """
        if direction is None:
            entry = self.compare(merge_request_id).find(table, document_id, locale)
            if entry is None:
                raise KeyError(f"{table}:{document_id} is not in the comparison")
            if entry.state not in _DIRECTION_FOR_STATE:
                raise KeyError(f"{table}:{document_id} is identical on both sides")
            direction = _DIRECTION_FOR_STATE[entry.state]
            locale = locale or entry.locale
        selection = Selection(
            table=table, document_id=document_id, direction=direction, locale=locale
        )
        self.selections.add(merge_request_id, selection)
        return selection

    def select_all(
        self, merge_request_id: str, table: str, state: CompareState
    ) -> int:
        """Select every record of ``table`` in comparison state ``state``."""
        if state not in _DIRECTION_FOR_STATE:
            raise ValueError(f"Records in state {state.value} cannot be selected")
        comparison = self.compare(merge_request_id)
        direction = _DIRECTION_FOR_STATE[state]
        return self.selections.add_many(
            merge_request_id,
            [
                Selection(
                    table=table,
                    document_id=r.document_id,
                    direction=direction,
                    locale=r.locale,
                )
                for r in comparison.results.get(table, [])
                if r.state == state
            ],
        )

    def exclude(self, merge_request_id: str, table: str, document_id: str) -> None:
        """Exclude a record from future comparisons of the merge request."""
        self.selections.add_exclusion(merge_request_id, table, document_id)
        self.selections.remove(merge_request_id, table, document_id)
        self.cache.invalidate(self._cache_key(merge_request_id))

    def map_manually(
        self,
        content_type: str,
        source_document_id: str,
        target_document_id: str,
        locale: str | None = None,
    ) -> DocumentMapping:
        """Declare that two records are the same document.

        Every cached comparison is dropped since matching changed.
        """
        mapping = self.mappings.upsert(
            content_type,
            source_document_id,
            target_document_id,
            locale=locale,
            manual=True,
        )
        removed = self.cache.clear()
        logger.debug("Manual mapping stored, %d cache entries dropped", removed)
        return mapping

    # ------------------------------------------------------------------
    # Planning and execution
    # ------------------------------------------------------------------

    def plan(self, merge_request_id: str = DEFAULT_MERGE_REQUEST) -> ExecutionPlan:
        """Schedule the selections of a merge request."""
        comparison = self.compare(merge_request_id)
        scheduler = DependencyScheduler(comparison, self.mappings.index())
        return scheduler.schedule(self.selections.selections(merge_request_id))

    def run(
        self,
        merge_request_id: str = DEFAULT_MERGE_REQUEST,
        on_event: EventListener | None = None,
        cancel_event: threading.Event | None = None,
    ) -> RunReport:
        """Execute the selections of a merge request.

        Raises:
            RunInProgress: If a run for the same merge request is active.
            SchemaIncompatible: If the schema check fails.
        """
        with _running_lock:
            if merge_request_id in _running:
                raise RunInProgress(merge_request_id)
            _running.add(merge_request_id)

        try:
            comparison = self.compare(merge_request_id)
            plan = DependencyScheduler(comparison, self.mappings.index()).schedule(
                self.selections.selections(merge_request_id)
            )
            registry = self.registry
            self.selections.reset_sync_status(merge_request_id)
            self.selections.set_status(merge_request_id, MergeRequestStatus.IN_PROGRESS)
            logger.info(
                "Running merge request %s: %d item(s)",
                merge_request_id,
                plan.total_items,
            )

            needs_files = any(
                item.selection.table == FILE_CONTENT_TYPE
                for item in [i for b in plan.batches for i in b] + plan.deletions
            )
            executor = BatchExecutor(
                self.target,
                registry,
                self.mappings,
                comparison,
                selections=self.selections,
                merge_request_id=merge_request_id,
                file_processor=FileSyncProcessor(self.source, self.target)
                if needs_files
                else None,
                on_event=on_event,
            )
            try:
                report = executor.execute(plan, cancel_event)
            except Exception:
                self.selections.set_status(merge_request_id, MergeRequestStatus.FAILED)
                raise
            self.selections.set_status(merge_request_id, report.status)
            self.cache.invalidate(self._cache_key(merge_request_id))
            logger.info(
                "Merge request %s finished: %s", merge_request_id, report.status.value
            )
            return report
        finally:
            with _running_lock:
                _running.discard(merge_request_id)

    async def run_async(
        self,
        merge_request_id: str = DEFAULT_MERGE_REQUEST,
        on_event: EventListener | None = None,
        cancel_event: threading.Event | None = None,
    ) -> RunReport:
        """Run in a worker thread without blocking the event loop."""
        return await run_sync(self.run, merge_request_id, on_event, cancel_event)
