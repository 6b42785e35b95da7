"""Batch executor that replays an ``ExecutionPlan`` against the target.

The executor:

1. Emits a ``PENDING`` event for every planned item.
2. Runs batches strictly in order, items one at a time, checking the
   cancellation event before each item.
3. Skips items whose scheduling dependency already failed in this run,
   without calling the target.  A dependency fails when any of its
   locales fails; transitive skips also name the root failure.
4. Builds each payload (relations resolved through the in-run mapping
   cache, circular links left out, relations the source emptied cleared
   on update), upserts it and records the identity mapping durably and
   in the cache.  Every selected locale is its own upsert.
5. Runs a second pass that writes the deferred circular relations once
   both ends exist on the target.
6. Runs deletions last.

Error handling is per item: a failure is recorded on the item's
selection and in the progress stream, and the run continues.  Each
selection's status is written exactly once per run: right after the
item for ordinary items, after the second pass for items that own a
circular edge.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable

from ..errors import DependencySkipped, MappingNotFound, StrapiSyncError
from .models import (
    FILE_CONTENT_TYPE,
    CircularDependencyEdge,
    ComparisonSnapshot,
    ContentRecord,
    ExecutionPlan,
    ItemOutcome,
    LinkRef,
    LocaleKey,
    MergeRequestStatus,
    OutcomeStatus,
    ProgressEvent,
    ProgressStatus,
    RunReport,
    Selection,
    SyncOrderItem,
    format_item_key,
)
from .payload import PayloadBuilder, ResolvedLink
from .schema import SchemaRegistry
from .state import MappingStore, SelectionStore

logger = logging.getLogger(__name__)

NodeKey = tuple[str, str]
EventListener = Callable[[ProgressEvent], None]


def _item_key(key: NodeKey) -> str:
    return f"{key[0]}:{key[1]}"


def _sort_key(key: LocaleKey) -> tuple[str, str, str]:
    return (key[0], key[1], key[2] or "")


class BatchExecutor:
    """Execute a plan against the target instance.

    Args:
        target_client: Client of the target instance.
        registry: Source schema registry.
        mappings: Durable mapping table for the instance pair.
        comparison: Comparison snapshot the plan was built from.
        selections: Selection store to record outcomes in, optional.
        merge_request_id: Merge request the selections belong to.
        file_processor: Handles ``plugin::upload.file`` items.
        on_event: Called with every ``ProgressEvent``, in order.
    """

    def __init__(
        self,
        target_client: Any,
        registry: SchemaRegistry,
        mappings: MappingStore,
        comparison: ComparisonSnapshot,
        selections: SelectionStore | None = None,
        merge_request_id: str = "default",
        file_processor: Any | None = None,
        on_event: EventListener | None = None,
    ) -> None:
        self.target = target_client
        self.registry = registry
        self.mappings = mappings
        self.comparison = comparison
        self.selections = selections
        self.merge_request_id = merge_request_id
        self.files = file_processor
        self.on_event = on_event
        self.builder = PayloadBuilder(registry)

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    def execute(
        self,
        plan: ExecutionPlan,
        cancel_event: threading.Event | None = None,
    ) -> RunReport:
        """Run every batch, the second pass and the deletions of ``plan``."""
        started_at = datetime.now(timezone.utc).isoformat()
        self._cancel = cancel_event or threading.Event()
        self._cache = self.mappings.index()
        self._results: dict[LocaleKey, bool] = {}
        self._outcomes: dict[LocaleKey, ItemOutcome] = {}
        # Per document: False once any of its locales failed.
        self._documents_ok: dict[NodeKey, bool] = {}
        self._root_failures: dict[NodeKey, set[str]] = {}
        self._events: list[ProgressEvent] = []
        self._warnings: list[str] = []
        self._processed = 0
        self._total = plan.total_items

        self._dependencies: dict[NodeKey, set[NodeKey]] = {}
        for edge in plan.edges:
            self._dependencies.setdefault(edge.from_key, set()).add(edge.to_key)
        self._deferred: dict[LocaleKey, list[CircularDependencyEdge]] = {}
        for edge in plan.circular_edges:
            self._deferred.setdefault(edge.from_locale_key, []).append(edge)
        self._missing = {
            (m.table, m.document_id, m.locale, m.link_id)
            for m in plan.missing_dependencies
        }
        self._persisted: set[LocaleKey] = set()

        for batch in plan.batches:
            for item in batch:
                self._emit(item.item_key, self._operation(item), ProgressStatus.PENDING)
        for item in plan.deletions:
            self._emit(item.item_key, "delete", ProgressStatus.PENDING)

        for selection in plan.unresolved:
            self._finish(
                selection,
                OutcomeStatus.FAILED,
                "create",
                error="Selection not found in comparison snapshot",
            )

        cancelled = False
        for number, batch in enumerate(plan.batches):
            if cancelled:
                break
            self._emit(
                f"batch:{number}",
                "batch",
                ProgressStatus.IN_PROGRESS,
                f"Batch {number + 1}/{len(plan.batches)} started "
                f"({len(batch)} item(s))",
            )
            for item in batch:
                if self._cancel.is_set():
                    cancelled = True
                    break
                self._process_item(item)
            self._emit_batch_done(f"batch:{number}", batch)

        by_key = {item.locale_key: item for batch in plan.batches for item in batch}
        if not cancelled:
            cancelled = self._second_pass(by_key)
        if not cancelled:
            for item in plan.deletions:
                if self._cancel.is_set():
                    cancelled = True
                    break
                self._process_deletion(item)

        if cancelled:
            self._mark_cancelled(plan, by_key)

        report = RunReport(
            merge_request_id=self.merge_request_id,
            outcomes=self._ordered_outcomes(plan),
            events=[],
            circular_edges=plan.circular_edges,
            missing_dependencies=plan.missing_dependencies,
            warnings=self._warnings,
            cancelled=cancelled,
            started_at=started_at,
        )
        self._emit(
            "run",
            "run",
            ProgressStatus.SUCCESS
            if report.status == MergeRequestStatus.COMPLETED
            else ProgressStatus.ERROR,
            f"{len(report.succeeded)} succeeded, {len(report.failed)} failed, "
            f"{len(report.skipped)} skipped"
            + (", run cancelled" if cancelled else ""),
        )
        return report.model_copy(
            update={
                "events": list(self._events),
                "completed_at": datetime.now(timezone.utc).isoformat(),
            }
        )

    # ------------------------------------------------------------------
    # Events and outcomes
    # ------------------------------------------------------------------

    def _emit(
        self,
        item_key: str,
        operation: str,
        status: ProgressStatus,
        message: str | None = None,
    ) -> None:
        event = ProgressEvent(
            item_key=item_key,
            operation=operation,
            status=status,
            message=message,
            processed_items=self._processed,
            total_items=self._total,
        )
        self._events.append(event)
        if self.on_event is not None:
            try:
                self.on_event(event)
            except Exception:
                logger.exception("Progress listener failed on %s", item_key)

    def _emit_batch_done(self, batch_key: str, batch: list[SyncOrderItem]) -> None:
        attempted = [i for i in batch if i.locale_key in self._results]
        failed = [i for i in attempted if not self._results[i.locale_key]]
        self._emit(
            batch_key,
            "batch",
            ProgressStatus.ERROR if failed else ProgressStatus.SUCCESS,
            f"{len(attempted) - len(failed)} succeeded, {len(failed)} failed, "
            f"{len(batch) - len(attempted)} not attempted",
        )

    def _operation(self, item: SyncOrderItem) -> str:
        if self._target_document_id(item) is not None:
            return "update"
        return "create"

    def _finish(
        self,
        selection: Selection,
        status: OutcomeStatus,
        operation: str,
        error: str | None = None,
        target_document_id: str | None = None,
        persist: bool = True,
        emit: bool = True,
        root_failures: list[str] | None = None,
    ) -> None:
        """Record the terminal state of an item."""
        key = selection.locale_key
        success = status == OutcomeStatus.SUCCESS
        self._results[key] = success
        document = selection.key
        self._documents_ok[document] = self._documents_ok.get(document, True) and success
        if not success:
            self._root_failures.setdefault(document, set()).update(
                root_failures or [format_item_key(*key)]
            )
        self._outcomes[key] = ItemOutcome(
            table=selection.table,
            document_id=selection.document_id,
            locale=selection.locale,
            direction=selection.direction,
            status=status,
            error=error,
            target_document_id=target_document_id,
            root_failures=root_failures or [],
        )
        if persist:
            self._persist(key)
        if emit:
            self._processed += 1
            self._emit(
                format_item_key(*key),
                operation,
                ProgressStatus.SUCCESS if success else ProgressStatus.ERROR,
                error,
            )
        if not success:
            logger.warning(
                "%s %s failed: %s", operation, format_item_key(*key), error
            )

    def _persist(self, key: LocaleKey) -> None:
        if key in self._persisted:
            return
        self._persisted.add(key)
        outcome = self._outcomes[key]
        if self.selections is None:
            return
        self.selections.update_sync_status(
            self.merge_request_id,
            outcome.table,
            outcome.document_id,
            outcome.status == OutcomeStatus.SUCCESS,
            outcome.error,
            locale=outcome.locale,
        )

    def _ordered_outcomes(self, plan: ExecutionPlan) -> list[ItemOutcome]:
        ordered = [
            self._outcomes[s.locale_key]
            for s in plan.unresolved
            if s.locale_key in self._outcomes
        ]
        for batch in plan.batches:
            ordered.extend(
                self._outcomes[i.locale_key]
                for i in batch
                if i.locale_key in self._outcomes
            )
        ordered.extend(
            self._outcomes[i.locale_key]
            for i in plan.deletions
            if i.locale_key in self._outcomes
        )
        return ordered

    def _mark_cancelled(
        self, plan: ExecutionPlan, by_key: dict[LocaleKey, SyncOrderItem]
    ) -> None:
        for key in sorted(self._deferred, key=_sort_key):
            outcome = self._outcomes.get(key)
            if key in self._persisted:
                continue
            if outcome is not None and outcome.status == OutcomeStatus.SUCCESS:
                # Created, but its circular relations were never written.
                self._finish(
                    by_key[key].selection,
                    OutcomeStatus.FAILED,
                    "relations",
                    error="Run cancelled before circular relations were applied",
                    target_document_id=outcome.target_document_id,
                    emit=False,
                )
            elif outcome is not None:
                self._persist(key)
        items = [i for batch in plan.batches for i in batch] + list(plan.deletions)
        for item in items:
            if item.locale_key in self._outcomes:
                continue
            self._outcomes[item.locale_key] = ItemOutcome(
                table=item.selection.table,
                document_id=item.selection.document_id,
                locale=item.selection.locale,
                direction=item.selection.direction,
                status=OutcomeStatus.CANCELLED,
                error="Run cancelled before this item was attempted",
            )
        logger.info("Run cancelled for merge request %s", self.merge_request_id)

    # ------------------------------------------------------------------
    # Create / update
    # ------------------------------------------------------------------

    def _process_item(self, item: SyncOrderItem) -> None:
        key = item.locale_key
        operation = self._operation(item)
        persist = key not in self._deferred

        failed = sorted(
            dep
            for dep in self._dependencies.get(item.key, ())
            if self._documents_ok.get(dep) is False
        )
        if failed:
            direct = [_item_key(dep) for dep in failed]
            roots = sorted(
                set().union(*(self._root_failures.get(dep, set()) for dep in failed))
            )
            message = "Skipped due to failed dependency: " + ", ".join(direct)
            if set(roots) - set(direct):
                message += f" (root failure: {', '.join(roots)})"
            self._finish(
                item.selection,
                OutcomeStatus.SKIPPED,
                operation,
                error=str(DependencySkipped(message)),
                persist=persist,
                root_failures=roots,
            )
            return

        self._emit(item.item_key, operation, ProgressStatus.IN_PROGRESS)
        deferred_ids = {e.via_link.link_id for e in self._deferred.get(key, [])}
        try:
            if item.selection.table == FILE_CONTENT_TYPE:
                target_document_id = self._sync_file(item)
            else:
                target_document_id = self._upsert(item, deferred_ids)
        except Exception as exc:
            self._finish(
                item.selection,
                OutcomeStatus.FAILED,
                operation,
                error=str(exc) or exc.__class__.__name__,
                persist=persist,
            )
            return

        self._finish(
            item.selection,
            OutcomeStatus.SUCCESS,
            operation,
            target_document_id=target_document_id,
            persist=persist,
        )

    @staticmethod
    def _source_record(item: SyncOrderItem) -> ContentRecord:
        if item.entry is None or item.entry.source is None:
            raise StrapiSyncError(f"{item.item_key} has no source record")
        return item.entry.source

    def _target_document_id(self, item: SyncOrderItem) -> str | None:
        entry = item.entry
        if entry is None or entry.source is None:
            return None
        source = entry.source
        mapping = self._cache_lookup(
            item.selection.table, source.document_id, source.locale
        )
        if mapping is not None:
            return mapping
        if entry.target is not None:
            return entry.target.document_id
        return None

    def _cache_lookup(
        self, table: str, document_id: str, locale: str | None = None
    ) -> str | None:
        return self._cache.target_document_id(table, document_id, locale)

    def _upsert(self, item: SyncOrderItem, deferred_ids: set[int]) -> str:
        record = self._source_record(item)
        table = item.selection.table
        schema = self.registry.content_type(table)

        links = [
            link
            for link in record.links
            if link.link_id not in deferred_ids
            and not self._is_missing(record, link)
        ]
        target_document_id = self._target_document_id(item)
        # An existing target record keeps stale relations unless emptied.
        data = self.builder.build(
            record,
            schema,
            self._resolve_links(links),
            clear_empty_links=target_document_id is not None,
        )

        response = self.target.upsert_entry(
            schema.query_name,
            data,
            single=schema.is_single,
            document_id=target_document_id,
            locale=record.locale,
        )
        new_document_id = response.get("documentId") or target_document_id
        if not new_document_id:
            raise StrapiSyncError(
                f"Target did not return a documentId for {table}:{record.document_id}"
            )
        self._record_mapping(
            table, record.document_id, str(new_document_id), record.locale,
            record.id, response.get("id"),
        )
        return str(new_document_id)

    def _sync_file(self, item: SyncOrderItem) -> str:
        if self.files is None:
            raise StrapiSyncError("File sync is not configured for this run")
        source = self._source_record(item)
        target = item.entry.target if item.entry is not None else None
        response = self.files.sync_file(
            source.raw, target.raw if target is not None else None
        )
        new_document_id = str(response.get("documentId") or response.get("id"))
        self._record_mapping(
            FILE_CONTENT_TYPE, source.document_id, new_document_id, None,
            source.id, response.get("id"),
        )
        return new_document_id

    def _record_mapping(
        self,
        table: str,
        source_document_id: str,
        target_document_id: str,
        locale: str | None,
        source_id: int | None,
        target_id: int | None,
    ) -> None:
        mapping = self.mappings.upsert(
            table,
            source_document_id,
            target_document_id,
            locale=locale,
            source_id=source_id,
            target_id=target_id,
        )
        self._cache.add(mapping)

    # ------------------------------------------------------------------
    # Link resolution
    # ------------------------------------------------------------------

    def _is_missing(self, record: ContentRecord, link: LinkRef) -> bool:
        key = (record.table, record.document_id, record.locale, link.link_id)
        return key in self._missing

    def _source_document_id(self, link: LinkRef) -> str | None:
        if link.target_document_id:
            return link.target_document_id
        if link.target_id is not None:
            record = self.comparison.find_source_by_id(
                link.target_table, link.target_id
            )
            if record is not None:
                return record.document_id
        return None

    def _resolve_links(self, links: list[LinkRef]) -> list[ResolvedLink]:
        resolved: list[ResolvedLink] = []
        for link in links:
            if link.target_table == FILE_CONTENT_TYPE:
                value = self._resolve_file(link)
            else:
                value = self._resolve_relation(link)
            if value is not None:
                resolved.append((link, value))
        return resolved

    def _not_found(self, link: LinkRef, fallback: Any) -> Any:
        warning = MappingNotFound(
            f"No mapping for {link.target_table}:"
            f"{link.target_document_id or link.target_id} ({link.field}), "
            f"using source identifier {fallback!r}"
        )
        logger.warning("%s", warning)
        self._warnings.append(str(warning))
        return fallback

    def _resolve_relation(self, link: LinkRef) -> str | None:
        document_id = self._source_document_id(link)
        if document_id is None:
            logger.warning(
                "Relation %s -> %s#%s cannot be resolved, omitted",
                link.field,
                link.target_table,
                link.target_id,
            )
            return None
        mapped = self._cache.target_document_id(link.target_table, document_id)
        if mapped:
            return mapped
        entry = self.comparison.find_by_source_document(
            link.target_table, document_id
        )
        if entry is not None and entry.target is not None:
            return entry.target.document_id
        return self._not_found(link, document_id)

    def _resolve_file(self, link: LinkRef) -> int | None:
        document_id = self._source_document_id(link)
        if document_id is not None:
            mapping = self._cache.get(FILE_CONTENT_TYPE, document_id)
            if mapping is not None and mapping.target_id is not None:
                return mapping.target_id
            entry = self.comparison.find_by_source_document(
                FILE_CONTENT_TYPE, document_id
            )
            if (
                entry is not None
                and entry.target is not None
                and entry.target.id is not None
            ):
                return entry.target.id
        if link.target_id is None:
            return None
        return self._not_found(link, link.target_id)

    # ------------------------------------------------------------------
    # Second pass
    # ------------------------------------------------------------------

    def _second_pass(self, by_key: dict[LocaleKey, SyncOrderItem]) -> bool:
        """Write deferred circular relations.  Returns ``True`` if cancelled."""
        if not self._deferred:
            return False
        self._emit(
            "batch:circular",
            "batch",
            ProgressStatus.IN_PROGRESS,
            f"Second pass for {len(self._deferred)} item(s) with circular relations",
        )
        pending = [by_key[k] for k in sorted(self._deferred, key=_sort_key)]
        for item in pending:
            key = item.locale_key
            if self._cancel.is_set():
                self._emit_batch_done("batch:circular", pending)
                return True
            if self._results.get(key) is not True:
                self._persist(key)
                continue

            edges = self._deferred[key]
            failed = sorted(
                {
                    e.to_key
                    for e in edges
                    if self._documents_ok.get(e.to_key) is not True
                }
            )
            outcome = self._outcomes[key]
            if failed:
                self._finish(
                    item.selection,
                    OutcomeStatus.FAILED,
                    "relations",
                    error="Circular relations not applied, failed dependency: "
                    + ", ".join(_item_key(dep) for dep in failed),
                    target_document_id=outcome.target_document_id,
                    emit=False,
                )
                self._emit(
                    item.item_key, "relations", ProgressStatus.ERROR,
                    self._outcomes[key].error,
                )
                continue

            self._emit(item.item_key, "relations", ProgressStatus.IN_PROGRESS)
            try:
                self._apply_circular(item, edges, outcome.target_document_id)
            except Exception as exc:
                self._finish(
                    item.selection,
                    OutcomeStatus.FAILED,
                    "relations",
                    error=f"Circular relation update failed: {exc}",
                    target_document_id=outcome.target_document_id,
                    emit=False,
                )
                self._emit(
                    item.item_key, "relations", ProgressStatus.ERROR,
                    self._outcomes[key].error,
                )
                continue
            self._persist(key)
            self._emit(item.item_key, "relations", ProgressStatus.SUCCESS)

        self._emit_batch_done("batch:circular", pending)
        return False

    def _apply_circular(
        self,
        item: SyncOrderItem,
        edges: list[CircularDependencyEdge],
        target_document_id: str | None,
    ) -> None:
        record = self._source_record(item)
        schema = self.registry.content_type(item.selection.table)

        # Relation values replace the whole field, so every link of a
        # deferred field (or component root) is written again.
        fields = {e.via_link.field for e in edges if "." not in e.via_link.field}
        component_roots = {
            e.via_link.root for e in edges if "." in e.via_link.field
        }
        links = [
            link
            for link in record.links
            if (link.field in fields or link.root in component_roots)
            and not self._is_missing(record, link)
        ]
        data = self.builder.build(
            record, schema, self._resolve_links(links), include_data=False
        )
        self.target.upsert_entry(
            schema.query_name,
            data,
            single=schema.is_single,
            document_id=target_document_id,
            locale=record.locale,
        )
        logger.debug(
            "Applied %d circular relation(s) to %s", len(edges), item.item_key
        )

    # ------------------------------------------------------------------
    # Deletions
    # ------------------------------------------------------------------

    def _process_deletion(self, item: SyncOrderItem) -> None:
        self._emit(item.item_key, "delete", ProgressStatus.IN_PROGRESS)
        target = item.entry.target if item.entry is not None else None
        table = item.selection.table
        if target is None:
            self._finish(item.selection, OutcomeStatus.SUCCESS, "delete")
            logger.info("%s already absent from target", item.item_key)
            return
        try:
            if table == FILE_CONTENT_TYPE:
                if self.files is None:
                    raise StrapiSyncError("File sync is not configured for this run")
                self.files.delete_file(target.raw)
            else:
                schema = self.registry.content_type(table)
                self.target.delete_entry(
                    schema.query_name,
                    single=schema.is_single,
                    document_id=target.document_id,
                    locale=target.locale,
                )
            mapping = self._cache.find_by_target(table, target.document_id)
            if mapping is not None:
                self.mappings.delete(*mapping.key)
                self._cache.remove(mapping.key)
        except Exception as exc:
            self._finish(
                item.selection,
                OutcomeStatus.FAILED,
                "delete",
                error=str(exc) or exc.__class__.__name__,
            )
            return
        self._finish(
            item.selection,
            OutcomeStatus.SUCCESS,
            "delete",
            target_document_id=target.document_id,
        )
