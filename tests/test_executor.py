"""Tests for plan execution.

Covers:
- Created records are mapped and their ids reach dependent payloads
- Failures skip dependents without calling the target
- Circular relations are written in a second pass
- Relations emptied on the source are cleared on update
- Every selected locale of a document is written
- Deletions run last and drop mappings
- Cancellation between items
- Progress event ordering and selection status persistence
"""

import threading
from pathlib import Path

import pytest
from conftest import (
    AUTHOR,
    BOOK,
    CATEGORY,
    FILE,
    HOMEPAGE,
    FakeTarget,
    author,
    book,
    category,
    compare_entries,
    make_registry,
    media_file,
)

from strapi_sync.errors import StrapiSyncError
from strapi_sync.sync.executor import BatchExecutor
from strapi_sync.sync.models import (
    Direction,
    MergeRequestStatus,
    OutcomeStatus,
    ProgressStatus,
    Selection,
    SyncOrderItem,
)
from strapi_sync.sync.scheduler import schedule
from strapi_sync.sync.state import MappingStore, SelectionStore

MR = "mr-1"


def _sel(table, document_id, direction=Direction.TO_CREATE, locale=None):
    return Selection(
        table=table, document_id=document_id, direction=direction, locale=locale
    )


def _run(tmp_path: Path, comparison, selections, target=None, **kwargs):
    """Schedule and execute ``selections``; return (report, target, stores)."""
    target = target or FakeTarget()
    cancel_event = kwargs.pop("cancel_event", None)
    mappings = MappingStore(
        tmp_path, "https://source.example.com", target.instance_id
    )
    store = SelectionStore(tmp_path)
    for selection in selections:
        store.add(MR, selection)
    plan = schedule(selections, comparison, mappings.index())
    executor = BatchExecutor(
        target,
        make_registry(),
        mappings,
        comparison,
        selections=store,
        merge_request_id=MR,
        **kwargs,
    )
    report = executor.execute(plan, cancel_event)
    return report, target, mappings, store


AUTHOR_BOOK = {
    AUTHOR: [author("a1", 1)],
    BOOK: [book("b1", 10, author_ref=("a1", 1))],
}


class TestCreateAndMap:
    def test_dependency_id_reaches_dependent_payload(self, tmp_path):
        comparison = compare_entries(AUTHOR_BOOK)
        report, target, mappings, _ = _run(
            tmp_path, comparison, [_sel(BOOK, "b1"), _sel(AUTHOR, "a1")]
        )

        assert report.status == MergeRequestStatus.COMPLETED
        assert target.calls == [
            ("upsert", "authors", {"name": "Ann"}, None),
            ("upsert", "books", {"title": "Dune", "author": {"set": ["t-101"]}}, None),
        ]
        assert mappings.get(AUTHOR, "a1").target_document_id == "t-101"
        assert mappings.get(AUTHOR, "a1").target_id == 101
        assert mappings.get(BOOK, "b1").target_document_id == "t-102"

    def test_mappings_survive_a_new_store(self, tmp_path):
        comparison = compare_entries(AUTHOR_BOOK)
        _run(tmp_path, comparison, [_sel(AUTHOR, "a1")])

        reloaded = MappingStore(
            tmp_path, "https://source.example.com", "https://target.example.com"
        )
        assert reloaded.get(AUTHOR, "a1").target_document_id == "t-101"

    def test_update_uses_target_document_id(self, tmp_path):
        comparison = compare_entries(
            {AUTHOR: [author("a1", 1, "Ann B.")]}, {AUTHOR: [author("a1", 5)]}
        )
        report, target, _, _ = _run(
            tmp_path, comparison, [_sel(AUTHOR, "a1", Direction.TO_UPDATE)]
        )
        assert target.calls == [("upsert", "authors", {"name": "Ann B."}, "a1")]
        assert report.outcomes[0].target_document_id == "a1"

    def test_relation_to_record_already_in_target(self, tmp_path):
        comparison = compare_entries(AUTHOR_BOOK, {AUTHOR: [author("x1", 7)]})
        target = FakeTarget()
        mappings = MappingStore(
            tmp_path, "https://source.example.com", target.instance_id
        )
        mappings.upsert(AUTHOR, "a1", "x1", target_id=7)
        report, target, _, _ = _run(
            tmp_path, comparison, [_sel(BOOK, "b1")], target=target
        )
        assert target.calls[0][2] == {"title": "Dune", "author": {"set": ["x1"]}}
        assert report.missing_dependencies == []

    def test_missing_dependency_link_is_omitted(self, tmp_path):
        comparison = compare_entries(AUTHOR_BOOK)
        report, target, _, _ = _run(tmp_path, comparison, [_sel(BOOK, "b1")])

        assert target.calls == [("upsert", "books", {"title": "Dune"}, None)]
        assert len(report.missing_dependencies) == 1
        assert report.status == MergeRequestStatus.COMPLETED

    def test_file_dependency_uses_target_file_id(self, tmp_path):
        comparison = compare_entries(
            {BOOK: [book("b1", 10, cover={"id": 1, "documentId": "f1"})]},
            source_files=[media_file("f1", 1)],
        )

        class Files:
            def __init__(self):
                self.synced = []

            def sync_file(self, source_file, target_file=None):
                self.synced.append(source_file["documentId"])
                return {"id": 50, "documentId": "g50"}

        files = Files()
        report, target, mappings, _ = _run(
            tmp_path,
            comparison,
            [_sel(BOOK, "b1"), _sel(FILE, "f1")],
            file_processor=files,
        )
        assert files.synced == ["f1"]
        assert target.calls == [("upsert", "books", {"title": "Dune", "cover": 50}, None)]
        assert mappings.get(FILE, "f1").target_id == 50

    def test_relation_emptied_on_source_is_cleared_on_update(self, tmp_path):
        comparison = compare_entries(
            {AUTHOR: [author("a1", 1)], BOOK: [book("b1", 10)]},
            {
                AUTHOR: [author("a1", 1)],
                BOOK: [book("b1", 10, author_ref=("a1", 1))],
            },
        )
        report, target, _, _ = _run(
            tmp_path, comparison, [_sel(BOOK, "b1", Direction.TO_UPDATE)]
        )
        assert target.calls == [
            (
                "upsert",
                "books",
                {"title": "Dune", "author": {"set": []}, "cover": None},
                "b1",
            )
        ]
        assert report.status == MergeRequestStatus.COMPLETED

    def test_missing_relation_is_not_cleared_on_update(self, tmp_path):
        comparison = compare_entries(
            {
                AUTHOR: [author("a2", 2, "Bob")],
                BOOK: [book("b1", 10, "Dune II", author_ref=("a2", 2))],
            },
            {
                AUTHOR: [author("a1", 1)],
                BOOK: [book("b1", 10, author_ref=("a1", 1))],
            },
        )
        report, target, _, _ = _run(
            tmp_path, comparison, [_sel(BOOK, "b1", Direction.TO_UPDATE)]
        )
        assert target.calls == [
            ("upsert", "books", {"title": "Dune II", "cover": None}, "b1")
        ]
        assert len(report.missing_dependencies) == 1


class TestFailurePropagation:
    def test_failed_dependency_skips_dependent(self, tmp_path):
        comparison = compare_entries(AUTHOR_BOOK)
        report, target, _, store = _run(
            tmp_path,
            comparison,
            [_sel(AUTHOR, "a1"), _sel(BOOK, "b1")],
            target=FakeTarget(fail_on={"authors"}),
        )

        assert [c[1] for c in target.calls] == ["authors"]
        failed = report.outcome_for(AUTHOR, "a1")
        skipped = report.outcome_for(BOOK, "b1")
        assert failed.status == OutcomeStatus.FAILED
        assert "HTTP 400" in failed.error
        assert "ValidationError" in failed.error
        assert skipped.status == OutcomeStatus.SKIPPED
        assert skipped.error == (
            "Skipped due to failed dependency: api::author.author:a1"
        )
        assert report.status == MergeRequestStatus.FAILED

        rows = {s.document_id: s for s in store.selections(MR)}
        assert rows["a1"].sync_success is False
        assert "HTTP 400" in rows["a1"].sync_failure_response
        assert rows["b1"].sync_success is False
        assert rows["b1"].sync_failure_response.startswith("Skipped due to")

    def test_transitive_skip_names_root_failure(self, tmp_path):
        hero = {
            "__component": "shared.hero",
            "id": 5,
            "heading": "Read this",
            "featured": {"id": 10, "documentId": "b1"},
        }
        comparison = compare_entries(
            {
                **AUTHOR_BOOK,
                HOMEPAGE: [
                    {"id": 1, "documentId": "h1", "title": "Hi", "blocks": [hero]}
                ],
            }
        )
        report, target, _, store = _run(
            tmp_path,
            comparison,
            [_sel(HOMEPAGE, "h1"), _sel(BOOK, "b1"), _sel(AUTHOR, "a1")],
            target=FakeTarget(fail_on={"authors"}),
        )

        assert [c[1] for c in target.calls] == ["authors"]
        book_outcome = report.outcome_for(BOOK, "b1")
        home_outcome = report.outcome_for(HOMEPAGE, "h1")
        assert book_outcome.error == (
            "Skipped due to failed dependency: api::author.author:a1"
        )
        assert home_outcome.status == OutcomeStatus.SKIPPED
        assert home_outcome.error == (
            "Skipped due to failed dependency: api::book.book:b1"
            " (root failure: api::author.author:a1)"
        )
        assert home_outcome.root_failures == ["api::author.author:a1"]

        rows = {s.document_id: s for s in store.selections(MR)}
        assert "root failure: api::author.author:a1" in (
            rows["h1"].sync_failure_response
        )

    def test_failure_does_not_stop_unrelated_items(self, tmp_path):
        comparison = compare_entries(
            {AUTHOR: [author("a1", 1)], CATEGORY: [category("c1", 1, "One")]}
        )
        report, target, _, _ = _run(
            tmp_path,
            comparison,
            [_sel(AUTHOR, "a1"), _sel(CATEGORY, "c1")],
            target=FakeTarget(fail_on={"authors"}),
        )
        assert report.outcome_for(CATEGORY, "c1").status == OutcomeStatus.SUCCESS
        assert len(report.failed) == 1

    def test_unresolved_selection_fails(self, tmp_path):
        comparison = compare_entries({AUTHOR: [author("a1", 1)]})
        report, target, _, _ = _run(tmp_path, comparison, [_sel(AUTHOR, "ghost")])
        assert target.calls == []
        assert report.outcome_for(AUTHOR, "ghost").status == OutcomeStatus.FAILED


class TestCircularSecondPass:
    CYCLE = {
        CATEGORY: [
            category("c1", 1, "One", ("c2", 2)),
            category("c2", 2, "Two", ("c1", 1)),
        ]
    }

    def test_circular_relations_written_after_both_exist(self, tmp_path):
        comparison = compare_entries(self.CYCLE)
        report, target, _, store = _run(
            tmp_path, comparison, [_sel(CATEGORY, "c1"), _sel(CATEGORY, "c2")]
        )

        assert target.calls == [
            ("upsert", "categories", {"name": "One"}, None),
            ("upsert", "categories", {"name": "Two"}, None),
            ("upsert", "categories", {"parent": {"set": ["t-102"]}}, "t-101"),
            ("upsert", "categories", {"parent": {"set": ["t-101"]}}, "t-102"),
        ]
        assert report.status == MergeRequestStatus.COMPLETED
        assert len(report.circular_edges) == 2
        assert all(s.sync_success for s in store.selections(MR))

    def test_second_pass_rewrites_whole_relation_field(self, tmp_path):
        comparison = compare_entries(
            {
                CATEGORY: [
                    category(
                        "c1", 1, "One", ("c2", 2), related=[("c2", 2), ("c3", 3)]
                    ),
                    category("c2", 2, "Two", ("c1", 1)),
                    category("c3", 3, "Three"),
                ]
            },
            {CATEGORY: [category("c3", 30, "Three")]},
        )
        report, target, _, _ = _run(
            tmp_path, comparison, [_sel(CATEGORY, "c1"), _sel(CATEGORY, "c2")]
        )

        assert target.calls == [
            ("upsert", "categories", {"name": "One", "related": {"set": ["c3"]}}, None),
            ("upsert", "categories", {"name": "Two"}, None),
            (
                "upsert",
                "categories",
                {
                    "parent": {"set": ["t-102"]},
                    "related": {"set": ["t-102", "c3"]},
                },
                "t-101",
            ),
            ("upsert", "categories", {"parent": {"set": ["t-101"]}}, "t-102"),
        ]
        assert report.status == MergeRequestStatus.COMPLETED

    def test_circular_partner_failure_fails_relations(self, tmp_path):
        comparison = compare_entries(self.CYCLE)

        class FailSecond(FakeTarget):
            def upsert_entry(self, query_name, data, **kwargs):
                if data.get("name") == "Two":
                    self.calls.append(("upsert", query_name, data, None))
                    raise RuntimeError("boom")
                return super().upsert_entry(query_name, data, **kwargs)

        report, target, _, store = _run(
            tmp_path,
            comparison,
            [_sel(CATEGORY, "c1"), _sel(CATEGORY, "c2")],
            target=FailSecond(),
        )
        c1 = report.outcome_for(CATEGORY, "c1")
        c2 = report.outcome_for(CATEGORY, "c2")
        assert c2.status == OutcomeStatus.FAILED
        assert c1.status == OutcomeStatus.FAILED
        assert c1.error.startswith("Circular relations not applied")
        assert len(target.calls) == 2

        rows = {s.document_id: s for s in store.selections(MR)}
        assert rows["c1"].sync_success is False
        assert rows["c2"].sync_failure_response == "boom"


class TestLocales:
    def test_every_selected_locale_is_written(self, tmp_path):
        comparison = compare_entries(
            {
                AUTHOR: [
                    author("a1", 1, "Ann", locale="en"),
                    author("a1", 2, "Anne", locale="fr"),
                ]
            }
        )
        report, target, mappings, store = _run(
            tmp_path,
            comparison,
            [_sel(AUTHOR, "a1", locale="fr"), _sel(AUTHOR, "a1", locale="en")],
        )

        assert target.calls == [
            ("upsert", "authors", {"name": "Ann"}, None),
            ("upsert", "authors", {"name": "Anne"}, "t-101"),
        ]
        assert target.locales == ["en", "fr"]
        assert [o.item_key for o in report.outcomes] == [
            "api::author.author:a1@en",
            "api::author.author:a1@fr",
        ]
        fr = report.outcome_for(AUTHOR, "a1", "fr")
        assert fr.status == OutcomeStatus.SUCCESS
        assert fr.target_document_id == "t-101"
        assert mappings.get(AUTHOR, "a1", "fr").target_document_id == "t-101"
        assert all(s.sync_success for s in store.selections(MR))

    def test_failed_locale_skips_dependents_of_the_document(self, tmp_path):
        comparison = compare_entries(
            {
                AUTHOR: [
                    author("a1", 1, "Ann", locale="en"),
                    author("a1", 2, "Anne", locale="fr"),
                ],
                BOOK: [book("b1", 10, author_ref=("a1", 1))],
            }
        )

        class FailFrench(FakeTarget):
            def upsert_entry(self, query_name, data, locale=None, **kwargs):
                if locale == "fr":
                    raise RuntimeError("locale not enabled")
                return super().upsert_entry(
                    query_name, data, locale=locale, **kwargs
                )

        report, target, _, _ = _run(
            tmp_path,
            comparison,
            [
                _sel(AUTHOR, "a1", locale="en"),
                _sel(AUTHOR, "a1", locale="fr"),
                _sel(BOOK, "b1"),
            ],
            target=FailFrench(),
        )
        assert report.outcome_for(AUTHOR, "a1", "en").status == OutcomeStatus.SUCCESS
        assert report.outcome_for(AUTHOR, "a1", "fr").status == OutcomeStatus.FAILED
        skipped = report.outcome_for(BOOK, "b1")
        assert skipped.status == OutcomeStatus.SKIPPED
        assert skipped.root_failures == ["api::author.author:a1@fr"]


class TestSourceRecords:
    def test_item_without_source_record_raises(self):
        item = SyncOrderItem(selection=_sel(AUTHOR, "a1"), entry=None)
        with pytest.raises(StrapiSyncError, match="has no source record"):
            BatchExecutor._source_record(item)


class TestDeletions:
    def test_deletions_run_last_and_drop_mapping(self, tmp_path):
        comparison = compare_entries(
            {AUTHOR: [author("a1", 1)]}, {AUTHOR: [author("x5", 5)]}
        )
        target = FakeTarget()
        mappings = MappingStore(
            tmp_path, "https://source.example.com", target.instance_id
        )
        mappings.upsert(AUTHOR, "old", "x5")
        report, target, mappings, _ = _run(
            tmp_path,
            comparison,
            [_sel(AUTHOR, "x5", Direction.TO_DELETE), _sel(AUTHOR, "a1")],
            target=target,
        )
        assert [c[0] for c in target.calls] == ["upsert", "delete"]
        assert target.calls[1] == ("delete", "authors", None, "x5")
        assert report.outcome_for(AUTHOR, "x5").status == OutcomeStatus.SUCCESS
        assert mappings.get(AUTHOR, "old") is None

    def test_delete_of_absent_record_succeeds(self, tmp_path):
        comparison = compare_entries({AUTHOR: [author("a1", 1)]})
        report, target, _, _ = _run(
            tmp_path, comparison, [_sel(AUTHOR, "gone", Direction.TO_DELETE)]
        )
        assert target.calls == []
        assert report.outcome_for(AUTHOR, "gone").status == OutcomeStatus.SUCCESS


class TestEventsAndCancellation:
    def test_event_order(self, tmp_path):
        comparison = compare_entries(AUTHOR_BOOK)
        events = []
        report, _, _, _ = _run(
            tmp_path,
            comparison,
            [_sel(AUTHOR, "a1"), _sel(BOOK, "b1")],
            on_event=events.append,
        )
        assert [(e.item_key, e.status) for e in events[:2]] == [
            ("api::author.author:a1", ProgressStatus.PENDING),
            ("api::book.book:b1", ProgressStatus.PENDING),
        ]
        item_events = [
            (e.item_key, e.status) for e in events
            if e.item_key.startswith("api::") and e.status != ProgressStatus.PENDING
        ]
        assert item_events == [
            ("api::author.author:a1", ProgressStatus.IN_PROGRESS),
            ("api::author.author:a1", ProgressStatus.SUCCESS),
            ("api::book.book:b1", ProgressStatus.IN_PROGRESS),
            ("api::book.book:b1", ProgressStatus.SUCCESS),
        ]
        assert events[-1].item_key == "run"
        assert events[-1].processed_items == 2
        assert events[-1].total_items == 2
        assert report.events == events

    def test_listener_errors_do_not_abort_run(self, tmp_path):
        comparison = compare_entries(AUTHOR_BOOK)

        def broken(event):
            raise ValueError("listener down")

        report, _, _, _ = _run(
            tmp_path, comparison, [_sel(AUTHOR, "a1")], on_event=broken
        )
        assert report.status == MergeRequestStatus.COMPLETED

    def test_cancel_between_items(self, tmp_path):
        comparison = compare_entries(
            {AUTHOR: [author("a1", 1), author("a2", 2), author("a3", 3)]}
        )
        cancel = threading.Event()

        def listener(event):
            if event.item_key.endswith(":a1") and event.status == ProgressStatus.SUCCESS:
                cancel.set()

        target = FakeTarget()
        mappings = MappingStore(
            tmp_path, "https://source.example.com", target.instance_id
        )
        store = SelectionStore(tmp_path)
        selections = [_sel(AUTHOR, d) for d in ("a1", "a2", "a3")]
        for s in selections:
            store.add(MR, s)
        executor = BatchExecutor(
            target,
            make_registry(),
            mappings,
            comparison,
            selections=store,
            merge_request_id=MR,
            on_event=listener,
        )
        report = executor.execute(schedule(selections, comparison), cancel)

        assert report.cancelled
        assert report.status == MergeRequestStatus.FAILED
        assert len(target.calls) == 1
        assert [o.status for o in report.outcomes] == [
            OutcomeStatus.SUCCESS,
            OutcomeStatus.CANCELLED,
            OutcomeStatus.CANCELLED,
        ]
        rows = {s.document_id: s for s in store.selections(MR)}
        assert rows["a1"].sync_success is True
        assert rows["a2"].sync_success is None
