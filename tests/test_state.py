"""Tests for mapping and selection persistence.

Covers:
- MappingStore upsert/get/delete and durability across instances
- Locale fallback of mapping lookups
- Concurrent upserts of one key keep a single row
- SelectionStore selections, sync status, exclusions and status
"""

from __future__ import annotations

import json
import threading
from pathlib import Path

from strapi_sync.sync.models import Direction, MergeRequestStatus, Selection
from strapi_sync.sync.state import MappingIndex, MappingStore, SelectionStore

SOURCE = "https://source.example.com"
TARGET = "https://target.example.com"


def _store(tmp_path: Path) -> MappingStore:
    return MappingStore(tmp_path, SOURCE, TARGET)


# ---------------------------------------------------------------------------
# Mappings
# ---------------------------------------------------------------------------


class TestMappingStore:
    def test_file_name_is_per_instance_pair(self, tmp_path: Path):
        store = _store(tmp_path)
        store.upsert("api::a.a", "s1", "t1")
        assert store.path.name == (
            "mappings_https_source_example_com__https_target_example_com.json"
        )
        assert store.path.exists()

    def test_upsert_then_get(self, tmp_path: Path):
        store = _store(tmp_path)
        mapping = store.upsert("api::a.a", "s1", "t1", source_id=1, target_id=2)
        assert store.get("api::a.a", "s1") == mapping
        assert mapping.source_instance_id == SOURCE
        assert mapping.updated_at is not None

    def test_upsert_updates_existing_row(self, tmp_path: Path):
        store = _store(tmp_path)
        store.upsert("api::a.a", "s1", "t1", target_id=2)
        store.upsert("api::a.a", "s1", "t9")
        assert len(store.all()) == 1
        mapping = store.get("api::a.a", "s1")
        assert mapping.target_document_id == "t9"
        assert mapping.target_id == 2

    def test_mappings_survive_reload(self, tmp_path: Path):
        _store(tmp_path).upsert("api::a.a", "s1", "t1", locale="en", manual=True)
        reloaded = _store(tmp_path)
        mapping = reloaded.get("api::a.a", "s1", "en")
        assert mapping.target_document_id == "t1"
        assert mapping.manual

        data = json.loads(reloaded.path.read_text())
        assert data["version"] == 1
        assert data["mappings"][0]["source_document_id"] == "s1"

    def test_locale_fallback(self, tmp_path: Path):
        store = _store(tmp_path)
        store.upsert("api::a.a", "s1", "t1", locale="en")
        assert store.get("api::a.a", "s1", "de").target_document_id == "t1"
        assert store.get("api::a.a", "other") is None

    def test_find_by_target_and_delete(self, tmp_path: Path):
        store = _store(tmp_path)
        store.upsert("api::a.a", "s1", "t1")
        assert store.find_by_target("api::a.a", "t1").source_document_id == "s1"
        assert store.delete("api::a.a", "s1")
        assert not store.delete("api::a.a", "s1")
        assert _store(tmp_path).get("api::a.a", "s1") is None

    def test_concurrent_upserts_keep_one_row(self, tmp_path: Path):
        store = _store(tmp_path)
        threads = [
            threading.Thread(
                target=store.upsert, args=("api::a.a", "s1", f"t{i}")
            )
            for i in range(8)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(store.all()) == 1
        assert len(_store(tmp_path).all()) == 1

    def test_index_is_a_copy(self, tmp_path: Path):
        store = _store(tmp_path)
        store.upsert("api::a.a", "s1", "t1")
        index = store.index()
        assert isinstance(index, MappingIndex)
        index.remove(("api::a.a", "s1", None))
        assert store.get("api::a.a", "s1") is not None


# ---------------------------------------------------------------------------
# Selections
# ---------------------------------------------------------------------------


class TestSelectionStore:
    def test_new_merge_request_is_created(self, tmp_path: Path):
        store = SelectionStore(tmp_path)
        assert store.status("mr") == MergeRequestStatus.CREATED
        assert store.selections("mr") == []

    def test_add_replaces_same_key(self, tmp_path: Path):
        store = SelectionStore(tmp_path)
        store.add("mr", Selection(table="t", document_id="d", direction=Direction.TO_CREATE))
        store.add("mr", Selection(table="t", document_id="d", direction=Direction.TO_UPDATE))
        [selection] = store.selections("mr")
        assert selection.direction == Direction.TO_UPDATE

    def test_remove_and_select_all(self, tmp_path: Path):
        store = SelectionStore(tmp_path)
        assert store.select_all("mr", "t", Direction.TO_CREATE, ["a", "b", "c"]) == 3
        store.remove("mr", "t", "b")
        assert [s.document_id for s in store.selections("mr")] == ["a", "c"]

    def test_locales_are_separate_selections(self, tmp_path: Path):
        store = SelectionStore(tmp_path)
        for locale in ("en", "fr"):
            store.add(
                "mr",
                Selection(
                    table="t",
                    document_id="d",
                    direction=Direction.TO_CREATE,
                    locale=locale,
                ),
            )
        store.update_sync_status("mr", "t", "d", False, "HTTP 400", locale="fr")
        rows = {s.locale: s for s in store.selections("mr")}
        assert rows["en"].sync_success is None
        assert rows["fr"].sync_success is False

        store.remove("mr", "t", "d", locale="en")
        assert [s.locale for s in store.selections("mr")] == ["fr"]
        store.remove("mr", "t", "d")
        assert store.selections("mr") == []

    def test_update_and_reset_sync_status(self, tmp_path: Path):
        store = SelectionStore(tmp_path)
        store.add("mr", Selection(table="t", document_id="d", direction=Direction.TO_CREATE))
        store.update_sync_status("mr", "t", "d", False, "HTTP 500")
        [selection] = store.selections("mr")
        assert selection.sync_success is False
        assert selection.sync_failure_response == "HTTP 500"

        store.update_sync_status("mr", "t", "d", True, "ignored")
        [selection] = store.selections("mr")
        assert selection.sync_success is True
        assert selection.sync_failure_response is None

        store.reset_sync_status("mr")
        assert store.selections("mr")[0].sync_success is None

    def test_update_unknown_selection_is_ignored(self, tmp_path: Path):
        store = SelectionStore(tmp_path)
        store.update_sync_status("mr", "t", "missing", True)
        assert store.selections("mr") == []

    def test_status_and_exclusions(self, tmp_path: Path):
        store = SelectionStore(tmp_path)
        store.set_status("mr", MergeRequestStatus.IN_PROGRESS)
        store.add_exclusion("mr", "t", "d")
        store.add_exclusion("mr", "t", "d")
        assert SelectionStore(tmp_path).status("mr") == MergeRequestStatus.IN_PROGRESS
        assert store.exclusions("mr") == [("t", "d")]
        store.remove_exclusion("mr", "t", "d")
        assert store.exclusions("mr") == []
