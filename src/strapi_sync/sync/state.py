"""Persistence for identity mappings and operator selections.

Manages the JSON files in the state directory (``.strapi_sync/`` by
default):

* ``mappings_<source>__<target>.json`` -- the ``DocumentMapping`` table
  for one source/target instance pair.  Survives across runs so that
  re-syncs update the records created earlier instead of duplicating them.
* ``merge_request_<id>.json`` -- selections, exclusions and status of a
  merge request.

Key design choices:

* **Atomic writes** -- files are written to a temp file and moved into
  place with ``os.replace()`` so readers never see partial data.
* **Per-key locking** -- ``MappingStore.upsert()`` is a single
  read-check-then-insert-or-update under a lock held per
  (contentType, sourceDocumentId, locale), so concurrent items never
  race on the same mapping row.
* **In-memory index** -- ``MappingIndex`` is the lookup structure shared
  by the comparator, the scheduler and the executor's in-run cache.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator

from .models import (
    Direction,
    DocumentMapping,
    LocaleKey,
    MergeRequestStatus,
    Selection,
    format_item_key,
)

logger = logging.getLogger(__name__)

MappingKey = tuple[str, str, "str | None"]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _slug(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9]+", "_", value).strip("_") or "default"


def _row_key(row: dict) -> LocaleKey:
    return (row["table"], row["document_id"], row.get("locale"))


def _row_matches(
    row: dict,
    table: str,
    document_id: str,
    locale: str | None,
    any_locale: bool = False,
) -> bool:
    if (row["table"], row["document_id"]) != (table, document_id):
        return False
    return (any_locale and locale is None) or row.get("locale") == locale


def write_json_atomic(path: Path, data: dict) -> None:
    """Write ``data`` as JSON to ``path`` atomically.

    Creates the parent directory if it does not exist.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


# ---------------------------------------------------------------------------
# Mapping index
# ---------------------------------------------------------------------------


class MappingIndex:
    """In-memory lookup of ``DocumentMapping`` rows.

    Lookups by source documentId try the exact locale first and fall
    back to any locale of the same document, since relations address a
    document rather than one of its localizations.
    """

    def __init__(self, mappings: Iterable[DocumentMapping] = ()) -> None:
        self._rows: dict[MappingKey, DocumentMapping] = {}
        self._by_document: dict[tuple[str, str], list[MappingKey]] = {}
        self._lock = threading.Lock()
        for mapping in mappings:
            self.add(mapping)

    def add(self, mapping: DocumentMapping) -> None:
        with self._lock:
            key = mapping.key
            if key not in self._rows:
                self._by_document.setdefault(
                    (mapping.content_type, mapping.source_document_id), []
                ).append(key)
            self._rows[key] = mapping

    def remove(self, key: MappingKey) -> None:
        with self._lock:
            mapping = self._rows.pop(key, None)
            if mapping is not None:
                keys = self._by_document.get(
                    (mapping.content_type, mapping.source_document_id), []
                )
                if key in keys:
                    keys.remove(key)

    def get(
        self,
        content_type: str,
        source_document_id: str,
        locale: str | None = None,
    ) -> DocumentMapping | None:
        """Return the mapping for a source document, or ``None``."""
        exact = self._rows.get((content_type, source_document_id, locale))
        if exact is not None:
            return exact
        for key in self._by_document.get((content_type, source_document_id), []):
            return self._rows[key]
        return None

    def target_document_id(
        self,
        content_type: str,
        source_document_id: str,
        locale: str | None = None,
    ) -> str | None:
        mapping = self.get(content_type, source_document_id, locale)
        return mapping.target_document_id if mapping is not None else None

    def find_by_target(
        self, content_type: str, target_document_id: str
    ) -> DocumentMapping | None:
        for mapping in self._rows.values():
            if (
                mapping.content_type == content_type
                and mapping.target_document_id == target_document_id
            ):
                return mapping
        return None

    def __iter__(self) -> Iterator[DocumentMapping]:
        return iter(list(self._rows.values()))

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, key: object) -> bool:
        return key in self._rows


# ---------------------------------------------------------------------------
# Durable mapping table
# ---------------------------------------------------------------------------


class MappingStore:
    """Durable ``DocumentMapping`` table for one instance pair.

    Args:
        state_dir: Directory holding the state files.
        source_instance_id: Identifier of the source instance.
        target_instance_id: Identifier of the target instance.
    """

    def __init__(
        self,
        state_dir: Path,
        source_instance_id: str,
        target_instance_id: str,
    ) -> None:
        self._state_dir = Path(state_dir)
        self.source_instance_id = source_instance_id
        self.target_instance_id = target_instance_id
        self._file_lock = threading.Lock()
        self._key_locks: dict[MappingKey, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()
        self._index = MappingIndex(self._load())

    @property
    def path(self) -> Path:
        return self._state_dir / (
            f"mappings_{_slug(self.source_instance_id)}"
            f"__{_slug(self.target_instance_id)}.json"
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> list[DocumentMapping]:
        if not self.path.exists():
            return []
        with open(self.path, encoding="utf-8") as fh:
            data = json.load(fh)
        return [DocumentMapping(**row) for row in data.get("mappings", [])]

    def _save(self) -> None:
        with self._file_lock:
            rows = sorted(
                (m.model_dump(mode="json") for m in self._index),
                key=lambda r: (
                    r["content_type"],
                    r["source_document_id"],
                    r["locale"] or "",
                ),
            )
            write_json_atomic(
                self.path,
                {
                    "version": 1,
                    "source_instance_id": self.source_instance_id,
                    "target_instance_id": self.target_instance_id,
                    "updated_at": _utc_now(),
                    "mappings": rows,
                },
            )

    def _lock_for(self, key: MappingKey) -> threading.Lock:
        with self._key_locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(
        self,
        content_type: str,
        source_document_id: str,
        locale: str | None = None,
    ) -> DocumentMapping | None:
        return self._index.get(content_type, source_document_id, locale)

    def find_by_target(
        self, content_type: str, target_document_id: str
    ) -> DocumentMapping | None:
        return self._index.find_by_target(content_type, target_document_id)

    def all(self) -> list[DocumentMapping]:
        return list(self._index)

    def index(self) -> MappingIndex:
        """Return a fresh in-memory copy of the table."""
        return MappingIndex(self._index)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(
        self,
        content_type: str,
        source_document_id: str,
        target_document_id: str,
        locale: str | None = None,
        source_id: int | None = None,
        target_id: int | None = None,
        manual: bool = False,
    ) -> DocumentMapping:
        """Insert or update the mapping row for a source document.

        Returns:
            The stored mapping.
        """
        key = (content_type, source_document_id, locale)
        with self._lock_for(key):
            existing = self._index.get(*key)
            if existing is not None and existing.key != key:
                existing = None
            mapping = DocumentMapping(
                source_instance_id=self.source_instance_id,
                target_instance_id=self.target_instance_id,
                content_type=content_type,
                source_id=source_id
                if source_id is not None
                else (existing.source_id if existing else None),
                source_document_id=source_document_id,
                target_id=target_id
                if target_id is not None
                else (existing.target_id if existing else None),
                target_document_id=target_document_id,
                locale=locale,
                manual=manual or bool(existing and existing.manual),
                updated_at=_utc_now(),
            )
            self._index.add(mapping)
            self._save()
        logger.debug(
            "Mapping %s:%s -> %s (%s)",
            content_type,
            source_document_id,
            target_document_id,
            "updated" if existing else "created",
        )
        return mapping

    def delete(
        self,
        content_type: str,
        source_document_id: str,
        locale: str | None = None,
    ) -> bool:
        """Remove a mapping row.  Returns ``True`` if one was removed."""
        key = (content_type, source_document_id, locale)
        with self._lock_for(key):
            if key not in self._index:
                return False
            self._index.remove(key)
            self._save()
        return True


# ---------------------------------------------------------------------------
# Selections
# ---------------------------------------------------------------------------


class SelectionStore:
    """Selections, exclusions and status of merge requests.

    Args:
        state_dir: Directory holding the state files.
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = Path(state_dir)
        self._lock = threading.RLock()

    def _path(self, merge_request_id: str) -> Path:
        return self._state_dir / f"merge_request_{_slug(merge_request_id)}.json"

    def load(self, merge_request_id: str) -> dict:
        """Load the merge request state dict.

        Returns an empty ``CREATED`` state when no file exists.
        """
        path = self._path(merge_request_id)
        if not path.exists():
            return {
                "version": 1,
                "merge_request_id": merge_request_id,
                "status": MergeRequestStatus.CREATED.value,
                "selections": [],
                "exclusions": [],
            }
        with open(path, encoding="utf-8") as fh:
            return json.load(fh)

    def _save(self, merge_request_id: str, state: dict) -> None:
        state["updated_at"] = _utc_now()
        write_json_atomic(self._path(merge_request_id), state)

    # ------------------------------------------------------------------
    # Selections
    # ------------------------------------------------------------------

    def selections(self, merge_request_id: str) -> list[Selection]:
        state = self.load(merge_request_id)
        return [Selection(**row) for row in state.get("selections", [])]

    def add(self, merge_request_id: str, selection: Selection) -> None:
        """Add ``selection``, replacing one for the same locale."""
        self.add_many(merge_request_id, [selection])

    def add_many(
        self, merge_request_id: str, selections: Iterable[Selection]
    ) -> int:
        """Add several selections in one write.  Returns the number added."""
        selections = list(selections)
        keys = {selection.locale_key for selection in selections}
        with self._lock:
            state = self.load(merge_request_id)
            rows = [
                row
                for row in state.get("selections", [])
                if _row_key(row) not in keys
            ]
            rows.extend(s.model_dump(mode="json") for s in selections)
            state["selections"] = rows
            self._save(merge_request_id, state)
        return len(selections)

    def remove(
        self,
        merge_request_id: str,
        table: str,
        document_id: str,
        locale: str | None = None,
    ) -> None:
        """Remove a selection.  No-op if not present.

        Without ``locale`` every locale of the document is removed.
        """
        with self._lock:
            state = self.load(merge_request_id)
            state["selections"] = [
                row
                for row in state.get("selections", [])
                if not _row_matches(row, table, document_id, locale, True)
            ]
            self._save(merge_request_id, state)

    def select_all(
        self,
        merge_request_id: str,
        table: str,
        direction: Direction,
        document_ids: Iterable[str],
        locale: str | None = None,
    ) -> int:
        """Add one selection per document.  Returns the number added."""
        return self.add_many(
            merge_request_id,
            [
                Selection(
                    table=table,
                    document_id=document_id,
                    direction=direction,
                    locale=locale,
                )
                for document_id in document_ids
            ],
        )

    def update_sync_status(
        self,
        merge_request_id: str,
        table: str,
        document_id: str,
        success: bool,
        failure_response: str | None = None,
        locale: str | None = None,
    ) -> None:
        """Record the outcome of one execution attempt."""
        with self._lock:
            state = self.load(merge_request_id)
            for row in state.get("selections", []):
                if _row_matches(row, table, document_id, locale):
                    row["sync_success"] = success
                    row["sync_failure_response"] = (
                        None if success else failure_response
                    )
                    break
            else:
                logger.warning(
                    "No selection %s in merge request %s",
                    format_item_key(table, document_id, locale),
                    merge_request_id,
                )
                return
            self._save(merge_request_id, state)

    def reset_sync_status(self, merge_request_id: str) -> None:
        """Clear the outcome of every selection before a new run."""
        with self._lock:
            state = self.load(merge_request_id)
            for row in state.get("selections", []):
                row["sync_success"] = None
                row["sync_failure_response"] = None
            self._save(merge_request_id, state)

    # ------------------------------------------------------------------
    # Status and exclusions
    # ------------------------------------------------------------------

    def status(self, merge_request_id: str) -> MergeRequestStatus:
        return MergeRequestStatus(self.load(merge_request_id)["status"])

    def set_status(
        self, merge_request_id: str, status: MergeRequestStatus
    ) -> None:
        with self._lock:
            state = self.load(merge_request_id)
            state["status"] = status.value
            self._save(merge_request_id, state)

    def exclusions(self, merge_request_id: str) -> list[tuple[str, str]]:
        state = self.load(merge_request_id)
        return [tuple(e) for e in state.get("exclusions", [])]

    def add_exclusion(
        self, merge_request_id: str, table: str, document_id: str
    ) -> None:
        """Never propose ``table:document_id`` for this merge request."""
        with self._lock:
            state = self.load(merge_request_id)
            exclusions = state.setdefault("exclusions", [])
            if [table, document_id] not in exclusions:
                exclusions.append([table, document_id])
            self._save(merge_request_id, state)

    def remove_exclusion(
        self, merge_request_id: str, table: str, document_id: str
    ) -> None:
        with self._lock:
            state = self.load(merge_request_id)
            state["exclusions"] = [
                e
                for e in state.get("exclusions", [])
                if e != [table, document_id]
            ]
            self._save(merge_request_id, state)
