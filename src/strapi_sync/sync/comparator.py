"""Content comparison between a source and a target instance.

Classifies every record of every content type (and every media file)
into exactly one of ``ONLY_IN_SOURCE``, ``ONLY_IN_TARGET``, ``DIFFERENT``
or ``IDENTICAL``.

Key design choices:

* **Canonical hashing** -- ``normalize()`` drops technical fields and
  sorts arrays by their canonical JSON so two structurally equal entries
  hash identically regardless of key or element order.
* **Identity-free comparison** -- ids and documentIds differ per
  instance, so relations are compared as sets of *translated* target
  identifiers: a source relation to an already mapped record compares
  equal to the target's relation to the mapped counterpart.
* **Pure** -- the comparator reads snapshots, mappings and exclusions
  and returns a ``ComparisonSnapshot``; nothing is written.  Callers
  persist the proposed file mappings if they want them.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from .fields import FieldResolver, Schema
from .files import folder_name_paths
from .links import extract_links
from .models import (
    FILE_CONTENT_TYPE,
    CompareState,
    ComparisonResult,
    ComparisonSnapshot,
    ContentRecord,
    DocumentMapping,
    InstanceSnapshot,
    LinkRef,
)
from .schema import SchemaRegistry
from .state import MappingIndex

logger = logging.getLogger(__name__)

TECHNICAL_FIELDS = frozenset(
    {
        "id",
        "created_by_id",
        "updated_by_id",
        "created_at",
        "updated_at",
        "published_at",
        "createdAt",
        "updatedAt",
        "publishedAt",
        "createdBy",
        "updatedBy",
        "localizations",
    }
)

# Metadata that decides whether two media files are the same.  The folder
# is compared by its name path.
FILE_COMPARE_FIELDS = ("name", "alternativeText", "caption", "folderPath")

# Byte-level fingerprint of a media file, when the client computed one.
FILE_CONTENT_HASH = "calculatedHash"

# Relative size difference tolerated when matching files by name.
FILE_SIZE_TOLERANCE = 0.25

# Relative size difference tolerated for files without a fingerprint.
FILE_COMPARE_SIZE_TOLERANCE = 0.20


# ---------------------------------------------------------------------------
# Normalization and hashing
# ---------------------------------------------------------------------------


def canonical_json(value: Any) -> str:
    """Key-sorted, whitespace-free JSON used for hashing and sorting."""
    return json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False,
        default=str,
    )


def strip_technical(value: Any) -> Any:
    """Recursively drop technical fields, nulls and empty objects.

    Array order is preserved.
    """
    if isinstance(value, dict):
        stripped = {}
        for key, item in value.items():
            if key in TECHNICAL_FIELDS:
                continue
            item = strip_technical(item)
            if item is None or item == {}:
                continue
            stripped[key] = item
        return stripped
    if isinstance(value, list):
        return [strip_technical(item) for item in value]
    return value


def normalize(raw: Any) -> Any:
    """Strip technical fields and sort every array by canonical form."""
    if isinstance(raw, dict):
        normalized = {}
        for key in sorted(raw):
            if key in TECHNICAL_FIELDS:
                continue
            item = normalize(raw[key])
            if item is None or item == {}:
                continue
            normalized[key] = item
        return normalized
    if isinstance(raw, list):
        return sorted((normalize(item) for item in raw), key=canonical_json)
    return raw


def _drop_fields(value: Any, ignore: frozenset[str]) -> Any:
    if isinstance(value, dict):
        return {
            k: _drop_fields(v, ignore)
            for k, v in value.items()
            if k not in ignore
        }
    if isinstance(value, list):
        return [_drop_fields(item, ignore) for item in value]
    return value


def content_hash(
    normalized: Any, ignore_fields: Iterable[str] = ("documentId",)
) -> str:
    """SHA-256 hex digest of ``normalized`` without ``ignore_fields``.

    Ignored fields are removed at every depth before hashing.
    """
    filtered = _drop_fields(normalized, frozenset(ignore_fields))
    return hashlib.sha256(canonical_json(filtered).encode("utf-8")).hexdigest()


def snapshot_fingerprint(
    source: InstanceSnapshot, target: InstanceSnapshot
) -> str:
    """Cache key identifying a (source snapshot, target snapshot) pair."""
    digest = hashlib.sha256()
    for snapshot in (source, target):
        digest.update(canonical_json(snapshot.model_dump()).encode("utf-8"))
    return digest.hexdigest()


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


def make_record(
    table: str,
    raw: dict,
    schema: Schema,
    registry: SchemaRegistry,
    resolver: FieldResolver | None = None,
) -> ContentRecord:
    """Build a ``ContentRecord`` from a raw API entry."""
    record_id = raw.get("id")
    document_id = raw.get("documentId") or raw.get("document_id")
    if not document_id:
        document_id = str(record_id)
    return ContentRecord(
        table=table,
        id=record_id if isinstance(record_id, int) else None,
        document_id=str(document_id),
        locale=raw.get("locale"),
        raw=raw,
        normalized=normalize(raw),
        links=extract_links(raw, schema, registry, resolver),
    )


def make_file_record(raw: dict) -> ContentRecord:
    """Build a ``ContentRecord`` for a media library file."""
    record_id = raw.get("id")
    document_id = raw.get("documentId") or str(record_id)
    return ContentRecord(
        table=FILE_CONTENT_TYPE,
        id=record_id if isinstance(record_id, int) else None,
        document_id=str(document_id),
        raw=raw,
        normalized=normalize(raw),
    )


def _link_identity(link: LinkRef) -> str:
    if link.target_document_id:
        return link.target_document_id
    return f"#{link.target_id}"


# ---------------------------------------------------------------------------
# Comparator
# ---------------------------------------------------------------------------


class ContentComparator:
    """Compare snapshots of two instances.

    Args:
        mappings: Known source-to-target identity mappings.
        exclusions: ``(table, documentId)`` pairs never to be proposed.
    """

    def __init__(
        self,
        mappings: Iterable[DocumentMapping] = (),
        exclusions: Iterable[tuple[str, str]] = (),
    ) -> None:
        self.mappings = (
            mappings
            if isinstance(mappings, MappingIndex)
            else MappingIndex(mappings)
        )
        self.exclusions = {tuple(e) for e in exclusions}

    # ------------------------------------------------------------------
    # Digests
    # ------------------------------------------------------------------

    def _translate_source_link(self, link: LinkRef) -> str:
        if link.target_document_id:
            mapped = self.mappings.target_document_id(
                link.target_table, link.target_document_id
            )
            if mapped:
                return mapped
        return _link_identity(link)

    def record_digest(
        self,
        record: ContentRecord,
        schema: Schema,
        resolver: FieldResolver,
        translate: Callable[[LinkRef], str] = _link_identity,
    ) -> str:
        """Hash of a record's content with relations as translated ids."""
        data = normalize(
            resolver.prepare_data(record.raw, schema, skip_links=True)
        )
        links = sorted(
            f"{link.field}|{link.target_table}|{translate(link)}"
            for link in record.links
        )
        return content_hash({"data": data, "links": links})

    # ------------------------------------------------------------------
    # Content types
    # ------------------------------------------------------------------

    def compare_content_type(
        self,
        schema: Schema,
        source_records: list[ContentRecord],
        target_records: list[ContentRecord],
        resolver: FieldResolver,
        single: bool = False,
    ) -> list[ComparisonResult]:
        """Classify the records of one content type.

        Collection records match on ``(documentId, locale)`` after
        applying mappings.  Single types match on locale alone.
        """
        table = schema.uid
        target_index = {(r.document_id, r.locale): r for r in target_records}
        by_locale = {r.locale: r for r in target_records}
        matched: set[tuple[str, str | None]] = set()
        results: list[ComparisonResult] = []

        for source in sorted(
            source_records, key=lambda r: (r.document_id, r.locale or "")
        ):
            if single:
                target = by_locale.get(source.locale)
            else:
                mapped = self.mappings.target_document_id(
                    table, source.document_id, source.locale
                )
                target = target_index.get(
                    (mapped or source.document_id, source.locale)
                )
            if target is not None:
                matched.add((target.document_id, target.locale))

            if (table, source.document_id) in self.exclusions:
                logger.debug("Excluded %s:%s", table, source.document_id)
                continue

            if target is None:
                state = CompareState.ONLY_IN_SOURCE
            else:
                same = self.record_digest(
                    source, schema, resolver, self._translate_source_link
                ) == self.record_digest(target, schema, resolver)
                state = CompareState.IDENTICAL if same else CompareState.DIFFERENT
            results.append(
                ComparisonResult(
                    table=table, state=state, source=source, target=target
                )
            )

        for target in sorted(
            target_records, key=lambda r: (r.document_id, r.locale or "")
        ):
            if (target.document_id, target.locale) in matched:
                continue
            if (table, target.document_id) in self.exclusions:
                continue
            results.append(
                ComparisonResult(
                    table=table, state=CompareState.ONLY_IN_TARGET, target=target
                )
            )
        return results

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    @staticmethod
    def file_digest(
        record: ContentRecord, folder_names: dict[str, str] | None = None
    ) -> str:
        """Hash of the metadata compared between two files.

        ``folder_names`` maps ``folderPath`` values to folder name paths;
        paths it does not know are compared as they are.
        """
        view = {k: record.raw.get(k) for k in FILE_COMPARE_FIELDS}
        folder_path = view.get("folderPath") or "/"
        view["folderPath"] = (folder_names or {}).get(folder_path, folder_path)
        return content_hash(view)

    @staticmethod
    def file_content_hash(record: ContentRecord) -> str | None:
        value = record.raw.get(FILE_CONTENT_HASH)
        return str(value) if value else None

    @staticmethod
    def _size_ratio(source: ContentRecord, target: ContentRecord) -> float:
        source_size = float(source.raw.get("size") or 0)
        target_size = float(target.raw.get("size") or 0)
        largest = max(source_size, target_size)
        if largest == 0:
            return 0.0
        return abs(source_size - target_size) / largest

    def _similar_file(self, source: ContentRecord, target: ContentRecord) -> bool:
        if source.raw.get("name") != target.raw.get("name"):
            return False
        return self._size_ratio(source, target) < FILE_SIZE_TOLERANCE

    def file_state(
        self,
        source: ContentRecord,
        target: ContentRecord,
        source_folders: dict[str, str] | None = None,
        target_folders: dict[str, str] | None = None,
    ) -> CompareState:
        """Classify a matched file pair.

        Fingerprints decide the content when both sides have one;
        otherwise sizes must agree within ``FILE_COMPARE_SIZE_TOLERANCE``.
        The compared metadata must be equal either way.
        """
        if self.file_digest(source, source_folders) != self.file_digest(
            target, target_folders
        ):
            return CompareState.DIFFERENT
        source_hash = self.file_content_hash(source)
        target_hash = self.file_content_hash(target)
        if source_hash and target_hash:
            same = source_hash == target_hash
        else:
            same = self._size_ratio(source, target) < FILE_COMPARE_SIZE_TOLERANCE
        return CompareState.IDENTICAL if same else CompareState.DIFFERENT

    def _fallback_match(
        self, source: ContentRecord, candidates: list[ContentRecord]
    ) -> ContentRecord | None:
        source_hash = self.file_content_hash(source)
        if source_hash:
            for candidate in candidates:
                if self.file_content_hash(candidate) == source_hash:
                    return candidate
        for candidate in candidates:
            if self._similar_file(source, candidate):
                return candidate
        return None

    def compare_files(
        self,
        source_files: list[dict],
        target_files: list[dict],
        source_instance_id: str = "source",
        target_instance_id: str = "target",
        source_folders: list[dict] | None = None,
        target_folders: list[dict] | None = None,
    ) -> tuple[list[ComparisonResult], list[DocumentMapping]]:
        """Classify media files.

        Files match by mapped documentId first.  Remaining files fall back
        to an equal content fingerprint, then to a name match with a size
        tolerance; every such pair is returned as a proposed
        ``DocumentMapping``.
        Folders, when given, let matched files compare their folder by
        name path.

        Returns:
            ``(results, proposed_mappings)``.
        """
        table = FILE_CONTENT_TYPE
        source_names = folder_name_paths(source_folders or [])
        target_names = folder_name_paths(target_folders or [])
        sources = sorted(
            (make_file_record(f) for f in source_files),
            key=lambda r: r.document_id,
        )
        targets = {
            r.document_id: r for r in (make_file_record(f) for f in target_files)
        }
        pairs: list[tuple[ContentRecord, ContentRecord | None]] = []
        unmatched: list[ContentRecord] = []

        for source in sources:
            mapped = self.mappings.target_document_id(table, source.document_id)
            target = targets.pop(mapped or source.document_id, None)
            if target is None:
                unmatched.append(source)
            else:
                pairs.append((source, target))

        proposed: list[DocumentMapping] = []
        for source in unmatched:
            candidate = self._fallback_match(
                source, sorted(targets.values(), key=lambda r: r.document_id)
            )
            if candidate is not None:
                targets.pop(candidate.document_id)
                proposed.append(
                    DocumentMapping(
                        source_instance_id=source_instance_id,
                        target_instance_id=target_instance_id,
                        content_type=table,
                        source_id=source.id,
                        source_document_id=source.document_id,
                        target_id=candidate.id,
                        target_document_id=candidate.document_id,
                    )
                )
            pairs.append((source, candidate))

        results: list[ComparisonResult] = []
        for source, target in pairs:
            if (table, source.document_id) in self.exclusions:
                continue
            if target is None:
                state = CompareState.ONLY_IN_SOURCE
            else:
                state = self.file_state(
                    source, target, source_names, target_names
                )
            results.append(
                ComparisonResult(
                    table=table, state=state, source=source, target=target
                )
            )
        for document_id in sorted(targets):
            if (table, document_id) in self.exclusions:
                continue
            results.append(
                ComparisonResult(
                    table=table,
                    state=CompareState.ONLY_IN_TARGET,
                    target=targets[document_id],
                )
            )
        if proposed:
            logger.info("Matched %d file(s) by fingerprint or name", len(proposed))
        return results, proposed

    # ------------------------------------------------------------------
    # Whole snapshot
    # ------------------------------------------------------------------

    def compare(
        self, source: InstanceSnapshot, target: InstanceSnapshot
    ) -> ComparisonSnapshot:
        """Compare every content type and the media library."""
        source_resolver = FieldResolver(source.registry)
        target_resolver = FieldResolver(target.registry)
        results: dict[str, list[ComparisonResult]] = {}

        for uid, schema in sorted(source.registry.content_types.items()):
            target_schema = target.registry.content_types.get(uid, schema)
            source_records = [
                make_record(uid, raw, schema, source.registry, source_resolver)
                for raw in source.entries.get(uid, [])
            ]
            target_records = [
                make_record(
                    uid, raw, target_schema, target.registry, target_resolver
                )
                for raw in target.entries.get(uid, [])
            ]
            results[uid] = self.compare_content_type(
                schema,
                source_records,
                target_records,
                source_resolver,
                single=schema.is_single,
            )

        file_results, proposed = self.compare_files(
            source.files,
            target.files,
            source.instance_id,
            target.instance_id,
            source.folders,
            target.folders,
        )
        results[FILE_CONTENT_TYPE] = file_results

        snapshot = ComparisonSnapshot(
            results=results,
            proposed_mappings=proposed,
            fingerprint=snapshot_fingerprint(source, target),
            compared_at=datetime.now(timezone.utc).isoformat(),
        )
        for uid, counts in snapshot.counts().items():
            logger.debug("Compared %s: %s", uid, counts)
        return snapshot


def compare(
    source: InstanceSnapshot,
    target: InstanceSnapshot,
    mappings: Iterable[DocumentMapping] = (),
    exclusions: Iterable[tuple[str, str]] = (),
) -> ComparisonSnapshot:
    """Compare two instance snapshots (see ``ContentComparator``)."""
    return ContentComparator(mappings, exclusions).compare(source, target)
