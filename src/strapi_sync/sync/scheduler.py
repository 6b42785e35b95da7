"""Dependency scheduling of selected items into ordered batches.

Builds a graph over the selected create/update items where an edge
``A -> B`` means ``A`` holds a relation to ``B`` and ``B`` must reach the
target first.  Cycles are isolated with Tarjan's strongly connected
components: every edge inside a non-trivial component is deferred to the
executor's second pass as a ``CircularDependencyEdge``.  The remaining
acyclic graph is layered with Kahn's algorithm, one batch per layer.

Key design choices:

* **Condensed layering** -- Kahn's algorithm runs over the component
  graph, so all members of a cycle always land in the same batch.
* **Deterministic** -- nodes, edges and batch members are sorted by
  ``(table, documentId)``; the same selection and comparison snapshot
  always yield the same plan.
* **Non-fatal gaps** -- a link whose target is neither selected nor
  present in the target is reported as a ``MissingDependency`` and
  dropped; it never blocks scheduling.
* **Deletions last** -- deletions are not graph nodes and run after every
  create/update batch.
* **Documents are nodes** -- every selected locale of a document is its
  own item, but all of them share one graph node and one batch.
"""

from __future__ import annotations

import logging
from typing import Iterable

from .models import (
    CircularDependencyEdge,
    ComparisonSnapshot,
    DependencyEdge,
    Direction,
    ExecutionPlan,
    LinkRef,
    LocaleKey,
    MissingDependency,
    Selection,
    SyncOrderItem,
)
from .state import MappingIndex

logger = logging.getLogger(__name__)

NodeKey = tuple[str, str]

NOT_IN_COMPARISON = "Referenced entity not found in comparison"
NOT_SELECTED = "Dependency not selected and not present in target"


def strongly_connected_components(
    nodes: Iterable[NodeKey], adjacency: dict[NodeKey, list[NodeKey]]
) -> list[list[NodeKey]]:
    """Tarjan's algorithm, iterative.

    Args:
        nodes: Graph nodes, visited in the given order.
        adjacency: Outgoing neighbours per node.

    Returns:
        Components in reverse topological order, members sorted.
    """
    index: dict[NodeKey, int] = {}
    low: dict[NodeKey, int] = {}
    on_stack: set[NodeKey] = set()
    stack: list[NodeKey] = []
    components: list[list[NodeKey]] = []
    counter = 0

    for root in nodes:
        if root in index:
            continue
        index[root] = low[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        work = [(root, iter(adjacency.get(root, [])))]

        while work:
            node, neighbours = work[-1]
            descended = False
            for nxt in neighbours:
                if nxt not in index:
                    index[nxt] = low[nxt] = counter
                    counter += 1
                    stack.append(nxt)
                    on_stack.add(nxt)
                    work.append((nxt, iter(adjacency.get(nxt, []))))
                    descended = True
                    break
                if nxt in on_stack:
                    low[node] = min(low[node], index[nxt])
            if descended:
                continue

            work.pop()
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[node])
            if low[node] == index[node]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                components.append(sorted(component))

    return components


class DependencyScheduler:
    """Turn selections into an ``ExecutionPlan``.

    Args:
        comparison: Comparison snapshot the selections were made from.
        mappings: Known identity mappings; a mapped dependency counts as
            present in the target.
    """

    def __init__(
        self,
        comparison: ComparisonSnapshot,
        mappings: MappingIndex | None = None,
    ) -> None:
        self.comparison = comparison
        self.mappings = mappings or MappingIndex()

    # ------------------------------------------------------------------
    # Link resolution
    # ------------------------------------------------------------------

    def resolve_link(self, link: LinkRef) -> str | None:
        """Return the source documentId a link points at, if known."""
        if link.target_document_id:
            return link.target_document_id
        if link.target_id is not None:
            record = self.comparison.find_source_by_id(
                link.target_table, link.target_id
            )
            if record is not None:
                return record.document_id
        return None

    def _present_in_target(self, table: str, document_id: str) -> bool | None:
        """``True``/``False`` for known records, ``None`` if unknown."""
        if self.mappings.target_document_id(table, document_id):
            return True
        entry = self.comparison.find_by_source_document(table, document_id)
        if entry is None:
            entry = self.comparison.find(table, document_id)
            if entry is None:
                return None
        return entry.target is not None

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    def schedule(self, selections: Iterable[Selection]) -> ExecutionPlan:
        nodes: dict[NodeKey, list[SyncOrderItem]] = {}
        seen: set[LocaleKey] = set()
        deletions: list[SyncOrderItem] = []
        unresolved: list[Selection] = []

        for selection in sorted(
            selections, key=lambda s: (s.table, s.document_id, s.locale or "")
        ):
            if selection.locale_key in seen:
                logger.debug("Duplicate selection %s ignored", selection.locale_key)
                continue
            seen.add(selection.locale_key)
            entry = self.comparison.find(
                selection.table, selection.document_id, selection.locale
            )
            if selection.direction == Direction.TO_DELETE:
                deletions.append(SyncOrderItem(selection=selection, entry=entry))
                continue
            if entry is None or entry.source is None:
                logger.warning(
                    "Selection %s:%s has no source record in the comparison",
                    selection.table,
                    selection.document_id,
                )
                unresolved.append(selection)
                continue
            nodes.setdefault(selection.key, []).append(
                SyncOrderItem(selection=selection, entry=entry)
            )

        edges, missing = self._build_edges(nodes)
        adjacency: dict[NodeKey, list[NodeKey]] = {key: [] for key in nodes}
        for edge in edges:
            if edge.to_key not in adjacency[edge.from_key]:
                adjacency[edge.from_key].append(edge.to_key)

        components = strongly_connected_components(sorted(nodes), adjacency)
        component_of: dict[NodeKey, int] = {}
        for number, members in enumerate(components):
            for member in members:
                component_of[member] = number

        circular: list[CircularDependencyEdge] = []
        acyclic: list[DependencyEdge] = []
        for edge in edges:
            same = component_of[edge.from_key] == component_of[edge.to_key]
            if same and len(components[component_of[edge.from_key]]) > 1:
                circular.append(CircularDependencyEdge(**edge.model_dump()))
            else:
                acyclic.append(edge)

        layers = self._layer(components, component_of, acyclic)
        batches = [
            [
                item.model_copy(update={"batch": number})
                for key in sorted(
                    member for c in layer for member in components[c]
                )
                for item in nodes[key]
            ]
            for number, layer in enumerate(layers)
        ]
        deletions = [
            item.model_copy(update={"batch": len(batches)}) for item in deletions
        ]

        logger.info(
            "Scheduled %d item(s) in %d batch(es), %d deletion(s), "
            "%d circular edge(s), %d missing dependency(ies)",
            sum(len(items) for items in nodes.values()),
            len(batches),
            len(deletions),
            len(circular),
            len(missing),
        )
        return ExecutionPlan(
            batches=batches,
            deletions=deletions,
            circular_edges=circular,
            missing_dependencies=missing,
            edges=acyclic,
            unresolved=unresolved,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _build_edges(
        self, nodes: dict[NodeKey, list[SyncOrderItem]]
    ) -> tuple[list[DependencyEdge], list[MissingDependency]]:
        edges: list[DependencyEdge] = []
        missing: list[MissingDependency] = []

        for key in sorted(nodes):
            for item in nodes[key]:
                record = item.entry.source  # type: ignore[union-attr]
                for link in record.links:
                    document_id = self.resolve_link(link)
                    reason = None
                    if document_id is None:
                        reason = NOT_IN_COMPARISON
                    else:
                        target_key = (link.target_table, document_id)
                        if target_key == key:
                            continue
                        if target_key in nodes:
                            edges.append(
                                DependencyEdge(
                                    from_table=key[0],
                                    from_document_id=key[1],
                                    to_table=target_key[0],
                                    to_document_id=target_key[1],
                                    via_link=link,
                                    from_locale=record.locale,
                                )
                            )
                            continue
                        present = self._present_in_target(*target_key)
                        if present is None:
                            reason = NOT_IN_COMPARISON
                        elif not present:
                            reason = NOT_SELECTED
                    if reason is not None:
                        missing.append(
                            MissingDependency(
                                table=key[0],
                                document_id=key[1],
                                field=link.field,
                                target_table=link.target_table,
                                target_id=link.target_id,
                                target_document_id=document_id,
                                link_id=link.link_id,
                                reason=reason,
                                locale=record.locale,
                            )
                        )
        return edges, missing

    @staticmethod
    def _layer(
        components: list[list[NodeKey]],
        component_of: dict[NodeKey, int],
        edges: list[DependencyEdge],
    ) -> list[list[int]]:
        """Kahn's algorithm over the component graph."""
        dependents: dict[int, set[int]] = {c: set() for c in range(len(components))}
        in_degree = {c: 0 for c in range(len(components))}
        for edge in edges:
            dependent = component_of[edge.from_key]
            dependency = component_of[edge.to_key]
            if dependent == dependency or dependent in dependents[dependency]:
                continue
            dependents[dependency].add(dependent)
            in_degree[dependent] += 1

        def first_member(c: int) -> NodeKey:
            return components[c][0]

        layers: list[list[int]] = []
        ready = sorted((c for c, d in in_degree.items() if d == 0), key=first_member)
        while ready:
            layers.append(ready)
            following: list[int] = []
            for c in ready:
                for dependent in dependents[c]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        following.append(dependent)
            ready = sorted(following, key=first_member)
        return layers


def schedule(
    selections: Iterable[Selection],
    comparison: ComparisonSnapshot,
    mappings: MappingIndex | None = None,
) -> ExecutionPlan:
    """Schedule ``selections`` (see ``DependencyScheduler``)."""
    return DependencyScheduler(comparison, mappings).schedule(selections)
