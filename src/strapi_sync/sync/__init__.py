"""Content merge engine.

Compares two Strapi instances and replays selected differences from the
source onto the target in dependency order.

Modules:

- ``schema``     -- ``SchemaRegistry`` and schema compatibility checks.
- ``fields``     -- ``FieldResolver``: schema-aware key resolution and
  payload preparation.
- ``links``      -- relation extraction from raw entries.
- ``comparator`` -- ``ContentComparator``: record classification.
- ``scheduler``  -- ``DependencyScheduler``: batches, cycles, missing links.
- ``payload``    -- target payload construction.
- ``executor``   -- ``BatchExecutor``: plan execution with progress events.
- ``files``      -- media library copying.
- ``state``      -- durable mappings and merge request selections.
- ``cache``      -- ``SnapshotCache`` for schema checks and comparisons.
- ``reporter``   -- human-readable and JSON report formatting.

Usage example
-------------
::

    from strapi_sync.sync import (
        BatchExecutor, ContentComparator, DependencyScheduler, format_run_report,
    )

    comparison = ContentComparator(mappings.index()).compare(source, target)
    plan = DependencyScheduler(comparison, mappings.index()).schedule(selections)
    report = BatchExecutor(target_client, registry, mappings, comparison).execute(plan)
    print(format_run_report(report))
"""

from .comparator import ContentComparator
from .executor import BatchExecutor
from .models import (
    CompareState,
    ComparisonSnapshot,
    Direction,
    ExecutionPlan,
    RunReport,
    Selection,
)
from .reporter import (
    format_comparison,
    format_plan,
    format_run_report,
    plan_to_json,
    report_to_json,
)
from .scheduler import DependencyScheduler
from .state import MappingStore, SelectionStore

__all__ = [
    "BatchExecutor",
    "CompareState",
    "ComparisonSnapshot",
    "ContentComparator",
    "DependencyScheduler",
    "Direction",
    "ExecutionPlan",
    "MappingStore",
    "RunReport",
    "Selection",
    "SelectionStore",
    "format_comparison",
    "format_plan",
    "format_run_report",
    "plan_to_json",
    "report_to_json",
]
