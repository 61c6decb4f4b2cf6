"""Bidirectional Azure DevOps <-> Notion sync core.

Architecture
------------
Each run pulls the records changed on both sides since the stored cursors
(or takes one webhook delta), classifies every change against the
identity map and applies the resulting plan through the connectors.
Conflicts between changes to both sides of one link are settled by
last-writer-wins with a configurable primary system breaking ties.

Modules:

- ``orchestrator`` -- ``SyncOrchestrator``: the per-run state machine.
- ``collector``    -- ``ChangeCollector``: cursor pulls and webhook deltas.
- ``reconciler``   -- ``Reconciler``: builds the ordered plan.
- ``mapper``       -- ``FieldMapper``: native payloads <-> ``CanonicalRecord``.
- ``links``        -- ``LinkStore``: identity map and fingerprints.
- ``repository``   -- ``SyncRepository`` protocol, ``JsonFileRepository``.
- ``token_guard``  -- ``TokenGuard``: OAuth refresh before remote calls.
- ``scheduler``    -- due-run evaluation and the scheduler CLI.
- ``models``       -- data contracts.
- ``errors``       -- exception taxonomy.
- ``reporter``     -- human-readable and JSON run reports.

Only the leaf modules are re-exported here; import the orchestrator from
``atpar_sync.sync.orchestrator`` (it depends on the connectors package,
which itself imports from this package).

Usage example
-------------
::

    from atpar_sync.sync.orchestrator import SyncOrchestrator
    from atpar_sync.sync.repository import JsonFileRepository
    from atpar_sync.sync import format_run_report

    repository = JsonFileRepository(state_dir, unified.teams)
    orchestrator = SyncOrchestrator(repository, runtime_config)

    preview = await orchestrator.run("platform", dry_run=True)
    print(format_run_report(preview))
"""

from .errors import (
    AlreadyRunningError,
    CredentialExpiredError,
    LinkInvariantViolationError,
    MappingUnresolvableError,
    RecordNotFoundError,
    RemoteRejectedError,
    SyncError,
    TeamNotConfiguredError,
    TransientRemoteError,
)
from .models import (
    CanonicalRecord,
    Classification,
    Link,
    PlanEntry,
    RunResult,
    SourceSystem,
    SyncDirection,
    SyncRun,
)
from .reporter import (
    format_history,
    format_plan_preview,
    format_run_report,
    result_to_json,
)

__all__ = [
    "AlreadyRunningError",
    "CanonicalRecord",
    "Classification",
    "CredentialExpiredError",
    "Link",
    "LinkInvariantViolationError",
    "MappingUnresolvableError",
    "PlanEntry",
    "RecordNotFoundError",
    "RemoteRejectedError",
    "RunResult",
    "SourceSystem",
    "SyncDirection",
    "SyncError",
    "SyncRun",
    "TeamNotConfiguredError",
    "TransientRemoteError",
    "format_history",
    "format_plan_preview",
    "format_run_report",
    "result_to_json",
]
