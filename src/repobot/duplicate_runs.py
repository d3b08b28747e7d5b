"""Cancel redundant workflow runs when a new run is requested.

One reconciliation episode per ``workflow_run.requested`` delivery:

1. query the workflow's runs on the same branch and for the same triggering
   event, once per status class, concurrently;
2. normalize every returned record to ``CandidateRun``;
3. merge the candidates by id, drop the triggering run, keep the ones older
   than it;
4. request cancellation of each of those, concurrently;
5. summarize everything in a ``ReconciliationReport``.

Episodes share nothing and never raise: failed queries and failed
cancellations become report entries.
"""

from __future__ import annotations

from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor
import logging
from typing import Final, Protocol

from repobot.diagnostics import DiagnosticSink, NullDiagnosticSink, record_diagnostic
from repobot.models import (
    ApiResponse,
    CancellationOutcome,
    CandidateRun,
    ReconciliationDisposition,
    ReconciliationReport,
    RunStatus,
    StatusQueryResult,
    TriggerEvent,
    WorkflowRunListing,
)
from repobot.observability import log_event
from repobot.payloads import PayloadError, as_int, parse_timestamp


LOGGER = logging.getLogger("repobot.duplicate_runs")

RUN_STATUS_CLASSES: Final[tuple[RunStatus, ...]] = ("queued", "in_progress", "requested")
DEFAULT_EXCLUDED_ACTIVITY_KINDS: Final[frozenset[str]] = frozenset(
    {"workflow_dispatch", "issue_comment"}
)
NO_DUPLICATES_MESSAGE: Final[str] = "No duplicate runs found!"
_CANCEL_ACCEPTED_STATUS: Final[int] = 202
_RULE: Final[str] = "--------------------------------"


class WorkflowRunClient(Protocol):
    def list_workflow_runs(
        self,
        *,
        workflow_id: int,
        branch: str,
        event: str,
        status: RunStatus,
    ) -> WorkflowRunListing: ...

    def cancel_workflow_run(self, run_id: int) -> ApiResponse: ...


def reconcile_duplicate_runs(
    event: TriggerEvent,
    *,
    github: WorkflowRunClient,
    diagnostics: DiagnosticSink | None = None,
    excluded_activity_kinds: Iterable[str] = DEFAULT_EXCLUDED_ACTIVITY_KINDS,
    max_workers: int = len(RUN_STATUS_CLASSES),
) -> ReconciliationReport:
    sink = diagnostics if diagnostics is not None else NullDiagnosticSink()
    if event.activity_kind in frozenset(excluded_activity_kinds):
        report = _report(
            event,
            disposition="not_applicable",
            notes=(
                f"Runs triggered by {event.activity_kind} are not reconciled; "
                "duplicate check not applicable.",
            ),
        )
        _log_report(report)
        return report

    query_results: tuple[StatusQueryResult, ...] = ()
    duplicates: tuple[CandidateRun, ...] = ()
    cancellations: tuple[CancellationOutcome, ...] = ()
    notes: list[str] = []
    try:
        query_results = fan_out_status_queries(
            event, github=github, diagnostics=sink, max_workers=max_workers
        )
        duplicates = select_duplicates(event, query_results)
        if duplicates:
            cancellations = dispatch_cancellations(
                event, duplicates, github=github, diagnostics=sink, max_workers=max_workers
            )
        else:
            notes.append(NO_DUPLICATES_MESSAGE)
    except Exception as exc:  # noqa: BLE001
        # Nothing escapes an episode; an unexpected error is one more report line.
        notes.append(f"Reconciliation stopped early: {type(exc).__name__}: {exc}")
        log_event(
            LOGGER,
            "duplicate_runs_reconcile_error",
            repo_full_name=event.full_name,
            run_id=event.run_id,
            error_type=type(exc).__name__,
        )

    report = _report(
        event,
        disposition="cancelled" if duplicates else "no_duplicates",
        query_results=query_results,
        duplicates=duplicates,
        cancellations=cancellations,
        notes=tuple(notes),
    )
    _log_report(report)
    return report


def fan_out_status_queries(
    event: TriggerEvent,
    *,
    github: WorkflowRunClient,
    diagnostics: DiagnosticSink,
    max_workers: int = len(RUN_STATUS_CLASSES),
) -> tuple[StatusQueryResult, ...]:
    """Query every status class at once and wait for all of them, successful or not.

    ``max_workers`` can widen the pool but never narrows it below one thread per
    status class.
    """
    with ThreadPoolExecutor(
        max_workers=max(len(RUN_STATUS_CLASSES), max_workers), thread_name_prefix="repobot-query"
    ) as pool:
        futures: list[Future[StatusQueryResult]] = [
            pool.submit(_query_status, event, status, github, diagnostics)
            for status in RUN_STATUS_CLASSES
        ]
        return tuple(future.result() for future in futures)


def normalize_run(record: dict[str, object]) -> CandidateRun:
    return CandidateRun(
        created_at=parse_timestamp(record.get("created_at"), field="created_at"),
        run_id=as_int(record.get("id"), field="id"),
    )


def normalize_runs(records: Iterable[dict[str, object]]) -> tuple[CandidateRun, ...]:
    return tuple(normalize_run(record) for record in records)


def merge_candidates(results: Iterable[StatusQueryResult]) -> tuple[CandidateRun, ...]:
    merged: dict[int, CandidateRun] = {}
    for result in results:
        if not result.succeeded:
            continue
        for candidate in result.runs:
            merged.setdefault(candidate.run_id, candidate)
    return tuple(sorted(merged.values()))


def select_duplicates(
    event: TriggerEvent, results: Iterable[StatusQueryResult]
) -> tuple[CandidateRun, ...]:
    """Return the merged candidates that are older than the triggering run.

    Runs are ordered by ``(created_at, run_id)``: with identical creation times
    the lower id counts as older, so exactly one run of a tied pair survives.
    """
    trigger = CandidateRun(created_at=event.run_created_at, run_id=event.run_id)
    return tuple(
        candidate
        for candidate in merge_candidates(results)
        if candidate.run_id != event.run_id and candidate < trigger
    )


def dispatch_cancellations(
    event: TriggerEvent,
    duplicates: Iterable[CandidateRun],
    *,
    github: WorkflowRunClient,
    diagnostics: DiagnosticSink,
    max_workers: int = len(RUN_STATUS_CLASSES),
) -> tuple[CancellationOutcome, ...]:
    """Request cancellation of every duplicate and wait for all requests to settle."""
    targets = tuple(duplicates)
    if not targets:
        return ()
    with ThreadPoolExecutor(
        max_workers=max(1, min(max_workers, len(targets))), thread_name_prefix="repobot-cancel"
    ) as pool:
        futures: list[Future[CancellationOutcome]] = [
            pool.submit(_cancel_run, event, candidate.run_id, github, diagnostics)
            for candidate in targets
        ]
        return tuple(future.result() for future in futures)


def render_report(report: ReconciliationReport) -> list[str]:
    lines = [
        _RULE,
        "Checking for duplicate runs:",
        f"    repo: {report.repo_full_name}",
        f"    branch: {report.branch}",
        f"    workflow: {report.workflow_name}",
        f"    event_type: {report.activity_kind}",
    ]
    for result in report.query_results:
        if result.succeeded:
            ids = ", ".join(str(candidate.run_id) for candidate in result.runs) or "none"
            lines.append(f"Found {result.status} runs: {ids}")
        else:
            lines.append(
                f"Failed to list {result.status} runs "
                f"(status {_format_http_status(result.http_status)}): {result.error}"
            )
    if report.duplicates:
        ids = ", ".join(str(candidate.run_id) for candidate in report.duplicates)
        lines.append(f"Duplicate runs: {ids}")
    for outcome in report.cancellations:
        lines.append(outcome.message)
    lines.extend(report.notes)
    lines.append("Finished handling duplicate runs")
    lines.append(_RULE)
    return lines


def _query_status(
    event: TriggerEvent,
    status: RunStatus,
    github: WorkflowRunClient,
    diagnostics: DiagnosticSink,
) -> StatusQueryResult:
    try:
        listing = github.list_workflow_runs(
            workflow_id=event.workflow_id,
            branch=event.branch,
            event=event.activity_kind,
            status=status,
        )
    except Exception as exc:  # noqa: BLE001
        result = StatusQueryResult(
            status=status,
            error=f"{type(exc).__name__}: {exc}",
        )
    else:
        record_diagnostic(
            diagnostics,
            "list_workflow_runs",
            {
                "repo_full_name": event.full_name,
                "workflow_id": event.workflow_id,
                "branch": event.branch,
                "event": event.activity_kind,
                "status": status,
                "http_status": listing.http_status,
                "workflow_runs": list(listing.runs),
            },
        )
        result = _listing_result(status, listing)

    if not result.succeeded:
        log_event(
            LOGGER,
            "workflow_run_query_failed",
            repo_full_name=event.full_name,
            workflow_id=event.workflow_id,
            status=status,
            http_status=result.http_status,
            error=result.error,
        )
    return result


def _listing_result(status: RunStatus, listing: WorkflowRunListing) -> StatusQueryResult:
    if not listing.ok:
        return StatusQueryResult(
            status=status,
            http_status=listing.http_status,
            error=f"listing returned HTTP {listing.http_status}",
        )
    try:
        runs = normalize_runs(listing.runs)
    except PayloadError as exc:
        return StatusQueryResult(
            status=status,
            http_status=listing.http_status,
            error=f"{type(exc).__name__}: {exc}",
        )
    return StatusQueryResult(status=status, runs=runs, http_status=listing.http_status)


def _cancel_run(
    event: TriggerEvent,
    run_id: int,
    github: WorkflowRunClient,
    diagnostics: DiagnosticSink,
) -> CancellationOutcome:
    try:
        response = github.cancel_workflow_run(run_id)
    except Exception as exc:  # noqa: BLE001
        outcome = CancellationOutcome(
            run_id=run_id,
            succeeded=False,
            http_status=None,
            message=f"Failed to cancel run {run_id}: {type(exc).__name__}: {exc}",
        )
    else:
        record_diagnostic(
            diagnostics,
            "cancel_workflow_run",
            {
                "repo_full_name": event.full_name,
                "run_id": run_id,
                "http_status": response.http_status,
                "body": response.body,
            },
        )
        if response.http_status == _CANCEL_ACCEPTED_STATUS:
            outcome = CancellationOutcome(
                run_id=run_id,
                succeeded=True,
                http_status=response.http_status,
                message=f"Canceling run {run_id}",
            )
        else:
            outcome = CancellationOutcome(
                run_id=run_id,
                succeeded=False,
                http_status=response.http_status,
                message=f"Failed to cancel run {run_id}: cancel returned HTTP {response.http_status}",
            )

    log_event(
        LOGGER,
        "workflow_run_cancelled" if outcome.succeeded else "workflow_run_cancel_failed",
        repo_full_name=event.full_name,
        run_id=run_id,
        trigger_run_id=event.run_id,
        http_status=outcome.http_status,
    )
    return outcome


def _report(
    event: TriggerEvent,
    *,
    disposition: ReconciliationDisposition,
    query_results: tuple[StatusQueryResult, ...] = (),
    duplicates: tuple[CandidateRun, ...] = (),
    cancellations: tuple[CancellationOutcome, ...] = (),
    notes: tuple[str, ...] = (),
) -> ReconciliationReport:
    return ReconciliationReport(
        repo_full_name=event.full_name,
        branch=event.branch,
        workflow_name=event.workflow_name,
        activity_kind=event.activity_kind,
        disposition=disposition,
        query_results=query_results,
        duplicates=duplicates,
        cancellations=cancellations,
        notes=notes,
    )


def _log_report(report: ReconciliationReport) -> None:
    LOGGER.info("%s", "\n".join(render_report(report)))
    log_event(
        LOGGER,
        "duplicate_runs_reconciled",
        repo_full_name=report.repo_full_name,
        branch=report.branch,
        workflow=report.workflow_name,
        activity_kind=report.activity_kind,
        disposition=report.disposition,
        failed_statuses=report.failed_statuses,
        duplicate_run_ids=tuple(candidate.run_id for candidate in report.duplicates),
        cancelled_run_ids=report.cancelled_run_ids,
    )


def _format_http_status(http_status: int | None) -> str:
    return "n/a" if http_status is None else str(http_status)
