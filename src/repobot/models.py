from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal


RunStatus = Literal["queued", "in_progress", "requested"]
ReconciliationDisposition = Literal["not_applicable", "no_duplicates", "cancelled"]
WebhookOutcome = Literal["handled", "skipped", "ignored", "failed"]


@dataclass(frozen=True)
class ApiResponse:
    http_status: int
    body: object


@dataclass(frozen=True)
class WorkflowRunListing:
    http_status: int
    runs: tuple[dict[str, object], ...]

    @property
    def ok(self) -> bool:
        return self.http_status == 200


@dataclass(frozen=True)
class TriggerEvent:
    owner: str
    repo: str
    workflow_id: int
    workflow_name: str
    branch: str
    activity_kind: str
    run_id: int
    run_created_at: datetime

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


@dataclass(frozen=True, order=True)
class CandidateRun:
    created_at: datetime
    run_id: int


@dataclass(frozen=True)
class StatusQueryResult:
    status: RunStatus
    runs: tuple[CandidateRun, ...] = ()
    http_status: int | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class CancellationOutcome:
    run_id: int
    succeeded: bool
    http_status: int | None
    message: str


@dataclass(frozen=True)
class ReconciliationReport:
    repo_full_name: str
    branch: str
    workflow_name: str
    activity_kind: str
    disposition: ReconciliationDisposition
    query_results: tuple[StatusQueryResult, ...] = ()
    duplicates: tuple[CandidateRun, ...] = ()
    cancellations: tuple[CancellationOutcome, ...] = ()
    notes: tuple[str, ...] = ()

    @property
    def cancelled_run_ids(self) -> tuple[int, ...]:
        return tuple(outcome.run_id for outcome in self.cancellations if outcome.succeeded)

    @property
    def failed_statuses(self) -> tuple[RunStatus, ...]:
        return tuple(result.status for result in self.query_results if not result.succeeded)


@dataclass(frozen=True)
class PullRequestOpened:
    owner: str
    repo: str
    number: int
    head_owner: str
    head_repo: str
    head_ref: str


@dataclass(frozen=True)
class IssueOpened:
    owner: str
    repo: str
    number: int
    labels: tuple[str, ...]


@dataclass(frozen=True)
class IssueCommentCreated:
    owner: str
    repo: str
    issue_number: int
    is_pull_request: bool
    issue_author_login: str
    comment_author_login: str
    body: str


@dataclass(frozen=True)
class WebhookResult:
    event: str
    action: str | None
    outcome: WebhookOutcome
    detail: str
    report: ReconciliationReport | None = None
