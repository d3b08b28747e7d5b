from __future__ import annotations

from collections.abc import Callable
import logging
from urllib.parse import quote

from repobot.config import AppConfig, RepoConfig
from repobot.diagnostics import DiagnosticSink, NullDiagnosticSink, record_diagnostic
from repobot.duplicate_runs import reconcile_duplicate_runs
from repobot.github_gateway import GitHubGateway
from repobot.models import (
    IssueCommentCreated,
    IssueOpened,
    PullRequestOpened,
    TriggerEvent,
    WebhookOutcome,
    WebhookResult,
)
from repobot.observability import log_event, logging_repo_context
from repobot.payloads import (
    PayloadError,
    as_login,
    as_int,
    as_object_dict,
    as_optional_int,
    as_string,
    parse_timestamp,
    require_object,
)


LOGGER = logging.getLogger("repobot.webhooks")
BINDER_BADGE_URL = "https://mybinder.org/badge_logo.svg"
BINDER_BASE_URL = "https://mybinder.org/v2/gh"

GatewayFactory = Callable[[RepoConfig], GitHubGateway]


class WebhookPayloadError(PayloadError):
    """Webhook payload is missing fields the handler needs."""


def repository_full_name(payload: dict[str, object]) -> str:
    repository = _require(payload, "repository")
    owner = require_object(repository.get("owner"), field="repository.owner")
    login = as_string(owner.get("login"))
    name = as_string(repository.get("name"))
    if not login or not name:
        raise WebhookPayloadError("repository.owner.login and repository.name are required")
    return f"{login}/{name}"


def trigger_event_from_payload(payload: dict[str, object]) -> TriggerEvent | None:
    """Build the reconciliation input from a ``workflow_run`` delivery.

    Returns None when the run carries no workflow id; no episode is started then.
    """
    run = _require(payload, "workflow_run")
    workflow_id = as_optional_int(run.get("workflow_id"), field="workflow_run.workflow_id")
    if workflow_id is None:
        return None
    owner, repo = repository_full_name(payload).split("/", 1)
    return TriggerEvent(
        owner=owner,
        repo=repo,
        workflow_id=workflow_id,
        workflow_name=as_string(run.get("name")),
        branch=as_string(run.get("head_branch")),
        activity_kind=as_string(run.get("event")),
        run_id=as_int(run.get("id"), field="workflow_run.id"),
        run_created_at=parse_timestamp(run.get("created_at"), field="workflow_run.created_at"),
    )


def pull_request_opened_from_payload(payload: dict[str, object]) -> PullRequestOpened:
    pull_request = _require(payload, "pull_request")
    head = require_object(pull_request.get("head"), field="pull_request.head")
    head_user = require_object(head.get("user"), field="pull_request.head.user")
    head_repo = require_object(head.get("repo"), field="pull_request.head.repo")
    owner, repo = repository_full_name(payload).split("/", 1)
    return PullRequestOpened(
        owner=owner,
        repo=repo,
        number=as_int(pull_request.get("number"), field="pull_request.number"),
        head_owner=as_string(head_user.get("login")),
        head_repo=as_string(head_repo.get("name")),
        head_ref=as_string(head.get("ref")),
    )


def issue_opened_from_payload(payload: dict[str, object]) -> IssueOpened:
    issue = _require(payload, "issue")
    owner, repo = repository_full_name(payload).split("/", 1)
    labels: list[str] = []
    labels_obj = issue.get("labels")
    if isinstance(labels_obj, list):
        for entry in labels_obj:
            entry_obj = as_object_dict(entry)
            if entry_obj is None:
                continue
            name = entry_obj.get("name")
            if isinstance(name, str):
                labels.append(name)
    return IssueOpened(
        owner=owner,
        repo=repo,
        number=as_int(issue.get("number"), field="issue.number"),
        labels=tuple(labels),
    )


def issue_comment_from_payload(payload: dict[str, object]) -> IssueCommentCreated:
    issue = _require(payload, "issue")
    comment = _require(payload, "comment")
    owner, repo = repository_full_name(payload).split("/", 1)
    issue_user = as_object_dict(issue.get("user"))
    comment_user = as_object_dict(comment.get("user"))
    return IssueCommentCreated(
        owner=owner,
        repo=repo,
        issue_number=as_int(issue.get("number"), field="issue.number"),
        # GitHub delivers PR conversation comments as issue comments.
        is_pull_request="pull_request" in issue,
        issue_author_login=as_login(issue_user.get("login") if issue_user else None),
        comment_author_login=as_login(comment_user.get("login") if comment_user else None),
        body=as_string(comment.get("body")),
    )


def render_binder_comment(pull_request: PullRequestOpened, *, url_suffix: str) -> str:
    ref = quote(pull_request.head_ref, safe="!*'()")
    link = f"{BINDER_BASE_URL}/{pull_request.head_owner}/{pull_request.head_repo}/{ref}{url_suffix}"
    return (
        f"Thanks for making a pull request to {pull_request.head_repo}!\n"
        "To try out this branch on [binder](https://mybinder.org), follow this link: "
        f"[![Binder]({BINDER_BADGE_URL})]({link})"
    )


def is_restart_command(body: str, command: str) -> bool:
    return " ".join(body.split()).casefold() == command


class WebhookDispatcher:
    def __init__(
        self,
        config: AppConfig,
        *,
        gateway_factory: GatewayFactory | None = None,
        diagnostics: DiagnosticSink | None = None,
    ) -> None:
        self._config = config
        self._gateway_factory = gateway_factory or _default_gateway
        self._diagnostics = diagnostics if diagnostics is not None else NullDiagnosticSink()

    def handle(self, event_name: str, payload: dict[str, object]) -> WebhookResult:
        raw_action = payload.get("action")
        action = raw_action if isinstance(raw_action, str) else None
        # Org and app hooks send some events, ping among them, with no repository.
        if payload.get("repository") is None:
            return self._ignored(event_name, action, "delivery has no repository")
        full_name = repository_full_name(payload)
        log_event(
            LOGGER,
            "webhook_received",
            github_event=event_name,
            action=action,
            repo_full_name=full_name,
        )
        repo = self._config.repo_for(full_name)
        if repo is None:
            return self._ignored(event_name, action, f"repository {full_name} is not configured")

        with logging_repo_context(repo.full_name):
            if event_name == "workflow_run" and action == "requested":
                return self._handle_workflow_run_requested(repo, payload)
            if event_name == "pull_request" and action == "opened":
                return self._handle_pull_request_opened(repo, payload)
            if event_name == "issues" and action == "opened":
                return self._handle_issue_opened(repo, payload)
            if event_name == "issue_comment" and action == "created":
                return self._handle_issue_comment_created(repo, payload)
            return self._ignored(event_name, action, "no handler for this event")

    def _handle_workflow_run_requested(
        self, repo: RepoConfig, payload: dict[str, object]
    ) -> WebhookResult:
        if not repo.cancel_duplicate_runs:
            return self._skipped("workflow_run", "requested", "duplicate run cancellation disabled")
        record_diagnostic(self._diagnostics, "workflow_run_event", payload)
        event = trigger_event_from_payload(payload)
        if event is None:
            return self._skipped(
                "workflow_run", "requested", "workflow run has no workflow_id; not applicable"
            )
        report = reconcile_duplicate_runs(
            event,
            github=self._gateway_factory(repo),
            diagnostics=self._diagnostics,
            excluded_activity_kinds=repo.excluded_activity_kinds,
            max_workers=self._config.runtime.worker_count,
        )
        outcome: WebhookOutcome = (
            "skipped" if report.disposition == "not_applicable" else "handled"
        )
        return WebhookResult(
            event="workflow_run",
            action="requested",
            outcome=outcome,
            detail=report.disposition,
            report=report,
        )

    def _handle_pull_request_opened(
        self, repo: RepoConfig, payload: dict[str, object]
    ) -> WebhookResult:
        pull_request = pull_request_opened_from_payload(payload)
        if not repo.add_binder_link:
            log_event(
                LOGGER,
                "binder_link_skipped",
                repo_full_name=repo.full_name,
                pr_number=pull_request.number,
            )
            return self._skipped("pull_request", "opened", "binder link disabled")
        body = render_binder_comment(pull_request, url_suffix=repo.binder_url_suffix)
        try:
            self._gateway_factory(repo).post_issue_comment(pull_request.number, body)
        except Exception as exc:  # noqa: BLE001
            return self._failed("pull_request", "opened", exc)
        return WebhookResult(
            event="pull_request",
            action="opened",
            outcome="handled",
            detail=f"posted binder link on #{pull_request.number}",
        )

    def _handle_issue_opened(self, repo: RepoConfig, payload: dict[str, object]) -> WebhookResult:
        issue = issue_opened_from_payload(payload)
        label = repo.triage_label
        if label is None:
            return self._skipped("issues", "opened", "no triage label configured")
        if label in issue.labels:
            return self._skipped("issues", "opened", f"#{issue.number} already labelled {label}")
        try:
            self._gateway_factory(repo).add_labels(issue.number, (label,))
        except Exception as exc:  # noqa: BLE001
            return self._failed("issues", "opened", exc)
        return WebhookResult(
            event="issues",
            action="opened",
            outcome="handled",
            detail=f"labelled #{issue.number} {label}",
        )

    def _handle_issue_comment_created(
        self, repo: RepoConfig, payload: dict[str, object]
    ) -> WebhookResult:
        comment = issue_comment_from_payload(payload)
        command = repo.restart_command
        if command is None:
            return self._skipped("issue_comment", "created", "no restart command configured")
        if not comment.is_pull_request:
            return self._skipped("issue_comment", "created", "comment is not on a pull request")
        if not is_restart_command(comment.body, command):
            return self._skipped("issue_comment", "created", "comment is not a restart command")
        if not repo.may_restart(
            comment_author=comment.comment_author_login,
            pr_author=comment.issue_author_login,
        ):
            log_event(
                LOGGER,
                "pull_request_restart_rejected",
                pr_number=comment.issue_number,
                comment_author=comment.comment_author_login,
            )
            return self._skipped(
                "issue_comment",
                "created",
                f"{comment.comment_author_login or '<unknown>'} may not restart #{comment.issue_number}",
            )

        github = self._gateway_factory(repo)
        try:
            github.set_issue_state(comment.issue_number, "closed")
            github.set_issue_state(comment.issue_number, "open")
        except Exception as exc:  # noqa: BLE001
            return self._failed("issue_comment", "created", exc)
        log_event(
            LOGGER,
            "pull_request_restarted",
            pr_number=comment.issue_number,
            requested_by=comment.comment_author_login,
        )
        return WebhookResult(
            event="issue_comment",
            action="created",
            outcome="handled",
            detail=f"restarted #{comment.issue_number}",
        )

    def _ignored(self, event_name: str, action: str | None, detail: str) -> WebhookResult:
        log_event(LOGGER, "webhook_ignored", github_event=event_name, action=action, reason=detail)
        return WebhookResult(event=event_name, action=action, outcome="ignored", detail=detail)

    def _skipped(self, event_name: str, action: str, detail: str) -> WebhookResult:
        log_event(LOGGER, "webhook_skipped", github_event=event_name, action=action, reason=detail)
        return WebhookResult(event=event_name, action=action, outcome="skipped", detail=detail)

    def _failed(self, event_name: str, action: str, exc: Exception) -> WebhookResult:
        log_event(
            LOGGER,
            "webhook_handler_failed",
            github_event=event_name,
            action=action,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return WebhookResult(
            event=event_name,
            action=action,
            outcome="failed",
            detail=f"{type(exc).__name__}: {exc}",
        )


def _default_gateway(repo: RepoConfig) -> GitHubGateway:
    return GitHubGateway(repo.owner, repo.name)


def _require(payload: dict[str, object], key: str) -> dict[str, object]:
    value = as_object_dict(payload.get(key))
    if value is None:
        raise WebhookPayloadError(f"Webhook payload is missing object field {key!r}")
    return value
