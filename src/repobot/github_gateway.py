from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Literal
from urllib.parse import urlencode

from repobot.models import ApiResponse, RunStatus, WorkflowRunListing
from repobot.observability import log_event
from repobot.payloads import as_object_dict
from repobot.shell import run


LOGGER = logging.getLogger("repobot.github_gateway")
IssueState = Literal["open", "closed"]
_CANCEL_ACCEPTED_STATUS = 202


class GitHubApiError(RuntimeError):
    """GitHub returned an error status or a response we could not interpret."""


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def list_workflow_runs(
        self,
        *,
        workflow_id: int,
        branch: str,
        event: str,
        status: RunStatus,
    ) -> WorkflowRunListing:
        query = urlencode({"branch": branch, "status": status, "event": event, "per_page": "100"})
        path = f"/repos/{self.owner}/{self.name}/actions/workflows/{workflow_id}/runs?{query}"
        response = self._api_request("GET", path)
        if response.http_status != 200:
            log_event(
                LOGGER,
                "github_read_failed",
                endpoint="workflow_runs",
                workflow_id=workflow_id,
                status=status,
                http_status=response.http_status,
            )
            return WorkflowRunListing(http_status=response.http_status, runs=())

        payload_obj = as_object_dict(response.body)
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for workflow runs")
        runs_payload = payload_obj.get("workflow_runs")
        if not isinstance(runs_payload, list):
            raise GitHubApiError("Unexpected GitHub response: expected workflow_runs list")

        runs: list[dict[str, object]] = []
        for item in runs_payload:
            item_obj = as_object_dict(item)
            if item_obj is None:
                continue
            runs.append(item_obj)

        log_event(
            LOGGER,
            "github_read",
            endpoint="workflow_runs",
            workflow_id=workflow_id,
            branch=branch,
            event=event,
            status=status,
            count=len(runs),
        )
        return WorkflowRunListing(http_status=response.http_status, runs=tuple(runs))

    def cancel_workflow_run(self, run_id: int) -> ApiResponse:
        path = f"/repos/{self.owner}/{self.name}/actions/runs/{run_id}/cancel"
        response = self._api_request("POST", path)
        log_event(
            LOGGER,
            "github_write",
            endpoint="cancel_workflow_run",
            run_id=run_id,
            http_status=response.http_status,
            accepted=response.http_status == _CANCEL_ACCEPTED_STATUS,
        )
        return response

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments"
        try:
            self._api_json("POST", path, payload={"body": body})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                repo_full_name=self.full_name,
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_issue_comment_posted", issue_number=issue_number)

    def add_labels(self, issue_number: int, labels: tuple[str, ...]) -> None:
        if not labels:
            raise ValueError("labels must be non-empty")
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/labels"
        try:
            self._api_json("POST", path, payload={"labels": list(labels)})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_labels_failed",
                repo_full_name=self.full_name,
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_labels_added", issue_number=issue_number, labels=labels)

    def set_issue_state(self, issue_number: int, state: IssueState) -> None:
        if state not in {"open", "closed"}:
            raise ValueError("state must be 'open' or 'closed'")
        # The issues endpoint also accepts pull request numbers.
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}"
        try:
            self._api_json("PATCH", path, payload={"state": state})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_state_failed",
                repo_full_name=self.full_name,
                issue_number=issue_number,
                state=state,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_issue_state_set", issue_number=issue_number, state=state)

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        response = self._api_request(method, path, payload=payload)
        if response.http_status < 200 or response.http_status >= 300:
            raise GitHubApiError(
                f"GitHub API {method.upper()} {path} failed with status "
                f"{response.http_status}: {_preview_for_log(_as_string(response.body))}"
            )
        return response.body

    def _api_request(
        self, method: str, path: str, payload: dict[str, object] | None = None
    ) -> ApiResponse:
        method_upper = method.upper()
        cmd = ["gh", "api", "--method", method_upper, "--include", path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)

        # gh exits non-zero on HTTP errors; the status line still tells us what happened.
        raw = run(cmd, input_text=stdin_payload, check=False)
        try:
            status_code, _headers, body = _parse_http_response(raw)
            decoded = _decode_body(body, status_code=status_code)
        except Exception as exc:
            log_event(
                LOGGER,
                "github_request_failed",
                method=method_upper,
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
                raw_preview=_preview_for_log(raw),
            )
            raise GitHubApiError(f"GitHub {method_upper} failed for path {path}: {exc}") from exc
        return ApiResponse(http_status=status_code, body=decoded)


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _decode_body(body: str, *, status_code: int) -> object:
    if not body.strip():
        return None
    try:
        return json.loads(body)
    except json.JSONDecodeError:
        # Error pages are not always JSON; keep the text for the failure message.
        if 200 <= status_code < 300:
            raise
        return body


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, dict | list):
        return json.dumps(value)
    return str(value)

