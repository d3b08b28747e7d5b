from __future__ import annotations

from collections.abc import Iterator
import hashlib
import hmac
from http.client import HTTPConnection
import json
from pathlib import Path
import threading
from urllib.error import HTTPError
from urllib.request import Request, urlopen

import pytest

from repobot import server
from repobot.config import RuntimeConfig
from repobot.models import ReconciliationReport, WebhookResult
from repobot.payloads import PayloadError
from repobot.server import create_server, result_payload, verify_signature


SECRET = "s3cret"


def _sign(body: bytes, secret: str = SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class FakeDispatcher:
    def __init__(self, result: WebhookResult | Exception) -> None:
        self._result = result
        self.calls: list[tuple[str, dict[str, object]]] = []

    def handle(self, event_name: str, payload: dict[str, object]) -> WebhookResult:
        self.calls.append((event_name, payload))
        if isinstance(self._result, Exception):
            raise self._result
        return self._result


def _runtime(tmp_path: Path) -> RuntimeConfig:
    return RuntimeConfig(base_dir=tmp_path, listen_host="127.0.0.1", listen_port=0)


@pytest.fixture
def running(tmp_path: Path) -> Iterator[tuple[str, FakeDispatcher]]:
    dispatcher = FakeDispatcher(
        WebhookResult(event="pull_request", action="opened", outcome="handled", detail="ok")
    )
    http_server = create_server(_runtime(tmp_path), dispatcher, secret=SECRET)  # type: ignore[arg-type]
    thread = threading.Thread(target=http_server.serve_forever, daemon=True)
    thread.start()
    host, port = http_server.server_address[:2]
    try:
        yield f"http://{host}:{port}", dispatcher
    finally:
        http_server.shutdown()
        http_server.server_close()
        thread.join(timeout=5)


def _post(
    url: str,
    body: bytes,
    *,
    event: str = "pull_request",
    signature: str | None = None,
) -> tuple[int, dict[str, object]]:
    headers = {
        "Content-Type": "application/json",
        "X-GitHub-Event": event,
        "X-GitHub-Delivery": "delivery-1",
        "X-Hub-Signature-256": _sign(body) if signature is None else signature,
    }
    request = Request(url, data=body, headers=headers, method="POST")
    try:
        with urlopen(request, timeout=5) as response:
            return response.status, json.loads(response.read())
    except HTTPError as exc:
        return exc.code, json.loads(exc.read())


def test_verify_signature() -> None:
    body = b'{"action":"opened"}'

    assert verify_signature(SECRET, body, _sign(body)) is True
    assert verify_signature(SECRET, body, _sign(body, "other")) is False
    assert verify_signature(SECRET, body, _sign(body)[len("sha256=") :]) is False
    assert verify_signature("", body, _sign(body, "")) is False


def test_result_payload_includes_rendered_report() -> None:
    report = ReconciliationReport(
        repo_full_name="o/r",
        branch="main",
        workflow_name="CI",
        activity_kind="push",
        disposition="no_duplicates",
        notes=("No duplicate runs found!",),
    )
    plain = WebhookResult(event="issues", action="opened", outcome="failed", detail="boom")
    with_report = WebhookResult(
        event="workflow_run",
        action="requested",
        outcome="handled",
        detail="no_duplicates",
        report=report,
    )

    assert result_payload(plain) == {
        "ok": False,
        "event": "issues",
        "action": "opened",
        "outcome": "failed",
        "detail": "boom",
    }
    lines = result_payload(with_report)["report"]
    assert isinstance(lines, list)
    assert "No duplicate runs found!" in lines
    assert lines[1] == "Checking for duplicate runs:"


def test_signed_delivery_is_dispatched(running: tuple[str, FakeDispatcher]) -> None:
    base_url, dispatcher = running
    body = json.dumps({"action": "opened", "number": 4}).encode("utf-8")

    status, payload = _post(f"{base_url}/github/webhook", body)

    assert status == 200
    assert payload["outcome"] == "handled"
    assert dispatcher.calls == [("pull_request", {"action": "opened", "number": 4})]


def test_bad_signature_is_rejected(running: tuple[str, FakeDispatcher]) -> None:
    base_url, dispatcher = running

    status, payload = _post(f"{base_url}/github/webhook", b"{}", signature="sha256=deadbeef")

    assert status == 401
    assert payload == {"ok": False, "error": "bad signature"}
    assert dispatcher.calls == []


def test_invalid_json_and_missing_event_are_rejected(
    running: tuple[str, FakeDispatcher],
) -> None:
    base_url, dispatcher = running

    bad_json_status, _ = _post(f"{base_url}/github/webhook", b"{not json")
    list_status, _ = _post(f"{base_url}/github/webhook", b"[1, 2]")
    no_event_status, no_event = _post(f"{base_url}/github/webhook", b"{}", event="")

    assert bad_json_status == 400
    assert list_status == 400
    assert no_event_status == 400
    assert no_event["error"] == "missing event"
    assert dispatcher.calls == []


def test_unknown_paths_and_health(running: tuple[str, FakeDispatcher]) -> None:
    base_url, _ = running

    post_status, _ = _post(f"{base_url}/elsewhere", b"{}")
    with urlopen(f"{base_url}/healthz", timeout=5) as response:
        health = json.loads(response.read())
    try:
        urlopen(f"{base_url}/nope", timeout=5)
    except HTTPError as exc:
        get_status = exc.code
    else:
        get_status = 200

    assert post_status == 404
    assert health == {"ok": True}
    assert get_status == 404


@pytest.mark.parametrize(
    ("result", "expected_status"),
    [
        (PayloadError("Expected object for workflow_run"), 400),
        (RuntimeError("kaboom"), 500),
        (
            WebhookResult(event="issues", action="opened", outcome="failed", detail="x"),
            500,
        ),
    ],
)
def test_dispatch_errors_map_to_status_codes(
    tmp_path: Path, result: WebhookResult | Exception, expected_status: int
) -> None:
    dispatcher = FakeDispatcher(result)
    http_server = create_server(_runtime(tmp_path), dispatcher, secret=SECRET)  # type: ignore[arg-type]
    thread = threading.Thread(target=http_server.serve_forever, daemon=True)
    thread.start()
    host, port = http_server.server_address[:2]
    try:
        status, payload = _post(f"http://{host}:{port}/github/webhook", b"{}")
    finally:
        http_server.shutdown()
        http_server.server_close()
        thread.join(timeout=5)

    assert status == expected_status
    assert payload["ok"] is False


def test_serve_closes_server_on_interrupt(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    events: list[str] = []

    class FakeHTTPServer:
        server_address = ("127.0.0.1", 8080)

        def serve_forever(self) -> None:
            events.append("serve")
            raise KeyboardInterrupt

        def server_close(self) -> None:
            events.append("close")

    monkeypatch.setattr(
        server, "create_server", lambda runtime, dispatcher, secret: FakeHTTPServer()
    )
    with pytest.raises(KeyboardInterrupt):
        server.serve(_runtime(tmp_path), FakeDispatcher(RuntimeError("unused")), secret="")  # type: ignore[arg-type]

    assert events == ["serve", "close"]


@pytest.mark.parametrize("content_length", ["abc", "-1"])
def test_malformed_content_length_is_rejected(
    running: tuple[str, FakeDispatcher], content_length: str
) -> None:
    base_url, dispatcher = running
    host, port = base_url.removeprefix("http://").split(":")
    connection = HTTPConnection(host, int(port), timeout=5)
    try:
        connection.putrequest("POST", "/github/webhook")
        connection.putheader("Content-Length", content_length)
        connection.putheader("X-GitHub-Event", "pull_request")
        connection.endheaders()
        response = connection.getresponse()
        status = response.status
        payload = json.loads(response.read())
    finally:
        connection.close()

    assert status == 400
    assert payload == {"ok": False, "error": "invalid Content-Length"}
    assert dispatcher.calls == []
