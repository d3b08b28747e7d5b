from __future__ import annotations

import hashlib
import hmac
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
import json
import logging
from typing import Any

from repobot.config import RuntimeConfig
from repobot.duplicate_runs import render_report
from repobot.models import WebhookResult
from repobot.observability import log_event
from repobot.payloads import PayloadError, as_object_dict
from repobot.webhooks import WebhookDispatcher


LOGGER = logging.getLogger("repobot.server")
HEALTH_PATH = "/healthz"
_FAILED_STATUS = HTTPStatus.INTERNAL_SERVER_ERROR


def verify_signature(secret: str, body: bytes, signature_header: str) -> bool:
    if not secret:
        return False
    if not signature_header.startswith("sha256="):
        return False
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header)


def result_payload(result: WebhookResult) -> dict[str, object]:
    payload: dict[str, object] = {
        "ok": result.outcome != "failed",
        "event": result.event,
        "action": result.action,
        "outcome": result.outcome,
        "detail": result.detail,
    }
    if result.report is not None:
        payload["report"] = render_report(result.report)
    return payload


def _content_length(raw: str) -> int | None:
    try:
        length = int(raw)
    except ValueError:
        return None
    return length if length >= 0 else None


def build_handler(
    dispatcher: WebhookDispatcher, *, secret: str, webhook_path: str
) -> type[BaseHTTPRequestHandler]:
    class WebhookHandler(BaseHTTPRequestHandler):
        def log_message(self, format: str, *args: Any) -> None:
            log_event(LOGGER, "http_request", client=self.address_string(), line=format % args)

        def _respond(self, code: HTTPStatus, payload: dict[str, object]) -> None:
            data = json.dumps(payload).encode("utf-8")
            self.send_response(code)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(data)))
            self.end_headers()
            self.wfile.write(data)

        def do_GET(self) -> None:  # noqa: N802
            if self.path == HEALTH_PATH:
                self._respond(HTTPStatus.OK, {"ok": True})
                return
            self._respond(HTTPStatus.NOT_FOUND, {"ok": False, "error": "not found"})

        def do_POST(self) -> None:  # noqa: N802
            if self.path != webhook_path:
                self._respond(HTTPStatus.NOT_FOUND, {"ok": False, "error": "not found"})
                return

            length = _content_length(self.headers.get("Content-Length", "0"))
            if length is None:
                self._respond(
                    HTTPStatus.BAD_REQUEST, {"ok": False, "error": "invalid Content-Length"}
                )
                return
            body = self.rfile.read(length)
            signature = self.headers.get("X-Hub-Signature-256", "")
            event_name = self.headers.get("X-GitHub-Event", "")
            delivery = self.headers.get("X-GitHub-Delivery", "")

            if not verify_signature(secret, body, signature):
                log_event(LOGGER, "webhook_rejected", reason="bad_signature", delivery=delivery)
                self._respond(HTTPStatus.UNAUTHORIZED, {"ok": False, "error": "bad signature"})
                return
            if not event_name:
                self._respond(HTTPStatus.BAD_REQUEST, {"ok": False, "error": "missing event"})
                return

            try:
                payload = as_object_dict(json.loads(body.decode("utf-8")))
            except (UnicodeDecodeError, json.JSONDecodeError):
                payload = None
            if payload is None:
                self._respond(HTTPStatus.BAD_REQUEST, {"ok": False, "error": "invalid JSON body"})
                return

            try:
                result = dispatcher.handle(event_name, payload)
            except PayloadError as exc:
                log_event(
                    LOGGER,
                    "webhook_rejected",
                    reason="bad_payload",
                    delivery=delivery,
                    error=str(exc),
                )
                self._respond(HTTPStatus.BAD_REQUEST, {"ok": False, "error": str(exc)})
                return
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception(
                    "event=webhook_dispatch_crashed github_event=%s delivery=%s",
                    event_name,
                    delivery,
                )
                self._respond(_FAILED_STATUS, {"ok": False, "error": type(exc).__name__})
                return

            status = _FAILED_STATUS if result.outcome == "failed" else HTTPStatus.OK
            self._respond(status, result_payload(result))

    return WebhookHandler


def create_server(
    runtime: RuntimeConfig, dispatcher: WebhookDispatcher, *, secret: str
) -> ThreadingHTTPServer:
    handler = build_handler(dispatcher, secret=secret, webhook_path=runtime.webhook_path)
    server = ThreadingHTTPServer((runtime.listen_host, runtime.listen_port), handler)
    server.daemon_threads = True
    return server


def serve(runtime: RuntimeConfig, dispatcher: WebhookDispatcher, *, secret: str) -> None:
    server = create_server(runtime, dispatcher, secret=secret)
    host, port = server.server_address[:2]
    log_event(
        LOGGER,
        "server_started",
        host=str(host),
        port=int(port),
        webhook_path=runtime.webhook_path,
    )
    if not secret:
        LOGGER.warning(
            "event=webhook_secret_missing env=%s detail=%s",
            runtime.webhook_secret_env,
            "every delivery will be rejected",
        )
    try:
        server.serve_forever()
    finally:
        server.server_close()
        log_event(LOGGER, "server_stopped")
