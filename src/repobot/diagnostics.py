from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
import threading
from typing import Final, Protocol

from repobot.observability import log_event


LOGGER = logging.getLogger("repobot.diagnostics")
DEBUG_ENV_VAR: Final[str] = "REPOBOT_DEBUG"


class DiagnosticSink(Protocol):
    def record(self, kind: str, payload: object) -> None:
        """Append one raw request/response payload for offline inspection."""


class NullDiagnosticSink:
    def record(self, kind: str, payload: object) -> None:
        _ = kind, payload


class FileDiagnosticSink:
    """Append-only JSON-lines file of raw payloads.

    Write failures are logged and swallowed so they never affect an episode.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def record(self, kind: str, payload: object) -> None:
        entry = {
            "recorded_at": datetime.now(timezone.utc).isoformat(),
            "kind": kind,
            "payload": payload,
        }
        try:
            line = json.dumps(entry, default=str, sort_keys=True)
            with self._lock:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as fh:
                    fh.write(f"{line}\n")
        except (OSError, TypeError, ValueError) as exc:
            log_event(
                LOGGER,
                "diagnostic_write_failed",
                path=str(self._path),
                kind=kind,
                error_type=type(exc).__name__,
            )


def debug_enabled(environ: Mapping[str, str] | None = None) -> bool:
    env: Mapping[str, str] = os.environ if environ is None else environ
    return env.get(DEBUG_ENV_VAR, "").strip().lower() == "true"


def diagnostic_sink_from_env(
    path: Path, *, environ: Mapping[str, str] | None = None
) -> DiagnosticSink:
    if debug_enabled(environ):
        return FileDiagnosticSink(path)
    return NullDiagnosticSink()


def record_diagnostic(sink: DiagnosticSink, kind: str, payload: object) -> None:
    """Hand one payload to ``sink``; a failing sink is logged, never raised."""
    try:
        sink.record(kind, payload)
    except Exception as exc:  # noqa: BLE001
        log_event(
            LOGGER,
            "diagnostic_write_failed",
            kind=kind,
            error_type=type(exc).__name__,
            error=str(exc),
        )
