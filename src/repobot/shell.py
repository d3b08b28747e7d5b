from __future__ import annotations

import logging
import subprocess


class CommandError(RuntimeError):
    def __init__(self, message: str, *, argv: list[str], exit_code: int) -> None:
        super().__init__(message)
        self.argv = argv
        self.exit_code = exit_code


LOGGER = logging.getLogger("repobot.shell")


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def run(
    argv: list[str],
    *,
    input_text: str | None = None,
    check: bool = True,
) -> str:
    """Run a command and return stdout.

    With ``check=False`` a non-zero exit is not an error; ``gh api --include``
    exits non-zero on HTTP errors while still printing the response.
    """
    proc = subprocess.run(
        argv,
        input=input_text,
        text=True,
        capture_output=True,
        check=False,
    )
    if check and proc.returncode != 0:
        LOGGER.error(
            "event=command_failed command=%s exit_code=%s stderr=%s stdout=%s",
            " ".join(argv),
            proc.returncode,
            _preview(proc.stderr),
            _preview(proc.stdout),
        )
        raise CommandError(
            "Command failed\n"
            f"cmd: {' '.join(argv)}\n"
            f"exit: {proc.returncode}\n"
            f"stdout:\n{proc.stdout}\n"
            f"stderr:\n{proc.stderr}",
            argv=argv,
            exit_code=proc.returncode,
        )
    return proc.stdout
