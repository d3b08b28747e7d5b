from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import cast

from repobot.duplicate_runs import DEFAULT_EXCLUDED_ACTIVITY_KINDS


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    listen_host: str = "127.0.0.1"
    listen_port: int = 8080
    webhook_path: str = "/github/webhook"
    webhook_secret_env: str = "REPOBOT_WEBHOOK_SECRET"
    worker_count: int = 3
    diagnostics_file: str = "outputs.txt"

    @property
    def diagnostics_path(self) -> Path:
        return self.base_dir / self.diagnostics_file


@dataclass(frozen=True)
class RepoConfig:
    repo_id: str
    owner: str
    name: str
    cancel_duplicate_runs: bool = True
    excluded_activity_kinds: frozenset[str] = DEFAULT_EXCLUDED_ACTIVITY_KINDS
    add_binder_link: bool = False
    binder_url_suffix: str = ""
    triage_label: str | None = None
    restart_command: str | None = None
    operator_logins: tuple[str, ...] = ()

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def may_restart(self, *, comment_author: str, pr_author: str) -> bool:
        normalized = comment_author.strip().lower()
        if not normalized:
            return False
        if normalized in self.operator_logins:
            return True
        return normalized == pr_author.strip().lower()


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    repos: tuple[RepoConfig, ...]

    def repo_for(self, full_name: str) -> RepoConfig | None:
        normalized = full_name.strip().lower()
        for repo in self.repos:
            if repo.full_name.lower() == normalized:
                return repo
        return None


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _require_table(data, "runtime")
    repo_data = _require_table(data, "repo")

    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        listen_host=_str_with_default(runtime_data, "listen_host", "127.0.0.1"),
        listen_port=_int_with_default(runtime_data, "listen_port", 8080),
        webhook_path=_str_with_default(runtime_data, "webhook_path", "/github/webhook"),
        webhook_secret_env=_str_with_default(
            runtime_data, "webhook_secret_env", "REPOBOT_WEBHOOK_SECRET"
        ),
        worker_count=_int_with_default(runtime_data, "worker_count", 3),
        diagnostics_file=_str_with_default(runtime_data, "diagnostics_file", "outputs.txt"),
    )

    if runtime.worker_count < 1:
        raise ConfigError("runtime.worker_count must be >= 1")
    if not 1 <= runtime.listen_port <= 65535:
        raise ConfigError("runtime.listen_port must be between 1 and 65535")
    if not runtime.webhook_path.startswith("/"):
        raise ConfigError("runtime.webhook_path must start with '/'")

    return AppConfig(runtime=runtime, repos=_load_repo_configs(repo_data=repo_data))


def _load_repo_configs(*, repo_data: dict[str, object]) -> tuple[RepoConfig, ...]:
    if not repo_data:
        raise ConfigError("[repo] must define one repo configuration")

    keyed_items = [(key, value) for key, value in repo_data.items() if isinstance(value, dict)]
    scalar_items = [(key, value) for key, value in repo_data.items() if not isinstance(value, dict)]

    if keyed_items and scalar_items:
        raise ConfigError("Cannot mix legacy [repo] fields with [repo.<id>] tables")

    if scalar_items:
        name = _require_str(repo_data, "name")
        return (_parse_repo_config(repo_id=name, repo_data=repo_data, default_name=name),)

    repos: list[RepoConfig] = []
    for repo_id, raw_value in sorted(keyed_items):
        repo_table = _require_repo_table(raw_value, table_name=f"[repo.{repo_id}]")
        repos.append(_parse_repo_config(repo_id=repo_id, repo_data=repo_table, default_name=repo_id))
    _ensure_unique_full_names(repos)
    return tuple(repos)


def _parse_repo_config(
    *, repo_id: str, repo_data: dict[str, object], default_name: str
) -> RepoConfig:
    return RepoConfig(
        repo_id=repo_id,
        owner=_require_str(repo_data, "owner"),
        name=_str_with_default(repo_data, "name", default_name),
        cancel_duplicate_runs=_bool_with_default(repo_data, "cancel_duplicate_runs", True),
        excluded_activity_kinds=_activity_kinds_with_default(
            repo_data, "excluded_activity_kinds", DEFAULT_EXCLUDED_ACTIVITY_KINDS
        ),
        add_binder_link=_bool_with_default(repo_data, "add_binder_link", False),
        binder_url_suffix=_str_allow_empty_with_default(repo_data, "binder_url_suffix", ""),
        triage_label=_optional_str(repo_data, "triage_label"),
        restart_command=_optional_command(repo_data, "restart_command"),
        operator_logins=_logins_with_default(repo_data, "operator_logins", ()),
    )


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_repo_table(value: object, *, table_name: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{table_name} must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"{table_name} must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _optional_command(data: dict[str, object], key: str) -> str | None:
    value = _optional_str(data, key)
    if value is None:
        return None
    normalized = " ".join(value.split()).casefold()
    if not normalized:
        raise ConfigError(f"{key} must contain non-whitespace text if provided")
    return normalized


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _str_allow_empty_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string")
    return value


def _activity_kinds_with_default(
    data: dict[str, object], key: str, default: frozenset[str]
) -> frozenset[str]:
    if key not in data:
        return default
    value = data.get(key)
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    kinds: set[str] = set()
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"{key} entries must be non-empty strings")
        kinds.add(item.strip().lower())
    return frozenset(kinds)


def _logins_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    value = data.get(key, list(default))
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    normalized: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        login = item.strip().lower()
        if not login:
            raise ConfigError(f"{key} entries must be non-empty strings")
        if login not in normalized:
            normalized.append(login)
    return tuple(normalized)


def _ensure_unique_full_names(repos: list[RepoConfig]) -> None:
    seen: dict[str, str] = {}
    for repo in repos:
        key = repo.full_name.lower()
        existing_id = seen.get(key)
        if existing_id is not None:
            raise ConfigError(
                f"Duplicate repo full_name {repo.full_name!r} across repo ids "
                f"{existing_id!r} and {repo.repo_id!r}"
            )
        seen[key] = repo.repo_id
