from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

import yaml
from pydantic import ValidationError

from .config_schema import AppConfig
from .errors import ConfigError


@dataclass(frozen=True)
class RuntimeSecrets:
    business_account_id: str
    access_token: str


def load_config(path: str | Path | None = None) -> AppConfig:
    """
    Load a YAML config file and validate it into a typed AppConfig.

    With no path, returns the defaults. Raises ConfigError with a readable
    validation message on failure.
    """
    if path is None:
        return AppConfig()

    p = Path(path)

    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")

    try:
        raw_text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {p}") from e

    try:
        data = yaml.safe_load(raw_text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML in {p}: {e}") from e

    if data is None:
        data = {}

    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML in {p} must be a mapping/object")

    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(_format_pydantic_errors(e, p)) from e


def read_secret_file(path: str | Path) -> str | None:
    """Return the trimmed content of a secret file, or None if absent, unreadable or empty."""
    raw = str(path).strip()
    if not raw:
        return None
    p = Path(raw)
    if not p.is_file():
        return None
    try:
        value = p.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return value or None


def resolve_runtime_secrets(
    config: AppConfig, *, environ: Mapping[str, str] | None = None
) -> RuntimeSecrets:
    """
    Resolve Graph API credentials from the environment.

    A readable token file named by `graph.token_storage_env` takes precedence
    over the token variable itself. Raises ConfigError naming what is missing.
    """
    env = os.environ if environ is None else environ
    graph = config.graph

    business_id = (env.get(graph.business_account_id_env) or "").strip()

    token: str | None = None
    storage = (env.get(graph.token_storage_env) or "").strip()
    if storage:
        token = read_secret_file(storage)
    if not token:
        token = (env.get(graph.access_token_env) or "").strip() or None

    if business_id and token:
        return RuntimeSecrets(business_account_id=business_id, access_token=token)

    missing: list[str] = []
    if not business_id:
        missing.append(graph.business_account_id_env)
    if not token:
        missing.append(graph.access_token_env)
    joined = ", ".join(missing)
    raise ConfigError(f"Instagram credentials missing: set {joined}")


def resolve_admin_token(config: AppConfig, *, environ: Mapping[str, str] | None = None) -> str | None:
    env = os.environ if environ is None else environ
    return (env.get(config.access.admin_token_env) or "").strip() or None


def _format_pydantic_errors(err: ValidationError, path: Path) -> str:
    lines: list[str] = [f"Invalid configuration in {path}:"]
    for item in err.errors():
        loc = ".".join(str(part) for part in item.get("loc", [])) or "<root>"
        msg = item.get("msg", "invalid value")
        lines.append(f"- {loc}: {msg}")
    return "\n".join(lines)
