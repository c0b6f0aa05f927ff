"""Environment-backed application configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from apprentice.engine.sandbox import DEFAULT_MOUNT_POINT
from apprentice.llm.client import BASE_SYSTEM_PROMPT_PARTS

DEFAULT_SYSTEM_PROMPT = " ".join(BASE_SYSTEM_PROMPT_PARTS)


def _to_bool(value: str | None, default: bool = False) -> bool:
    """Convert common env var truthy/falsy values into booleans."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


@dataclass(slots=True)
class AppConfig:
    """Runtime settings loaded from environment variables."""

    api_key: str | None
    model: str
    api_url: str
    max_tokens: int
    system_prompt: str
    sandbox_root: str
    mount_point: str
    log_dir: str
    max_turns: int
    max_protocol_failures: int
    max_backend_attempts: int
    backend_backoff_seconds: float
    model_timeout: float
    exec_timeout: float
    max_output_bytes: int
    max_read_bytes: int
    fetch_timeout: float
    max_fetch_bytes: int
    web_fetch_enabled: bool
    history_limit: int
    exec_allowlist: tuple[str, ...] = ()
    exec_denylist: tuple[str, ...] = ()

    @classmethod
    def from_env(cls) -> AppConfig:
        file_config = _load_preferred_file_config()
        model_from_file = file_config.get("model")
        model_config = model_from_file if isinstance(model_from_file, dict) else {}
        limits_from_file = file_config.get("limits")
        limits = limits_from_file if isinstance(limits_from_file, dict) else {}

        return cls(
            api_key=(
                os.getenv("APPRENTICE_API_KEY")
                or os.getenv("ANTHROPIC_API_KEY")
                or _read_key_file(os.getenv("ANTHROPIC_API_KEY_FILE"))
                or _to_optional_string(model_config.get("api_key"))
            ),
            model=(
                os.getenv("APPRENTICE_MODEL")
                or _to_optional_string(model_config.get("name"))
                or "claude-3-5-sonnet-20241022"
            ),
            api_url=(
                os.getenv("APPRENTICE_API_URL")
                or _to_optional_string(model_config.get("api_url"))
                or "https://api.anthropic.com/v1/messages"
            ),
            max_tokens=_to_positive_int(
                os.getenv("APPRENTICE_MAX_TOKENS") or model_config.get("max_tokens"),
                default=4096,
            ),
            system_prompt=(
                os.getenv("APPRENTICE_SYSTEM_PROMPT")
                or _to_optional_string(file_config.get("system_prompt"))
                or DEFAULT_SYSTEM_PROMPT
            ),
            sandbox_root=(
                os.getenv("APPRENTICE_SANDBOX_ROOT")
                or _to_optional_string(file_config.get("sandbox_root"))
                or "sandbox"
            ),
            mount_point=(
                os.getenv("APPRENTICE_MOUNT_POINT")
                or _to_optional_string(file_config.get("mount_point"))
                or DEFAULT_MOUNT_POINT
            ),
            log_dir=(
                os.getenv("APPRENTICE_LOG_DIR")
                or _to_optional_string(file_config.get("log_dir"))
                or "logs"
            ),
            max_turns=_to_positive_int(
                os.getenv("APPRENTICE_MAX_TURNS") or file_config.get("max_turns"),
                default=30,
            ),
            max_protocol_failures=_to_positive_int(
                os.getenv("APPRENTICE_MAX_PROTOCOL_FAILURES")
                or file_config.get("max_protocol_failures"),
                default=3,
            ),
            max_backend_attempts=_to_positive_int(
                os.getenv("APPRENTICE_MAX_BACKEND_ATTEMPTS")
                or file_config.get("max_backend_attempts"),
                default=3,
            ),
            backend_backoff_seconds=_to_positive_float(
                os.getenv("APPRENTICE_BACKEND_BACKOFF") or file_config.get("backend_backoff"),
                default=1.0,
            ),
            model_timeout=_to_positive_float(
                os.getenv("APPRENTICE_MODEL_TIMEOUT") or model_config.get("timeout"),
                default=120.0,
            ),
            exec_timeout=_to_positive_float(
                os.getenv("APPRENTICE_EXEC_TIMEOUT") or limits.get("exec_timeout"),
                default=60.0,
            ),
            max_output_bytes=_to_positive_int(
                os.getenv("APPRENTICE_MAX_OUTPUT_BYTES") or limits.get("max_output_bytes"),
                default=64 * 1024,
            ),
            max_read_bytes=_to_positive_int(
                os.getenv("APPRENTICE_MAX_READ_BYTES") or limits.get("max_read_bytes"),
                default=1024 * 1024,
            ),
            fetch_timeout=_to_positive_float(
                os.getenv("APPRENTICE_FETCH_TIMEOUT") or limits.get("fetch_timeout"),
                default=30.0,
            ),
            max_fetch_bytes=_to_positive_int(
                os.getenv("APPRENTICE_MAX_FETCH_BYTES") or limits.get("max_fetch_bytes"),
                default=1024 * 1024,
            ),
            web_fetch_enabled=_to_bool(
                os.getenv("APPRENTICE_WEB_FETCH_ENABLED"),
                default=bool(file_config.get("web_fetch_enabled", True)),
            ),
            history_limit=_to_positive_int(
                os.getenv("APPRENTICE_HISTORY_LIMIT") or file_config.get("history_limit"),
                default=100,
            ),
            exec_allowlist=_to_name_list(
                os.getenv("APPRENTICE_EXEC_ALLOWLIST") or limits.get("exec_allowlist")
            ),
            exec_denylist=_to_name_list(
                os.getenv("APPRENTICE_EXEC_DENYLIST") or limits.get("exec_denylist")
            ),
        )


def _to_optional_string(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _to_name_list(value: object) -> tuple[str, ...]:
    """Accept a comma-separated string or a JSON list of command names."""
    if isinstance(value, str):
        items: list[object] = list(value.split(","))
    elif isinstance(value, list):
        items = value
    else:
        return ()
    return tuple(item.strip() for item in items if isinstance(item, str) and item.strip())


def _read_key_file(path_value: str | None) -> str | None:
    if not path_value:
        return None
    try:
        return _to_optional_string(Path(path_value).read_text(encoding="utf-8"))
    except OSError:
        return None


def _load_file_config(path_value: str) -> dict[str, object]:
    path = Path(path_value)
    if not path.exists() or not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            parsed = json.load(fh)
    except (OSError, json.JSONDecodeError):
        return {}
    if isinstance(parsed, dict):
        return parsed
    return {}


def _load_preferred_file_config() -> dict[str, object]:
    explicit_path = os.getenv("APPRENTICE_CONFIG_FILE")
    if explicit_path:
        return _load_file_config(explicit_path)

    shared_config = _load_file_config("apprentice.config.json")
    local_override = _load_file_config("apprentice.config.local.json")
    return _merge_dicts(shared_config, local_override)


def _merge_dicts(base: dict[str, object], override: dict[str, object]) -> dict[str, object]:
    merged: dict[str, object] = dict(base)
    for key, value in override.items():
        base_value = merged.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            merged[key] = _merge_dicts(base_value, value)
        else:
            merged[key] = value
    return merged


def _to_positive_int(value: object, *, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value if value > 0 else default
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return default
        return parsed if parsed > 0 else default
    return default


def _to_positive_float(value: object, *, default: float) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else default
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return default
        return parsed if parsed > 0 else default
    return default
