"""Configuration helpers for the panel builder."""
from __future__ import annotations

import copy
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml  # type: ignore[import-untyped]

_DEFAULT_CONFIG: Dict[str, Any] = {
    "completions": {
        "url": "https://api.openai.com/v1/chat/completions",
        "api_key": "",
        "user_agent": "panelforge/0.3",
        "timeout_seconds": 120.0,
    },
    "thinker": {
        "model": "gpt-4o-mini",
        "system_prompt": "prompts/thinker.md",
    },
    "renderer": {
        "model": "gpt-4o-mini",
        "system_prompt": "prompts/renderer.md",
    },
    "agent": {
        "model": "claude-sonnet-4",
        "system_prompt": "prompts/agent.md",
        "image": "",
        "auth_token": "",
        "base_url": "",
        "docker_binary": "docker",
        "port_min": 3000,
        "port_max": 3999,
        "internal_port": 8000,
        "mount_path": "/app/workspace",
        "ready_attempts": 60,
        "ready_interval_seconds": 1.0,
        "health_timeout_seconds": 2.0,
        "request_timeout_seconds": 3600.0,
        "max_timeout_ms": 6_000_000,
        "debug": True,
    },
    "builder": {
        "complexity_threshold": 2,
    },
    "storage": {
        "data_dir": "~/.panelforge",
        "stdlib_dir": "",
    },
    "prompts": {
        "base_dir": "",
    },
    "logging": {
        "level": "INFO",
        "file": "",
    },
}


_OVERRIDE_ENV_PREFIX = "PANELFORGE_CFG__"
_OVERRIDE_JSON_ENV = "PANELFORGE_CONFIG_OVERRIDES"

# Environment names used by earlier desktop releases.
_LEGACY_ENV_ALIASES: dict[str, Tuple[str, ...]] = {
    "OPENAI_COMPLETIONS_URL": ("completions", "url"),
    "OPENAI_API_KEY": ("completions", "api_key"),
    "OPENAI_THINKER": ("thinker", "model"),
    "OPENAI_THINKER_PROMPT": ("thinker", "system_prompt"),
    "OPENAI_RENDERER_FAST": ("renderer", "model"),
    "OPENAI_RENDERER_FAST_PROMPT": ("renderer", "system_prompt"),
    "COMPLEX_RENDERER_MODEL": ("agent", "model"),
    "CLAUDE_CODE_SYSTEM_PROMPT": ("agent", "system_prompt"),
    "COMPLEX_RENDERER_DOCKER_IMAGE": ("agent", "image"),
    "ANTHROPIC_AUTH_TOKEN": ("agent", "auth_token"),
    "ANTHROPIC_BASE_URL": ("agent", "base_url"),
    "COMPLEX_RENDERER_THRESHOLD": ("builder", "complexity_threshold"),
    "STDLIB_PATH": ("storage", "stdlib_dir"),
}


def _config_path() -> Path:
    env = os.environ.get("PANELFORGE_CONFIG")
    if env:
        return Path(env).expanduser().resolve()
    return Path("~/.panelforge/panelforge.yaml").expanduser().resolve()


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _merge(dict(base[key]), value)  # type: ignore[arg-type]
        else:
            base[key] = value
    return base


def _env_key_to_path(raw: str) -> Tuple[str, ...]:
    """``AGENT__READY_ATTEMPTS`` -> ``("agent", "ready_attempts")``."""
    return tuple(part.strip().lower().replace("-", "_") for part in raw.split("__") if part.strip())


def _coerce_override_value(value: str) -> Any:
    stripped = value.strip()
    if not stripped:
        return ""
    try:
        parsed = yaml.safe_load(stripped)
    except yaml.YAMLError:
        return value
    # URLs and prompt paths must stay strings even when YAML sees a mapping.
    if isinstance(parsed, (dict, list)) and not stripped.startswith(("{", "[")):
        return value
    return parsed


def _set_in(target: Dict[str, Any], path: Tuple[str, ...], value: Any) -> None:
    *parents, leaf = path
    cursor = target
    for key in parents:
        child = cursor.get(key)
        if not isinstance(child, dict):
            child = cursor[key] = {}
        cursor = child
    cursor[leaf] = value


def _decode_mapping(raw: str) -> Dict[str, Any]:
    # JSON is a subset of YAML, so one parser covers both payload styles.
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError:
        return {}
    return data if isinstance(data, dict) else {}


def _environment_overrides() -> Dict[str, Any]:
    """Collect overrides from the environment, weakest source first.

    Legacy desktop names are applied first, then ``PANELFORGE_CFG__`` paths,
    then the ``PANELFORGE_CONFIG_OVERRIDES`` mapping.
    """
    overrides: Dict[str, Any] = {}
    for env_name, path in _LEGACY_ENV_ALIASES.items():
        value = os.environ.get(env_name, "")
        if value.strip():
            _set_in(overrides, path, _coerce_override_value(value))

    for key, value in os.environ.items():
        if not key.startswith(_OVERRIDE_ENV_PREFIX):
            continue
        path = _env_key_to_path(key[len(_OVERRIDE_ENV_PREFIX):])
        if path:
            _set_in(overrides, path, _coerce_override_value(value))

    payload = os.environ.get(_OVERRIDE_JSON_ENV, "")
    if payload.strip():
        overrides = _merge(overrides, _decode_mapping(payload))
    return overrides


@lru_cache(maxsize=4)
def _load_config(resolved_path: str) -> Dict[str, Any]:
    base = copy.deepcopy(_DEFAULT_CONFIG)
    path = Path(resolved_path)
    if path.exists():
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if isinstance(data, dict):
            base = _merge(base, data)
    return base


def get_config(*, include_runtime_overrides: bool = True) -> Dict[str, Any]:
    """Return a copy of the merged configuration."""
    config = copy.deepcopy(_load_config(str(_config_path())))
    if include_runtime_overrides:
        config = _merge(config, _environment_overrides())
    return config


# Typed views -------------------------------------------------------------


@dataclass(slots=True)
class ModelSettings:
    model: str
    system_prompt: str = ""


@dataclass(slots=True)
class AgentSettings:
    model: str
    system_prompt: str = ""
    image: str = ""
    auth_token: str = ""
    base_url: str = ""
    docker_binary: str = "docker"
    port_min: int = 3000
    port_max: int = 3999
    internal_port: int = 8000
    mount_path: str = "/app/workspace"
    ready_attempts: int = 60
    ready_interval_seconds: float = 1.0
    health_timeout_seconds: float = 2.0
    request_timeout_seconds: float = 3600.0
    max_timeout_ms: int = 6_000_000
    debug: bool = True

    def __post_init__(self) -> None:
        if self.port_min > self.port_max:
            raise ValueError(f"Invalid agent port range {self.port_min}-{self.port_max}")
        if self.ready_attempts < 1:
            raise ValueError("ready_attempts must be at least 1")


@dataclass(slots=True)
class BuildSettings:
    """Typed projection of the raw configuration mapping."""

    completions_url: str
    api_key: str
    user_agent: str
    completions_timeout: float
    thinker: ModelSettings
    renderer: ModelSettings
    agent: AgentSettings
    complexity_threshold: int
    data_dir: Path
    stdlib_dir: Path
    prompts_dir: Path
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    @classmethod
    def from_config(cls, data: Mapping[str, Any] | None = None) -> "BuildSettings":
        cfg = dict(data) if data is not None else get_config()
        completions = cfg.get("completions", {}) or {}
        thinker = cfg.get("thinker", {}) or {}
        renderer = cfg.get("renderer", {}) or {}
        agent = cfg.get("agent", {}) or {}
        storage = cfg.get("storage", {}) or {}
        prompts = cfg.get("prompts", {}) or {}
        logging_cfg = cfg.get("logging", {}) or {}

        data_dir = Path(str(storage.get("data_dir") or "~/.panelforge")).expanduser()
        stdlib_raw = str(storage.get("stdlib_dir") or "")
        stdlib_dir = Path(stdlib_raw).expanduser() if stdlib_raw else data_dir / "stdlib"
        prompts_raw = str(prompts.get("base_dir") or "")
        log_file = str(logging_cfg.get("file") or "")

        agent_kwargs = {
            key: agent[key]
            for key in AgentSettings.__dataclass_fields__  # type: ignore[attr-defined]
            if key in agent and agent[key] is not None
        }
        agent_kwargs.setdefault("model", "")

        return cls(
            completions_url=str(completions.get("url", "")),
            api_key=str(completions.get("api_key") or ""),
            user_agent=str(completions.get("user_agent") or "panelforge"),
            completions_timeout=float(completions.get("timeout_seconds", 120.0)),
            thinker=ModelSettings(str(thinker.get("model", "")), str(thinker.get("system_prompt") or "")),
            renderer=ModelSettings(str(renderer.get("model", "")), str(renderer.get("system_prompt") or "")),
            agent=AgentSettings(**agent_kwargs),
            complexity_threshold=int((cfg.get("builder") or {}).get("complexity_threshold", 2)),
            data_dir=data_dir,
            stdlib_dir=stdlib_dir,
            prompts_dir=Path(prompts_raw).expanduser() if prompts_raw else Path.cwd(),
            log_level=str(logging_cfg.get("level") or "INFO"),
            log_file=Path(log_file).expanduser() if log_file else None,
        )


__all__ = [
    "AgentSettings",
    "BuildSettings",
    "ModelSettings",
    "get_config",
]
