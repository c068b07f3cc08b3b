from __future__ import annotations

import os

import pytest

from panelforge import config

_LEGACY_NAMES = (
    "OPENAI_COMPLETIONS_URL",
    "OPENAI_API_KEY",
    "OPENAI_THINKER",
    "OPENAI_THINKER_PROMPT",
    "OPENAI_RENDERER_FAST",
    "OPENAI_RENDERER_FAST_PROMPT",
    "COMPLEX_RENDERER_MODEL",
    "CLAUDE_CODE_SYSTEM_PROMPT",
    "COMPLEX_RENDERER_DOCKER_IMAGE",
    "ANTHROPIC_AUTH_TOKEN",
    "ANTHROPIC_BASE_URL",
    "COMPLEX_RENDERER_THRESHOLD",
    "STDLIB_PATH",
)


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's own configuration out of the tests."""
    for name in _LEGACY_NAMES:
        monkeypatch.delenv(name, raising=False)
    for name in list(os.environ):
        if name.startswith("PANELFORGE_"):
            monkeypatch.delenv(name, raising=False)
    config._load_config.cache_clear()  # type: ignore[attr-defined]
