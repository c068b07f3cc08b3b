"""System prompt files prepended to chat-completion message lists."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

Message = dict[str, str]


class SystemPrompts:
    """Loads system prompt files once and prepends them to message lists."""

    def __init__(self, base_dir: Path | str) -> None:
        self._base_dir = Path(base_dir)
        self._cache: dict[str, Optional[Message]] = {}

    def load(self, prompt_file: str | None) -> Optional[Message]:
        if not prompt_file:
            return None
        if prompt_file not in self._cache:
            path = Path(prompt_file)
            if not path.is_absolute():
                path = self._base_dir / path
            if path.is_file():
                self._cache[prompt_file] = {"role": "system", "content": path.read_text(encoding="utf-8")}
            else:
                logger.info("System prompt file not found: %s", path)
                self._cache[prompt_file] = None
        return self._cache[prompt_file]

    def prepend(self, prompt_file: str | None, messages: list[Message]) -> list[Message]:
        system = self.load(prompt_file)
        if system is None:
            return list(messages)
        return [dict(system), *messages]


def user(content: str) -> Message:
    return {"role": "user", "content": content}


__all__ = ["Message", "SystemPrompts", "user"]
