"""Turns a free-text request into panel metadata via the thinker model."""
from __future__ import annotations

import logging
import random

from panelforge.completions import CompletionClient
from panelforge.config import ModelSettings
from panelforge.models import PanelMetadata, parse_thinker_output, pick_color
from panelforge.prompts import SystemPrompts, user

logger = logging.getLogger(__name__)


class Thinker:
    def __init__(
        self,
        client: CompletionClient,
        prompts: SystemPrompts,
        settings: ModelSettings,
        *,
        rng: random.Random | None = None,
    ) -> None:
        self._client = client
        self._prompts = prompts
        self._settings = settings
        self._rng = rng

    async def think(self, request: str) -> PanelMetadata:
        messages = self._prompts.prepend(self._settings.system_prompt, [user(request)])
        reply = await self._client.complete(messages, model=self._settings.model)
        metadata = parse_thinker_output(reply)
        if not metadata.color:
            metadata.color = pick_color(self._rng)
        logger.info("Thinker produced %s panel %s (complexity %s)", metadata.type.value, metadata.id, metadata.complexity)
        return metadata


__all__ = ["Thinker"]
