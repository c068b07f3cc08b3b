"""Direct generation: one streamed completion from the fast renderer model."""
from __future__ import annotations

import logging

from panelforge.completions import CompletionClient
from panelforge.config import ModelSettings
from panelforge.errors import ArtifactNotFoundError
from panelforge.models import PanelMetadata
from panelforge.prompts import SystemPrompts, user
from panelforge.session import GenerationSession
from panelforge.storage import PanelStore

logger = logging.getLogger(__name__)


class DirectStrategy:
    """Generates the artifact in-process and writes it once the stream ends."""

    name = "direct"

    def __init__(
        self,
        client: CompletionClient,
        store: PanelStore,
        prompts: SystemPrompts,
        settings: ModelSettings,
    ) -> None:
        self._client = client
        self._store = store
        self._prompts = prompts
        self._settings = settings

    async def build(self, metadata: PanelMetadata, request: str, session: GenerationSession) -> None:
        artifact = self._store.artifact_path(metadata.id)
        if artifact.is_file():
            logger.info("Panel %s already has content, loading existing file", metadata.id)
            session.show(artifact)
            session.succeed()
            return

        messages = self._prompts.prepend(
            self._settings.system_prompt,
            [user(request), user(metadata.alpha)],
        )
        session.state = "streaming"
        async for delta in self._client.stream(messages, model=self._settings.model):
            session.emit(delta, buffer=True)

        # Reached on the sentinel and on an early close alike; a transport
        # error or HTTP failure raises before anything is written.
        session.state = "finalizing"
        self._store.write_artifact(metadata.id, session.buffered())
        session.show(artifact)
        session.succeed()
        session.state = "done"

    async def enhance(self, metadata: PanelMetadata, instruction: str, session: GenerationSession) -> None:
        if not self._store.has_artifact(metadata.id):
            raise ArtifactNotFoundError(metadata.id)
        current = self._store.read_artifact(metadata.id)
        messages = self._prompts.prepend(
            self._settings.system_prompt,
            [user(current), user(instruction)],
        )
        session.state = "requesting"
        enhanced = await self._client.complete(messages, model=self._settings.model)

        session.state = "finalizing"
        self._store.write_artifact(metadata.id, enhanced, overwrite=True)
        session.show(self._store.artifact_path(metadata.id))
        session.succeed()
        session.state = "done"

    async def cleanup(self) -> None:
        """Nothing to release; every request owns its own HTTP client."""


__all__ = ["DirectStrategy"]
