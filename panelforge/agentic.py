"""Agentic generation: a coding agent edits the panel directory inside a sandbox."""
from __future__ import annotations

import logging
from enum import Enum

from panelforge.completions import CompletionClient
from panelforge.config import AgentSettings
from panelforge.containers import ContainerManager
from panelforge.errors import ArtifactNotFoundError
from panelforge.models import PanelMetadata
from panelforge.prompts import Message, SystemPrompts, user
from panelforge.session import GenerationSession
from panelforge.storage import PanelStore

logger = logging.getLogger(__name__)

CONTAINER_PREFIX = "panelforge-agent"
COMPLETIONS_PATH = "/v1/chat/completions"


class AgentState(str, Enum):
    IDLE = "idle"
    PROVISIONING = "provisioning"
    AWAITING_READY = "awaiting_ready"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


def container_name(operation: str, panel_id: str) -> str:
    """Deterministic per-operation name, so a build and an enhance never share one."""
    if operation == "build":
        return f"{CONTAINER_PREFIX}-{panel_id}"
    return f"{CONTAINER_PREFIX}-{operation}-{panel_id}"


class AgenticStrategy:
    """Supervises a sandboxed agent; never reads or writes artifact bytes itself."""

    name = "agentic"

    def __init__(
        self,
        client: CompletionClient,
        containers: ContainerManager,
        store: PanelStore,
        prompts: SystemPrompts,
        settings: AgentSettings,
    ) -> None:
        self._client = client
        self._containers = containers
        self._store = store
        self._prompts = prompts
        self._settings = settings

    @property
    def containers(self) -> ContainerManager:
        return self._containers

    async def build(self, metadata: PanelMetadata, request: str, session: GenerationSession) -> None:
        artifact = self._store.artifact_path(metadata.id)
        if artifact.is_file():
            logger.info("Panel %s already has content, loading existing file", metadata.id)
            session.show(artifact)
            session.succeed()
            return
        await self._run("build", metadata, [user(metadata.alpha), user(request)], session)

    async def enhance(self, metadata: PanelMetadata, instruction: str, session: GenerationSession) -> None:
        if not self._store.has_artifact(metadata.id):
            raise ArtifactNotFoundError(metadata.id)
        await self._run("enhance", metadata, [user(instruction)], session)

    async def cleanup(self) -> None:
        await self._containers.cleanup()

    # ------------------------------------------------------------------
    def _environment(self) -> dict[str, str]:
        env = {
            "DEBUG_MODE": "true" if self._settings.debug else "false",
            "MAX_TIMEOUT": str(self._settings.max_timeout_ms),
            "CLAUDE_CWD": self._settings.mount_path,
        }
        if self._settings.auth_token:
            env["ANTHROPIC_API_KEY"] = self._settings.auth_token
        if self._settings.base_url:
            env["ANTHROPIC_BASE_URL"] = self._settings.base_url
        return env

    def _transition(self, session: GenerationSession, state: AgentState) -> None:
        logger.debug("Agent session %s/%s: %s -> %s", session.operation, session.metadata.id, session.state, state.value)
        session.state = state.value

    async def _run(
        self,
        operation: str,
        metadata: PanelMetadata,
        conversation: list[Message],
        session: GenerationSession,
    ) -> None:
        name = container_name(operation, metadata.id)
        panel_dir = self._store.panel_dir(metadata.id)
        panel_dir.mkdir(parents=True, exist_ok=True)
        handle = None

        try:
            self._transition(session, AgentState.PROVISIONING)
            handle = await self._containers.provision(name, panel_dir, self._environment())
            session.container_id = handle.name
            session.port = handle.port

            self._transition(session, AgentState.AWAITING_READY)
            await self._containers.wait_ready(handle)

            self._transition(session, AgentState.STREAMING)
            messages = self._prompts.prepend(self._settings.system_prompt, conversation)
            async for delta in self._client.stream(
                messages,
                model=self._settings.model,
                url=f"{handle.base_url}{COMPLETIONS_PATH}",
                enable_tools=True,
                timeout=self._settings.request_timeout_seconds,
            ):
                session.emit(delta)

            self._transition(session, AgentState.FINALIZING)
            artifact = self._store.artifact_path(metadata.id)
            if not artifact.is_file():
                logger.warning("Agent finished without writing %s", artifact)
            session.show(artifact)
            session.succeed()
        except BaseException:
            # Agent-written files are left as they are; only the container goes.
            self._transition(session, AgentState.FAILED)
            if handle is not None:
                await self._containers.stop(name)
            raise

        await self._containers.stop(name)
        self._transition(session, AgentState.DONE)


__all__ = ["AgentState", "AgenticStrategy", "CONTAINER_PREFIX", "container_name"]
