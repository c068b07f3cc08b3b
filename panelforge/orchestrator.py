"""Chooses a generation strategy per panel and runs build/enhance sessions."""
from __future__ import annotations

import logging
from enum import Enum
from typing import Optional, Protocol

import httpx  # type: ignore[import-untyped]

from panelforge.agentic import AgenticStrategy
from panelforge.completions import CompletionClient
from panelforge.config import BuildSettings
from panelforge.containers import ContainerManager, ContainerRuntime, DockerRuntime
from panelforge.direct import DirectStrategy
from panelforge.models import PanelMetadata
from panelforge.prompts import SystemPrompts
from panelforge.session import GenerationSession, NullSink, StreamSink
from panelforge.storage import PanelStore

logger = logging.getLogger(__name__)


class GenerationStrategy(Protocol):
    name: str

    async def build(self, metadata: PanelMetadata, request: str, session: GenerationSession) -> None: ...

    async def enhance(self, metadata: PanelMetadata, instruction: str, session: GenerationSession) -> None: ...

    async def cleanup(self) -> None: ...


class StrategyKind(str, Enum):
    DIRECT = "direct"
    AGENTIC = "agentic"


def select_strategy(complexity: int, threshold: int) -> StrategyKind:
    """Complexity up to and including the threshold stays on the direct path."""
    return StrategyKind.DIRECT if complexity <= threshold else StrategyKind.AGENTIC


class BuildOrchestrator:
    """Uniform build/enhance/cleanup front over the two strategies."""

    def __init__(self, direct: GenerationStrategy, agentic: GenerationStrategy, *, threshold: int) -> None:
        self._strategies: dict[StrategyKind, GenerationStrategy] = {
            StrategyKind.DIRECT: direct,
            StrategyKind.AGENTIC: agentic,
        }
        self.threshold = threshold

    @classmethod
    def from_settings(
        cls,
        settings: BuildSettings,
        store: PanelStore,
        *,
        runtime: ContainerRuntime | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "BuildOrchestrator":
        prompts = SystemPrompts(settings.prompts_dir)
        client = CompletionClient(
            settings.completions_url,
            api_key=settings.api_key,
            user_agent=settings.user_agent,
            timeout=settings.completions_timeout,
            transport=transport,
        )
        runtime = runtime or DockerRuntime(
            binary=settings.agent.docker_binary,
            health_timeout=settings.agent.health_timeout_seconds,
            transport=transport,
        )
        # The in-container API is unauthenticated and local.
        agent_client = CompletionClient(
            f"http://127.0.0.1:{settings.agent.internal_port}",
            user_agent=settings.user_agent,
            timeout=settings.agent.request_timeout_seconds,
            transport=transport,
        )
        direct = DirectStrategy(client, store, prompts, settings.renderer)
        agentic = AgenticStrategy(
            agent_client,
            ContainerManager(runtime, settings.agent),
            store,
            prompts,
            settings.agent,
        )
        return cls(direct, agentic, threshold=settings.complexity_threshold)

    # ------------------------------------------------------------------
    def kind_for(self, metadata: PanelMetadata) -> StrategyKind:
        return select_strategy(metadata.complexity or 1, self.threshold)

    def strategy_for(self, metadata: PanelMetadata) -> GenerationStrategy:
        return self._strategies[self.kind_for(metadata)]

    async def build(self, metadata: PanelMetadata, request: str, sink: StreamSink) -> GenerationSession:
        return await self._run("build", metadata, request, sink)

    async def enhance(
        self,
        metadata: PanelMetadata,
        instruction: str,
        sink: Optional[StreamSink] = None,
    ) -> GenerationSession:
        return await self._run("enhance", metadata, instruction, sink or NullSink())

    async def _run(self, operation: str, metadata: PanelMetadata, text: str, sink: StreamSink) -> GenerationSession:
        strategy = self.strategy_for(metadata)
        logger.info(
            "Using %s strategy to %s panel %s (complexity %s, threshold %s)",
            strategy.name,
            operation,
            metadata.id,
            metadata.complexity,
            self.threshold,
        )
        session = GenerationSession(metadata=metadata, sink=sink, operation=operation)
        try:
            if operation == "build":
                await strategy.build(metadata, text, session)
            else:
                await strategy.enhance(metadata, text, session)
        except BaseException as exc:
            logger.error("Failed to %s panel %s: %s", operation, metadata.id, exc)
            session.fail(exc)
            raise
        session.succeed()
        return session

    async def cleanup(self) -> None:
        for kind, strategy in self._strategies.items():
            try:
                await strategy.cleanup()
            except Exception as exc:  # noqa: BLE001 - shutdown is best effort
                logger.warning("Cleanup of %s strategy failed: %s", kind.value, exc)


__all__ = ["BuildOrchestrator", "GenerationStrategy", "StrategyKind", "select_strategy"]
