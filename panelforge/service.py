"""Application service: the operations the desktop shell invokes."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx  # type: ignore[import-untyped]

from panelforge.completions import CompletionClient
from panelforge.config import BuildSettings
from panelforge.containers import ContainerRuntime
from panelforge.errors import PanelForgeError, PanelNotFoundError
from panelforge.models import Applet, PanelMetadata, pick_color
from panelforge.orchestrator import BuildOrchestrator
from panelforge.prompts import SystemPrompts
from panelforge.session import GenerationSession, NullSink, StreamSink
from panelforge.storage import PanelStore
from panelforge.thinker import Thinker

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PanelView:
    """What the shell should display when an applet is reopened."""

    panel_id: str
    title: str
    kind: str  # "artifact", "url" or "placeholder"
    location: Optional[str]
    width: int
    height: int


class PanelService:
    """Owns the panel and applet maps for one running instance."""

    def __init__(self, store: PanelStore, orchestrator: BuildOrchestrator, thinker: Thinker) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.thinker = thinker
        self.panels: dict[str, PanelMetadata] = {}
        self.applets: dict[str, Applet] = {}

    @classmethod
    def from_settings(
        cls,
        settings: BuildSettings,
        *,
        runtime: ContainerRuntime | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "PanelService":
        store = PanelStore(settings.data_dir, stdlib_dir=settings.stdlib_dir)
        orchestrator = BuildOrchestrator.from_settings(settings, store, runtime=runtime, transport=transport)
        client = CompletionClient(
            settings.completions_url,
            api_key=settings.api_key,
            user_agent=settings.user_agent,
            timeout=settings.completions_timeout,
            transport=transport,
        )
        thinker = Thinker(client, SystemPrompts(settings.prompts_dir), settings.thinker)
        return cls(store, orchestrator, thinker)

    def load(self) -> None:
        self.store.ensure()
        try:
            self.applets = self.store.load_applets()
        except (OSError, ValueError) as exc:
            logger.error("Error loading applets: %s", exc)
            self.applets = {}
        self.panels = self.store.load_panels()
        logger.info("Applets loaded: %d", len(self.applets))

    async def close(self) -> None:
        await self.orchestrator.cleanup()

    # ------------------------------------------------------------------
    def list_applets(self) -> list[Applet]:
        return list(self.applets.values())

    def get_panel(self, panel_id: str) -> PanelMetadata:
        panel = self.panels.get(panel_id)
        if panel is None:
            raise PanelNotFoundError(f"Panel {panel_id!r} not found")
        return panel

    def _next_applet_id(self) -> str:
        stamp = int(time.time() * 1000)
        while str(stamp) in self.applets:
            stamp += 1
        return str(stamp)

    async def create_panel(self, request: str) -> tuple[PanelMetadata, Applet]:
        """Ask the thinker for metadata and register it under a new applet."""
        metadata = await self.thinker.think(request)
        applet = Applet(
            id=self._next_applet_id(),
            caption=metadata.display_title,
            color=metadata.color,
            panels=[metadata.id],
        )
        self.panels[metadata.id] = metadata
        self.applets[applet.id] = applet
        self.store.save_panel(metadata)
        self.store.save_applets(self.applets)
        return metadata, applet

    async def build_panel(self, panel_id: str, request: str, sink: StreamSink | None = None) -> GenerationSession:
        metadata = self.get_panel(panel_id)
        sink = sink or NullSink()
        if not metadata.is_build:
            session = GenerationSession(metadata=metadata, sink=sink)
            session.show(metadata.alpha)
            session.succeed()
            return session
        return await self.orchestrator.build(metadata, request, sink)

    async def add_panel(self, request: str, sink: StreamSink | None = None) -> PanelMetadata:
        metadata, _applet = await self.create_panel(request)
        await self.build_panel(metadata.id, request, sink)
        return metadata

    async def enhance_panel(
        self,
        panel_id: str,
        instruction: str,
        sink: StreamSink | None = None,
    ) -> dict[str, Any]:
        panel = self.panels.get(panel_id)
        if panel is None or not panel.is_build:
            return {"error": "Panel not found or not a build type panel"}
        logger.info("Enhancing panel %s with complexity %s", panel_id, panel.complexity)
        try:
            await self.orchestrator.enhance(panel, instruction, sink)
        except (PanelForgeError, OSError) as exc:
            logger.error("Error enhancing panel %s: %s", panel_id, exc)
            return {"error": str(exc)}
        return {"success": True}

    def save_content(self, panel_id: str, content: str) -> bool:
        panel = self.panels.get(panel_id)
        if panel is None:
            logger.error("Panel not found: %s", panel_id)
            return False
        if self.store.has_artifact(panel_id):
            logger.info("Content already exists for panel %s; skipping save", panel_id)
            return True
        self.store.save_panel(panel, content)
        return True

    def resize_panel(self, panel_id: str, width: int, height: int) -> PanelMetadata:
        panel = self.get_panel(panel_id)
        panel.initial_width = int(width)
        panel.initial_height = int(height)
        self.store.save_panel(panel)
        logger.info("Panel size saved: %s %sx%s", panel_id, width, height)
        return panel

    def delete_applet(self, applet_id: str) -> dict[str, Any]:
        applet = self.applets.get(applet_id)
        if applet is None:
            return {"error": "Applet not found"}
        for panel_id in applet.panels:
            if self.panels.pop(panel_id, None) is not None:
                self.store.delete_panel(panel_id)
        del self.applets[applet_id]
        self.store.save_applets(self.applets)
        logger.info("Applet deleted: %s", applet_id)
        return {"success": True}

    def _used_panel_ids(self) -> set[str]:
        return {panel_id for applet in self.applets.values() for panel_id in applet.panels}

    def available_panels(self) -> list[dict[str, str]]:
        """Stored panels that no applet shows yet."""
        used = self._used_panel_ids()
        return [
            {
                "id": panel.id,
                "name": panel.title or panel.name or panel.id,
                "description": str(panel.extra.get("description") or "No description available"),
                "type": panel.type.value,
            }
            for panel in self.panels.values()
            if panel.id not in used
        ]

    def import_panel(self, panel_id: str) -> dict[str, Any]:
        panel = self.panels.get(panel_id)
        if panel is None:
            return {"error": "Panel not found"}
        if panel_id in self._used_panel_ids():
            return {"error": "Panel is already used in an applet"}
        applet = Applet(
            id=self._next_applet_id(),
            caption=panel.title or panel.name or "Imported Panel",
            color=pick_color(),
            panels=[panel_id],
        )
        self.applets[applet.id] = applet
        self.store.save_applets(self.applets)
        logger.info("Panel %s imported as applet %s", panel_id, applet.id)
        return {"success": True, "applet": applet.to_mapping()}

    def reopen_applet(self, applet_id: str) -> PanelView:
        applet = self.applets.get(applet_id)
        if applet is None or not applet.panels:
            raise PanelNotFoundError(f"Applet {applet_id!r} not found or has no panels")
        panel = self.get_panel(applet.panels[0])
        title = panel.title or panel.name or applet.caption
        if not panel.is_build:
            kind, location = "url", panel.alpha
        elif self.store.has_artifact(panel.id):
            kind, location = "artifact", str(self.store.artifact_path(panel.id))
        else:
            kind, location = "placeholder", None
        return PanelView(
            panel_id=panel.id,
            title=title,
            kind=kind,
            location=location,
            width=panel.initial_width,
            height=panel.initial_height,
        )


__all__ = ["PanelService", "PanelView"]
