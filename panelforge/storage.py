"""On-disk store for panel metadata, generated artifacts and the applet registry."""
from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from panelforge.models import Applet, PanelMetadata

logger = logging.getLogger(__name__)

METADATA_FILE = "package.json"
ARTIFACT_FILE = "index.html"
APPLETS_FILE = "applets.json"


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class PanelStore:
    """One directory per panel under ``stdlib/`` plus a top-level ``applets.json``.

    Metadata and registry files are rewritten wholesale on every save; two
    writers racing on the same file keep whichever write lands last.
    """

    def __init__(self, data_dir: Path | str, *, stdlib_dir: Path | str | None = None) -> None:
        self.data_dir = Path(data_dir).expanduser()
        self.stdlib_dir = Path(stdlib_dir).expanduser() if stdlib_dir else self.data_dir / "stdlib"
        self.applets_path = self.data_dir / APPLETS_FILE

    def ensure(self) -> None:
        self.stdlib_dir.mkdir(parents=True, exist_ok=True)

    # Panels ------------------------------------------------------------
    def panel_dir(self, panel_id: str) -> Path:
        return self.stdlib_dir / panel_id

    def artifact_path(self, panel_id: str) -> Path:
        return self.panel_dir(panel_id) / ARTIFACT_FILE

    def has_artifact(self, panel_id: str) -> bool:
        return self.artifact_path(panel_id).is_file()

    def read_artifact(self, panel_id: str) -> str:
        return self.artifact_path(panel_id).read_text(encoding="utf-8")

    def write_artifact(self, panel_id: str, content: str, *, overwrite: bool = False) -> bool:
        """Write the artifact atomically; returns ``False`` when an existing one was kept."""
        path = self.artifact_path(panel_id)
        if path.exists() and not overwrite:
            logger.info("Artifact already exists for panel %s; keeping it", panel_id)
            return False
        _atomic_write(path, content)
        logger.info("Panel artifact saved: %s", panel_id)
        return True

    def save_panel(self, metadata: PanelMetadata, content: Optional[str] = None) -> None:
        _atomic_write(self.panel_dir(metadata.id) / METADATA_FILE, json.dumps(metadata.to_mapping(), indent=2))
        if content is not None and metadata.is_build:
            self.write_artifact(metadata.id, content)

    def load_panel(self, panel_id: str) -> Optional[PanelMetadata]:
        path = self.panel_dir(panel_id) / METADATA_FILE
        if not path.is_file():
            return None
        return PanelMetadata.from_mapping(json.loads(path.read_text(encoding="utf-8")))

    def load_panels(self) -> dict[str, PanelMetadata]:
        panels: dict[str, PanelMetadata] = {}
        if not self.stdlib_dir.is_dir():
            return panels
        for entry in sorted(self.stdlib_dir.iterdir()):
            if not entry.is_dir():
                continue
            try:
                metadata = self.load_panel(entry.name)
            except Exception as exc:  # noqa: BLE001 - one bad panel must not hide the others
                logger.error("Error loading panel %s: %s", entry.name, exc)
                continue
            if metadata is not None:
                panels[metadata.id] = metadata
        logger.info("Panels loaded from %s: %d", self.stdlib_dir, len(panels))
        return panels

    def delete_panel(self, panel_id: str) -> bool:
        path = self.panel_dir(panel_id)
        if not path.exists():
            return False
        shutil.rmtree(path)
        logger.info("Panel directory deleted: %s", panel_id)
        return True

    # Applets -----------------------------------------------------------
    def load_applets(self) -> dict[str, Applet]:
        if not self.applets_path.is_file():
            return {}
        data = json.loads(self.applets_path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            return {}
        return {str(key): Applet.from_mapping(value) for key, value in data.items() if isinstance(value, dict)}

    def save_applets(self, applets: dict[str, Applet]) -> None:
        payload = {applet_id: applet.to_mapping() for applet_id, applet in applets.items()}
        _atomic_write(self.applets_path, json.dumps(payload, indent=2))


__all__ = ["APPLETS_FILE", "ARTIFACT_FILE", "METADATA_FILE", "PanelStore"]
