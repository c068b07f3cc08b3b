"""Panel and applet records exchanged with the thinker and the store."""
from __future__ import annotations

import json
import random
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from panelforge.errors import MalformedMetadataError

PANEL_COLORS: tuple[str, ...] = (
    "#10b981",
    "#ef4444",
    "#eab308",
    "#a855f7",
    "#6b7280",
    "#f97316",
    "#3b82f6",
    "#6366f1",
    "#ec4899",
    "#14b8a6",
    "#06b6d4",
)

_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL | re.IGNORECASE)

# camelCase keys used on disk -> attribute names
_KEY_MAP = {
    "id": "id",
    "type": "type",
    "complexity": "complexity",
    "title": "title",
    "name": "name",
    "initialWidth": "initial_width",
    "initialHeight": "initial_height",
    "alpha": "alpha",
    "color": "color",
}


class PanelType(str, Enum):
    BUILD = "build"
    WEB = "web"


def pick_color(rng: random.Random | None = None) -> str:
    return (rng or random).choice(PANEL_COLORS)


def _coerce_complexity(value: Any) -> int:
    if value is None or value == "":
        return 1
    if isinstance(value, bool):
        raise MalformedMetadataError(f"Invalid complexity value: {value!r}")
    try:
        complexity = int(value)
    except (TypeError, ValueError) as exc:
        raise MalformedMetadataError(f"Invalid complexity value: {value!r}") from exc
    return max(1, complexity)


def _coerce_dimension(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass(slots=True)
class PanelMetadata:
    """Structured description of one panel, as produced by the thinker."""

    id: str
    type: PanelType = PanelType.BUILD
    complexity: int = 1
    title: str = ""
    name: str = ""
    initial_width: int = 800
    initial_height: int = 600
    alpha: str = ""
    color: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_build(self) -> bool:
        return self.type is PanelType.BUILD

    @property
    def display_title(self) -> str:
        return self.title or self.name or "Untitled"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "PanelMetadata":
        if not isinstance(data, Mapping):
            raise MalformedMetadataError("Panel metadata must be a JSON object")
        panel_id = data.get("id")
        if not isinstance(panel_id, str) or not panel_id.strip():
            raise MalformedMetadataError("Panel metadata requires a non-empty string 'id'")
        if "/" in panel_id or "\\" in panel_id or panel_id in {".", ".."}:
            raise MalformedMetadataError(f"Panel id {panel_id!r} is not a valid directory name")
        raw_type = data.get("type", PanelType.BUILD.value)
        try:
            panel_type = PanelType(str(raw_type).lower())
        except ValueError as exc:
            raise MalformedMetadataError(f"Unknown panel type: {raw_type!r}") from exc

        extra = {key: value for key, value in data.items() if key not in _KEY_MAP}
        return cls(
            id=panel_id.strip(),
            type=panel_type,
            complexity=_coerce_complexity(data.get("complexity")),
            title=str(data.get("title") or ""),
            name=str(data.get("name") or ""),
            initial_width=_coerce_dimension(data.get("initialWidth"), 800),
            initial_height=_coerce_dimension(data.get("initialHeight"), 600),
            alpha=str(data.get("alpha") or ""),
            color=str(data.get("color") or ""),
            extra=extra,
        )

    def to_mapping(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "id": self.id,
                "type": self.type.value,
                "complexity": self.complexity,
                "title": self.title,
                "name": self.name,
                "initialWidth": self.initial_width,
                "initialHeight": self.initial_height,
                "alpha": self.alpha,
                "color": self.color,
            }
        )
        return payload


@dataclass(slots=True)
class Applet:
    """User-facing grouping of one or more panels."""

    id: str
    caption: str
    color: str = ""
    panels: list[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Applet":
        panels = data.get("panels") or []
        return cls(
            id=str(data["id"]),
            caption=str(data.get("caption") or "Untitled"),
            color=str(data.get("color") or ""),
            panels=[str(panel) for panel in panels if panel],
        )

    def to_mapping(self) -> dict[str, Any]:
        return {"id": self.id, "caption": self.caption, "color": self.color, "panels": list(self.panels)}


def parse_thinker_output(text: str) -> PanelMetadata:
    """Turn the thinker's reply into metadata, tolerating a Markdown code fence."""
    if not isinstance(text, str) or not text.strip():
        raise MalformedMetadataError("Thinker returned an empty reply")
    body = text.strip()
    match = _FENCE_RE.match(body)
    if match:
        body = match.group(1)
    try:
        data = json.loads(body)
    except json.JSONDecodeError as exc:
        raise MalformedMetadataError(f"Thinker reply is not valid JSON: {exc.msg}") from exc
    return PanelMetadata.from_mapping(data)


__all__ = ["Applet", "PANEL_COLORS", "PanelMetadata", "PanelType", "parse_thinker_output", "pick_color"]
