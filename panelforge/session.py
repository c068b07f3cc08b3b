"""Per-operation session state and the sink interface towards the UI."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Protocol

from panelforge.models import PanelMetadata

logger = logging.getLogger(__name__)


class StreamSink(Protocol):
    """Receives the progress of one build or enhance session."""

    def on_data(self, delta: str) -> None: ...

    def on_artifact(self, location: str) -> None: ...

    def on_end(self, outcome: "Outcome") -> None: ...


class NullSink:
    def on_data(self, delta: str) -> None:
        pass

    def on_artifact(self, location: str) -> None:
        pass

    def on_end(self, outcome: "Outcome") -> None:
        pass


@dataclass(frozen=True, slots=True)
class Outcome:
    success: bool
    reason: Optional[str] = None

    @classmethod
    def ok(cls) -> "Outcome":
        return cls(success=True)

    @classmethod
    def failed(cls, exc: BaseException | str) -> "Outcome":
        reason = exc if isinstance(exc, str) else (str(exc) or type(exc).__name__)
        return cls(success=False, reason=reason)


@dataclass(slots=True)
class GenerationSession:
    """One in-flight build or enhance operation.

    Deltas reach the sink in the order they were emitted and ``on_end`` is
    delivered exactly once, whichever of ``succeed``/``fail`` comes first.
    """

    metadata: PanelMetadata
    sink: StreamSink = field(default_factory=NullSink)
    operation: str = "build"
    container_id: Optional[str] = None
    port: Optional[int] = None
    state: str = "idle"
    content: list[str] = field(default_factory=list)
    outcome: Optional[Outcome] = None

    @property
    def finished(self) -> bool:
        return self.outcome is not None

    def emit(self, delta: str, *, buffer: bool = False) -> None:
        if self.finished:
            raise RuntimeError(f"Session for panel {self.metadata.id!r} already finished")
        if buffer:
            self.content.append(delta)
        self.sink.on_data(delta)

    def buffered(self) -> str:
        return "".join(self.content)

    def show(self, location: Path | str) -> None:
        if self.finished:
            raise RuntimeError(f"Session for panel {self.metadata.id!r} already finished")
        self.sink.on_artifact(str(location))

    def succeed(self) -> bool:
        return self._finish(Outcome.ok())

    def fail(self, exc: BaseException | str) -> bool:
        return self._finish(Outcome.failed(exc))

    def _finish(self, outcome: Outcome) -> bool:
        if self.outcome is not None:
            logger.debug(
                "Ignoring second outcome for %s session of %s (already %s)",
                self.operation,
                self.metadata.id,
                "succeeded" if self.outcome.success else "failed",
            )
            return False
        self.outcome = outcome
        self.sink.on_end(outcome)
        return True


@dataclass(frozen=True, slots=True)
class StreamEvent:
    kind: str  # "data", "artifact" or "end"
    payload: Any = None


class ChannelSink:
    """Sink that turns session callbacks into an async sequence of events."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        self._closed = False
        self.ended = False

    def on_data(self, delta: str) -> None:
        self._queue.put_nowait(StreamEvent("data", delta))

    def on_artifact(self, location: str) -> None:
        self._queue.put_nowait(StreamEvent("artifact", location))

    def on_end(self, outcome: Outcome) -> None:
        self.ended = True
        self._queue.put_nowait(StreamEvent("end", outcome))

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._events()

    async def _events(self) -> AsyncIterator[StreamEvent]:
        if self._closed:
            return
        while True:
            event = await self._queue.get()
            yield event
            if event.kind == "end":
                self._closed = True
                return


__all__ = ["ChannelSink", "GenerationSession", "NullSink", "Outcome", "StreamEvent", "StreamSink"]
