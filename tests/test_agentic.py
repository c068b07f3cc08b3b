from __future__ import annotations

import asyncio
import random
from pathlib import Path

import httpx
import pytest

from panelforge.agentic import AgentState, AgenticStrategy, container_name
from panelforge.completions import CompletionClient
from panelforge.config import ModelSettings
from panelforge.containers import ContainerManager
from panelforge.direct import DirectStrategy
from panelforge.errors import ArtifactNotFoundError, ProvisioningError, ReadinessTimeoutError, UpstreamHTTPError
from panelforge.orchestrator import BuildOrchestrator
from panelforge.prompts import SystemPrompts
from panelforge.session import GenerationSession, Outcome
from panelforge.storage import PanelStore
from tests.fakes import (
    FakeRuntime,
    RecordingHandler,
    RecordingSink,
    SleepRecorder,
    agent_settings,
    frame,
    make_panel,
    stream_response,
)


class AgentFixture:
    def __init__(self, tmp_path: Path, handler, runtime: FakeRuntime, **settings) -> None:
        self.settings = agent_settings(**settings)
        self.runtime = runtime
        self.store = PanelStore(tmp_path / "data")
        self.manager = ContainerManager(runtime, self.settings, sleep=SleepRecorder(), rng=random.Random(3))
        client = CompletionClient("http://127.0.0.1:8000", transport=httpx.MockTransport(handler))
        self.strategy = AgenticStrategy(client, self.manager, self.store, SystemPrompts(tmp_path), self.settings)


def test_container_names_differ_per_operation() -> None:
    assert container_name("build", "p1") == "panelforge-agent-p1"
    assert container_name("enhance", "p1") == "panelforge-agent-enhance-p1"


def test_build_runs_agent_and_tears_down(tmp_path: Path) -> None:
    requests: list[httpx.Request] = []
    fixture: AgentFixture

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        # the agent writes the artifact into the mounted directory
        fixture.store.write_artifact("chart", "<html>chart</html>")
        return stream_response("Reading files...", "Wrote index.html")

    fixture = AgentFixture(tmp_path, handler, FakeRuntime(), auth_token="tok", base_url="https://proxy.test")
    sink = RecordingSink()
    panel = make_panel("chart", complexity=5, alpha="Sales chart")
    session = GenerationSession(metadata=panel, sink=sink)

    asyncio.run(fixture.strategy.build(panel, "plot my sales", session))

    spec = fixture.runtime.started[0]
    assert spec.name == "panelforge-agent-chart"
    assert spec.mount_source == fixture.store.panel_dir("chart").resolve()
    assert spec.mount_target == "/app/workspace"
    assert spec.env["MAX_TIMEOUT"] == "6000000"
    assert spec.env["CLAUDE_CWD"] == "/app/workspace"
    assert spec.env["ANTHROPIC_API_KEY"] == "tok"
    assert spec.env["ANTHROPIC_BASE_URL"] == "https://proxy.test"

    assert str(requests[0].url) == f"http://127.0.0.1:{spec.host_port}/v1/chat/completions"
    assert len(requests) == 1

    assert sink.text == "Reading files...Wrote index.html"
    assert sink.artifacts == [str(fixture.store.artifact_path("chart"))]
    assert sink.ends == [Outcome.ok()]
    assert session.state == AgentState.DONE.value
    assert session.container_id == "panelforge-agent-chart"
    assert fixture.runtime.stopped == ["panelforge-agent-chart"]
    assert len(fixture.manager.registry) == 0


def test_build_sends_alpha_then_request_with_tools(tmp_path: Path) -> None:
    handler = RecordingHandler(stream_response("done"))
    fixture = AgentFixture(tmp_path, handler, FakeRuntime())
    panel = make_panel("chart", complexity=5, alpha="Sales chart")

    asyncio.run(fixture.strategy.build(panel, "plot my sales", GenerationSession(metadata=panel)))

    payload = handler.payload()
    assert [message["content"] for message in payload["messages"]] == ["Sales chart", "plot my sales"]
    assert payload["enable_tools"] is True
    assert payload["stream"] is True
    assert payload["model"] == "agent-model"
    assert "ANTHROPIC_API_KEY" not in fixture.runtime.started[0].env


def test_readiness_timeout_stops_container_without_request(tmp_path: Path) -> None:
    handler = RecordingHandler()
    fixture = AgentFixture(tmp_path, handler, FakeRuntime(ready_after=0), ready_attempts=3)
    panel = make_panel("chart", complexity=5)
    session = GenerationSession(metadata=panel)

    with pytest.raises(ReadinessTimeoutError):
        asyncio.run(fixture.strategy.build(panel, "plot", session))

    assert fixture.runtime.health_checks == 3
    assert handler.requests == []
    assert fixture.runtime.stopped == ["panelforge-agent-chart"]
    assert len(fixture.manager.registry) == 0
    assert session.state == AgentState.FAILED.value


def test_stream_failure_stops_container(tmp_path: Path) -> None:
    handler = RecordingHandler(httpx.Response(502, text="agent crashed"))
    fixture = AgentFixture(tmp_path, handler, FakeRuntime())
    panel = make_panel("chart", complexity=5)

    with pytest.raises(UpstreamHTTPError):
        asyncio.run(fixture.strategy.build(panel, "plot", GenerationSession(metadata=panel)))

    assert fixture.runtime.stopped == ["panelforge-agent-chart"]
    assert len(fixture.manager.registry) == 0


def test_start_failure_leaves_nothing_to_stop(tmp_path: Path) -> None:
    runtime = FakeRuntime(start_error=ProvisioningError("image not found"))
    fixture = AgentFixture(tmp_path, RecordingHandler(), runtime)
    panel = make_panel("chart", complexity=5)

    with pytest.raises(ProvisioningError):
        asyncio.run(fixture.strategy.build(panel, "plot", GenerationSession(metadata=panel)))

    assert runtime.stopped == []


def test_name_conflict_does_not_touch_the_running_container(tmp_path: Path) -> None:
    fixture = AgentFixture(tmp_path, RecordingHandler(), FakeRuntime())
    panel = make_panel("chart", complexity=5)

    async def scenario() -> None:
        await fixture.manager.provision("panelforge-agent-chart", tmp_path)
        with pytest.raises(ProvisioningError):
            await fixture.strategy.build(panel, "plot", GenerationSession(metadata=panel))

    asyncio.run(scenario())
    assert fixture.runtime.stopped == []
    assert "panelforge-agent-chart" in fixture.manager.registry


def test_build_with_existing_artifact_skips_container(tmp_path: Path) -> None:
    fixture = AgentFixture(tmp_path, RecordingHandler(), FakeRuntime())
    fixture.store.write_artifact("chart", "<html>kept</html>")
    sink = RecordingSink()
    panel = make_panel("chart", complexity=5)

    asyncio.run(fixture.strategy.build(panel, "plot", GenerationSession(metadata=panel, sink=sink)))

    assert fixture.runtime.started == []
    assert sink.kinds() == ["artifact", "end"]


def test_enhance_requires_artifact(tmp_path: Path) -> None:
    fixture = AgentFixture(tmp_path, RecordingHandler(), FakeRuntime())
    panel = make_panel("chart", complexity=5)

    with pytest.raises(ArtifactNotFoundError):
        asyncio.run(fixture.strategy.enhance(panel, "add a legend", GenerationSession(metadata=panel)))

    assert fixture.runtime.started == []


def test_enhance_uses_its_own_container_and_instruction_only(tmp_path: Path) -> None:
    handler = RecordingHandler(stream_response("Edited index.html"))
    fixture = AgentFixture(tmp_path, handler, FakeRuntime())
    fixture.store.write_artifact("chart", "<html>chart</html>")
    panel = make_panel("chart", complexity=5)

    asyncio.run(
        fixture.strategy.enhance(panel, "add a legend", GenerationSession(metadata=panel, operation="enhance"))
    )

    assert fixture.runtime.started[0].name == "panelforge-agent-enhance-chart"
    assert [message["content"] for message in handler.payload()["messages"]] == ["add a legend"]
    assert fixture.runtime.stopped == ["panelforge-agent-enhance-chart"]


def test_cleanup_releases_running_containers(tmp_path: Path) -> None:
    fixture = AgentFixture(tmp_path, RecordingHandler(), FakeRuntime())

    async def scenario() -> None:
        await fixture.manager.provision("panelforge-agent-x", tmp_path)
        await fixture.strategy.cleanup()

    asyncio.run(scenario())
    assert fixture.runtime.stopped == ["panelforge-agent-x"]


def test_cleanup_during_stream_empties_registry_and_ends_once(tmp_path: Path) -> None:
    streaming = asyncio.Event()
    release = asyncio.Event()

    class GatedStream(httpx.AsyncByteStream):
        async def __aiter__(self):
            yield frame("working").encode("utf-8")
            streaming.set()
            await release.wait()
            yield b"data: [DONE]\n\n"

        async def aclose(self) -> None:
            pass

    fixture = AgentFixture(tmp_path, lambda request: httpx.Response(200, stream=GatedStream()), FakeRuntime())
    direct = DirectStrategy(CompletionClient("http://unused.test"), fixture.store, SystemPrompts(tmp_path), ModelSettings("m"))
    orchestrator = BuildOrchestrator(direct, fixture.strategy, threshold=2)
    sink = RecordingSink()

    async def scenario() -> None:
        build = asyncio.create_task(orchestrator.build(make_panel("chart", complexity=5), "plot", sink))
        await streaming.wait()

        await orchestrator.cleanup()

        assert len(fixture.manager.registry) == 0
        assert fixture.runtime.stopped == ["panelforge-agent-chart"]
        assert sink.ends == []

        release.set()
        await build

    asyncio.run(scenario())
    assert sink.text == "working"
    assert sink.ends == [Outcome.ok()]
    assert fixture.runtime.stopped == ["panelforge-agent-chart"]
