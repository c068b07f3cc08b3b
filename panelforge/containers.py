"""Lifecycle management for the sandbox containers that host the coding agent."""
from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol

import httpx  # type: ignore[import-untyped]

from panelforge.config import AgentSettings
from panelforge.errors import ContainerStopError, ProvisioningError, ReadinessTimeoutError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ContainerSpec:
    """Everything the runtime needs to launch one sandbox."""

    name: str
    image: str
    host_port: int
    internal_port: int
    mount_source: Path
    mount_target: str
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ContainerHandle:
    """Book-keeping for a running sandbox."""

    name: str
    port: int
    runtime_id: str = ""
    started_at: float = field(default_factory=time.time)

    @property
    def base_url(self) -> str:
        return f"http://127.0.0.1:{self.port}"


class ContainerRuntime(Protocol):
    async def start(self, spec: ContainerSpec) -> ContainerHandle: ...

    async def health_check(self, handle: ContainerHandle) -> bool: ...

    async def stop(self, handle: ContainerHandle) -> None: ...


class DockerRuntime:
    """Drives the ``docker`` CLI as an asyncio subprocess."""

    def __init__(
        self,
        *,
        binary: str = "docker",
        health_timeout: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._binary = binary
        self._health_timeout = health_timeout
        self._transport = transport

    def run_command(self, spec: ContainerSpec) -> list[str]:
        cmd = [
            self._binary,
            "run",
            "--rm",
            "--name",
            spec.name,
            "-p",
            f"{spec.host_port}:{spec.internal_port}",
            "-v",
            f"{spec.mount_source}:{spec.mount_target}",
        ]
        for key, value in spec.env.items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.extend(["-d", spec.image])
        return cmd

    async def _exec(self, *args: str) -> tuple[int, str, str]:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        return (
            process.returncode if process.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace").strip(),
            stderr.decode("utf-8", errors="replace").strip(),
        )

    async def start(self, spec: ContainerSpec) -> ContainerHandle:
        if not spec.image:
            raise ProvisioningError("No sandbox image configured (agent.image)")
        cmd = self.run_command(spec)
        # env values carry credentials; keep them out of the log
        logger.info("Starting container %s from %s on port %s", spec.name, spec.image, spec.host_port)
        try:
            code, stdout, stderr = await self._exec(*cmd)
        except OSError as exc:
            raise ProvisioningError(f"Unable to launch {self._binary}: {exc}") from exc
        if code != 0:
            raise ProvisioningError(f"Container {spec.name} failed to start: {stderr or stdout or code}")
        return ContainerHandle(name=spec.name, port=spec.host_port, runtime_id=stdout)

    async def health_check(self, handle: ContainerHandle) -> bool:
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._health_timeout) as client:
                response = await client.get(f"{handle.base_url}/health")
        except httpx.HTTPError:
            return False
        return response.is_success

    async def stop(self, handle: ContainerHandle) -> None:
        try:
            code, _stdout, stderr = await self._exec(self._binary, "stop", handle.name)
        except OSError as exc:
            raise ContainerStopError(f"Unable to launch {self._binary}: {exc}") from exc
        if code != 0 and "no such container" not in stderr.lower():
            raise ContainerStopError(f"Container {handle.name} failed to stop: {stderr or code}")


class ContainerRegistry:
    """Active containers keyed by name.

    Mutated only from the event loop thread, between awaits.
    """

    def __init__(self) -> None:
        self._containers: dict[str, ContainerHandle] = {}

    def register(self, handle: ContainerHandle) -> None:
        self._containers[handle.name] = handle

    def unregister(self, name: str) -> Optional[ContainerHandle]:
        return self._containers.pop(name, None)

    def find(self, name: str) -> Optional[ContainerHandle]:
        return self._containers.get(name)

    def names(self) -> list[str]:
        return list(self._containers)

    def ports(self) -> set[int]:
        return {handle.port for handle in self._containers.values()}

    def __contains__(self, name: object) -> bool:
        return name in self._containers

    def __len__(self) -> int:
        return len(self._containers)


class ContainerManager:
    """Provision, probe and tear down sandbox containers."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        settings: AgentSettings,
        *,
        registry: ContainerRegistry | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._runtime = runtime
        self._settings = settings
        self.registry = registry or ContainerRegistry()
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._closing = False
        self._starting: dict[str, int] = {}

    # ------------------------------------------------------------------
    def _allocate_port(self) -> int:
        taken = self.registry.ports() | set(self._starting.values())
        low, high = self._settings.port_min, self._settings.port_max
        for _ in range(32):
            port = self._rng.randint(low, high)
            if port not in taken:
                return port
        free = [port for port in range(low, high + 1) if port not in taken]
        if not free:
            raise ProvisioningError(f"No free port left in range {low}-{high}")
        return self._rng.choice(free)

    async def provision(self, name: str, mount_dir: Path, env: Mapping[str, str] | None = None) -> ContainerHandle:
        if self._closing:
            raise ProvisioningError("Container manager is shutting down")
        if name in self.registry or name in self._starting:
            raise ProvisioningError(f"Container {name!r} is already running")

        spec = ContainerSpec(
            name=name,
            image=self._settings.image,
            host_port=self._allocate_port(),
            internal_port=self._settings.internal_port,
            mount_source=Path(mount_dir).resolve(),
            mount_target=self._settings.mount_path,
            env=dict(env or {}),
        )
        self._starting[name] = spec.host_port
        try:
            handle = await self._runtime.start(spec)
        finally:
            self._starting.pop(name, None)
        if self._closing:
            # cleanup() already swept the registry while we were starting
            try:
                await self._runtime.stop(handle)
            except Exception as exc:  # noqa: BLE001 - the shutdown error below is what callers need
                logger.warning("Error stopping late container %s: %s", name, exc)
            raise ProvisioningError("Container manager is shutting down")
        self.registry.register(handle)
        logger.info("Container %s started on port %s", name, handle.port)
        return handle

    async def wait_ready(self, handle: ContainerHandle) -> None:
        attempts = self._settings.ready_attempts
        for attempt in range(1, attempts + 1):
            if await self._runtime.health_check(handle):
                logger.info("Container %s ready on port %s", handle.name, handle.port)
                return
            logger.debug("Container %s not ready (attempt %d/%d)", handle.name, attempt, attempts)
            if attempt < attempts:
                await self._sleep(self._settings.ready_interval_seconds)
        raise ReadinessTimeoutError(handle.port, attempts)

    async def stop(self, name: str) -> None:
        """Stop and forget a container; unknown names and runtime failures are tolerated."""
        handle = self.registry.find(name)
        if handle is None:
            return
        try:
            await self._runtime.stop(handle)
        except Exception as exc:  # noqa: BLE001 - teardown is best effort
            logger.warning("Error stopping container %s: %s", name, exc)
        else:
            logger.info("Container %s stopped", name)
        finally:
            self.registry.unregister(name)

    async def cleanup(self) -> None:
        self._closing = True
        names = self.registry.names()
        if names:
            results = await asyncio.gather(*(self.stop(name) for name in names), return_exceptions=True)
            for name, result in zip(names, results):
                if isinstance(result, BaseException):
                    logger.warning("Cleanup of container %s raised: %s", name, result)
                    self.registry.unregister(name)
        logger.info("All agent containers cleaned up")


__all__ = [
    "ContainerHandle",
    "ContainerManager",
    "ContainerRegistry",
    "ContainerRuntime",
    "ContainerSpec",
    "DockerRuntime",
]
