"""Container runtime interfaces.

``ContainerRuntime`` is the small surface the lifecycle manager needs from a
container engine. ``DockerEngine`` implements it against the Docker Engine
API; tests plug in an in-memory fake.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Protocol

# Multiplexed attach stream types
STDIN = 0
STDOUT = 1
STDERR = 2

Frame = tuple[int, bytes]


@dataclass
class ContainerSpec:
    name: str
    image: str
    env: dict[str, str] = field(default_factory=dict)
    binds: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    network_mode: str = "host"
    auto_remove: bool = True


@dataclass
class ContainerSummary:
    id: str
    name: str
    state: str
    labels: dict[str, str] = field(default_factory=dict)


class Attachment(Protocol):
    """A hijacked stdin/stdout/stderr connection to one container."""

    async def send(self, data: bytes) -> None: ...

    async def close_input(self) -> None: ...

    def frames(self) -> AsyncIterator[Frame]: ...

    async def close(self) -> None: ...


class ContainerRuntime(Protocol):
    async def ping(self) -> None: ...

    async def create(self, spec: ContainerSpec) -> str: ...

    async def attach(self, container_id: str) -> Attachment: ...

    async def start(self, container_id: str) -> None: ...

    async def wait(self, container_id: str) -> int: ...

    async def stop(self, container_id: str, grace_s: int) -> None: ...

    async def kill(self, container_id: str) -> None: ...

    async def remove(self, container_id: str) -> None: ...

    async def list_labeled(self, label: str) -> list[ContainerSummary]: ...
