"""Shared fixtures: sqlite-backed store, in-memory container runtime, mock channel."""

import asyncio
import itertools
from collections.abc import Awaitable, Callable
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from flotilla import ipc
from flotilla.config import Settings
from flotilla.protocol import wrap_output
from flotilla.runtime.base import STDERR, STDOUT, ContainerSpec, ContainerSummary
from flotilla.schemas import ContainerInput, ContainerOutput
from flotilla.storage.database import Database
from flotilla.storage.store import Store

# ---------------------------------------------------------------------------
# Settings / database
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings rooted in tmp_path with a per-test sqlite database."""
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'flotilla.db'}",
        data_dir=str(tmp_path / "data"),
        container_timeout_ms=60_000,
        idle_timeout_ms=60_000,
        idle_margin_ms=1_000,
        orchestrator_ttl_ms=60_000,
        ipc_poll_interval_ms=10,
        agent_ipc_poll_interval_ms=10,
        scheduler_poll_interval_ms=10,
        OPENROUTER_API_KEY="sk-test",
        TELEGRAM_BOT_TOKEN="123:test",
    )


@pytest_asyncio.fixture
async def db(settings):
    database = Database(settings)
    await database.connect()
    await database.create_all()
    yield database
    await database.disconnect()


@pytest_asyncio.fixture
async def store(db, settings) -> Store:
    return Store(db, timezone=settings.timezone)


@pytest_asyncio.fixture
async def orchestrator_agent(store):
    return await store.agents.ensure_orchestrator("Nano", "You are Nano.", "test/orchestrator-model")


# ---------------------------------------------------------------------------
# Fake container runtime
# ---------------------------------------------------------------------------


class FakeAttachment:
    def __init__(self) -> None:
        self.stdin = bytearray()
        self.input_closed = asyncio.Event()
        self.closed = False
        self._frames: asyncio.Queue = asyncio.Queue()

    async def send(self, data: bytes) -> None:
        self.stdin.extend(data)

    async def close_input(self) -> None:
        self.input_closed.set()

    async def frames(self):
        while (frame := await self._frames.get()) is not None:
            yield frame

    async def close(self) -> None:
        self.closed = True


class FakeContainer:
    """One fake container; tests script it through stdout()/stderr()/exit()."""

    def __init__(self, container_id: str, spec: ContainerSpec) -> None:
        self.id = container_id
        self.spec = spec
        self.attachment = FakeAttachment()
        self.exit_code: asyncio.Future = asyncio.get_running_loop().create_future()
        self.started = False
        self.stopped = False
        self.killed = False
        self.removed = False

    @property
    def input(self) -> ContainerInput:
        return ContainerInput.model_validate_json(bytes(self.attachment.stdin))

    @property
    def running(self) -> bool:
        return self.started and not self.exit_code.done()

    def stdout(self, data: str | bytes) -> None:
        raw = data.encode() if isinstance(data, str) else data
        self.attachment._frames.put_nowait((STDOUT, raw))

    def stderr(self, data: str) -> None:
        self.attachment._frames.put_nowait((STDERR, data.encode()))

    def emit(self, output: ContainerOutput) -> None:
        self.stdout(wrap_output(output))

    def exit(self, code: int = 0) -> None:
        if self.exit_code.done():
            return
        self.attachment._frames.put_nowait(None)
        self.exit_code.set_result(code)


Behavior = Callable[[FakeContainer], Awaitable[None]]


class FakeRuntime:
    """In-memory ContainerRuntime. ``behavior`` runs once stdin is closed."""

    def __init__(self, behavior: Behavior | None = None) -> None:
        self.behavior = behavior
        self.containers: list[FakeContainer] = []
        self.create_error: Exception | None = None
        self.start_error: Exception | None = None
        self.stop_error: Exception | None = None
        self.orphans: list[ContainerSummary] = []
        self.removed_ids: list[str] = []
        self.stopped_ids: list[str] = []
        self._ids = itertools.count(1)
        self._tasks: set[asyncio.Task] = set()

    def _get(self, container_id: str) -> FakeContainer | None:
        return next((c for c in self.containers if c.id == container_id), None)

    async def ping(self) -> None:
        pass

    async def create(self, spec: ContainerSpec) -> str:
        if self.create_error is not None:
            raise self.create_error
        container = FakeContainer(f"fake-{next(self._ids)}", spec)
        self.containers.append(container)
        return container.id

    async def attach(self, container_id: str) -> FakeAttachment:
        return self._get(container_id).attachment

    async def start(self, container_id: str) -> None:
        if self.start_error is not None:
            raise self.start_error
        container = self._get(container_id)
        container.started = True
        if self.behavior is not None:
            task = asyncio.create_task(self._drive(container))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _drive(self, container: FakeContainer) -> None:
        await container.attachment.input_closed.wait()
        await self.behavior(container)

    async def wait(self, container_id: str) -> int:
        return await self._get(container_id).exit_code

    async def stop(self, container_id: str, grace_s: int) -> None:
        self.stopped_ids.append(container_id)
        if self.stop_error is not None:
            raise self.stop_error
        container = self._get(container_id)
        if container is not None:
            container.stopped = True
            container.exit(137)

    async def kill(self, container_id: str) -> None:
        container = self._get(container_id)
        if container is not None:
            container.killed = True
            container.exit(137)

    async def remove(self, container_id: str) -> None:
        self.removed_ids.append(container_id)
        container = self._get(container_id)
        if container is not None:
            container.removed = True

    async def list_labeled(self, label: str) -> list[ContainerSummary]:
        return list(self.orphans)


def host_ipc_paths(container: FakeContainer) -> ipc.AgentIpcPaths:
    """The host side of a container's /workspace/ipc bind mount."""
    host, _ = container.spec.binds[0].split(":", 1)
    return ipc.AgentIpcPaths(Path(host))


async def echo_agent(container: FakeContainer) -> None:
    """Acts like a real agent: answers its prompt and every follow-up, exits on close."""
    paths = host_ipc_paths(container)
    container_input = container.input
    container.emit(ContainerOutput(
        status="success",
        result=f"echo: {container_input.prompt}",
        conversation_id=container_input.conversation_id,
    ))
    while not container.exit_code.done():
        if ipc.consume_close(paths):
            container.exit(0)
            return
        for message in ipc.drain_messages(paths.input_dir, errors_dir=paths.errors_dir):
            container.emit(ContainerOutput(status="success", result=f"echo: {message.text}"))
        await asyncio.sleep(0.01)


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def secrets_provider() -> AsyncMock:
    return AsyncMock(return_value={"OPENROUTER_API_KEY": "sk-test"})


@pytest.fixture
def channel() -> AsyncMock:
    """Messaging front-end double (send_message / send_photo / set_typing)."""
    mock = AsyncMock()
    mock.send_message = AsyncMock()
    mock.send_photo = AsyncMock()
    mock.set_typing = AsyncMock()
    return mock


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true or fail the test."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def wait_for_async(predicate: Callable[[], Awaitable[bool]], timeout: float = 2.0) -> None:
    """wait_for() for predicates that need to hit the store."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
