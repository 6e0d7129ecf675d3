"""Tests for the host IPC watcher's routing and poll loop."""

from unittest.mock import AsyncMock

import pytest

from flotilla import ipc
from flotilla.handlers.ipc_watcher import IpcWatcher
from tests.conftest import wait_for


@pytest.fixture
def orchestrator() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def task_commands() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def watcher(settings, orchestrator, task_commands) -> IpcWatcher:
    return IpcWatcher(settings, orchestrator, task_commands)


def agent_paths(settings, agent_id: str) -> ipc.AgentIpcPaths:
    paths = ipc.AgentIpcPaths.for_agent(settings.ipc_root, agent_id)
    ipc.prepare(paths)
    return paths


class TestIpcWatcher:

    async def test_routes_chat_and_task_envelopes(self, watcher, settings, orchestrator, task_commands):
        paths = agent_paths(settings, "agent-a")
        ipc.write_json_atomic(paths.messages_dir / "1000-aaaaaa.json", {"type": "message", "text": "hello"})
        ipc.write_json_atomic(paths.messages_dir / "1001-aaaaaa.json",
                              {"type": "delegate_to_agent", "target_agent": "coder", "task": "t"})
        ipc.write_json_atomic(paths.tasks_dir / "1002-aaaaaa.json", {"type": "pause_task", "task_id": "t1"})

        assert await watcher.poll_once() == 3

        routed = [(call.args[0].type, call.args[1]) for call in orchestrator.handle_ipc_envelope.await_args_list]
        assert routed == [("message", "agent-a"), ("delegate_to_agent", "agent-a")]
        [call] = task_commands.handle.await_args_list
        assert call.args[0].type == "pause_task"
        assert call.args[1] == "agent-a"

    async def test_messages_before_tasks(self, watcher, settings, orchestrator, task_commands):
        order = []
        orchestrator.handle_ipc_envelope.side_effect = lambda e, s: order.append(e.type)
        task_commands.handle.side_effect = lambda e, s: order.append(e.type)
        paths = agent_paths(settings, "agent-a")
        ipc.write_json_atomic(paths.tasks_dir / "1000-aaaaaa.json", {"type": "cancel_task", "task_id": "x"})
        ipc.write_json_atomic(paths.messages_dir / "2000-aaaaaa.json", {"type": "message", "text": "m"})

        await watcher.poll_once()
        assert order == ["message", "cancel_task"]

    async def test_source_is_directory_name(self, watcher, settings, orchestrator):
        for agent_id in ("agent-b", "agent-a"):
            paths = agent_paths(settings, agent_id)
            ipc.write_envelope(paths.messages_dir, {"type": "message", "text": agent_id})

        await watcher.poll_once()

        sources = [call.args[1] for call in orchestrator.handle_ipc_envelope.await_args_list]
        assert sources == ["agent-a", "agent-b"]

    async def test_handler_failure_quarantines_with_agent_label(self, watcher, settings, orchestrator):
        orchestrator.handle_ipc_envelope.side_effect = RuntimeError("telegram down")
        paths = agent_paths(settings, "agent-a")
        ipc.write_json_atomic(paths.messages_dir / "1000-aaaaaa.json", {"type": "message", "text": "x"})

        assert await watcher.poll_once() == 0
        assert (settings.ipc_root / "errors" / "agent-a-1000-aaaaaa.json").exists()
        assert ipc.pending_files(paths.messages_dir) == []

    async def test_errors_dir_is_not_an_agent(self, watcher, settings):
        agent_paths(settings, "agent-a")
        (settings.ipc_root / "errors").mkdir()
        assert [p.name for p in watcher.agent_dirs()] == ["agent-a"]

    async def test_poll_loop_start_stop(self, watcher, settings, orchestrator):
        await watcher.start()
        try:
            paths = agent_paths(settings, "agent-a")
            ipc.write_envelope(paths.messages_dir, {"type": "message", "text": "late"})
            await wait_for(lambda: orchestrator.handle_ipc_envelope.await_count == 1)
        finally:
            await watcher.stop()
