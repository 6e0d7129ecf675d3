"""Tests for agent/task snapshots mirrored into IPC directories."""

import json

import pytest_asyncio

from flotilla import ipc
from flotilla.formatting import excerpt, format_outbound, strip_internal
from flotilla.snapshots import SnapshotWriter


@pytest_asyncio.fixture
async def writer(store, settings) -> SnapshotWriter:
    return SnapshotWriter(store, settings.ipc_root)


def read(settings, agent, filename) -> dict:
    root = ipc.AgentIpcPaths.for_agent(settings.ipc_root, str(agent.id)).root
    return json.loads((root / filename).read_text())


class TestSnapshots:

    async def test_agents_roster(self, writer, store, settings, orchestrator_agent):
        await store.agents.create(
            "coder", "You write code.", "test/coder",
            tool_servers=[{"name": "git", "transport": "stdio", "command": "mcp-git"}],
        )

        await writer.write_agents()

        roster = read(settings, orchestrator_agent, ipc.AGENTS_SNAPSHOT)
        [entry] = roster["agents"]
        assert entry["name"] == "coder"
        assert entry["tool_servers"] == ["git"]
        assert entry["created_at"].endswith("+00:00")
        assert "last_sync" in roster

    async def test_orchestrator_sees_all_tasks(self, writer, store, settings, orchestrator_agent):
        coder = await store.agents.create("coder", "p", "m")
        await store.tasks.create(orchestrator_agent.id, "mine", "interval", "60000")
        await store.tasks.create(coder.id, "theirs", "cron", "0 9 * * *")

        await writer.refresh_tasks(coder)

        everything = read(settings, orchestrator_agent, ipc.TASKS_SNAPSHOT)["tasks"]
        assert sorted((t["agent"], t["prompt"]) for t in everything) == [("Nano", "mine"), ("coder", "theirs")]
        [own] = read(settings, coder, ipc.TASKS_SNAPSHOT)["tasks"]
        assert own["prompt"] == "theirs"
        assert own["status"] == "active"
        assert own["last_run"] is None

    async def test_no_orchestrator_no_roster(self, writer, settings):
        await writer.write_agents()
        assert not settings.ipc_root.exists() or not any(settings.ipc_root.rglob(ipc.AGENTS_SNAPSHOT))


class TestFormatting:

    def test_strip_internal(self):
        assert strip_internal("a <internal>x\ny</internal> b") == "a  b"
        assert strip_internal("<internal>only</internal>\n") == ""

    def test_format_outbound(self):
        assert format_outbound("  Done <internal>checked twice</internal>") == "Done"

    def test_excerpt(self):
        assert excerpt("short") == "short"
        assert excerpt("many   spaces\nand lines") == "many spaces and lines"
        assert excerpt("x" * 120, 100) == "x" * 100 + "..."
