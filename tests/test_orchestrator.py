"""Tests for the orchestrator session: spawn, follow-ups, clear, delegation, envelopes."""

import asyncio
from types import SimpleNamespace

import pytest_asyncio

from flotilla import ipc
from flotilla.agent_queue import ContainerQueue
from flotilla.orchestrator import CHAT_STATE_KEY, CLEARED_NOTICE, ERROR_NOTICE, Orchestrator
from flotilla.registry import ToolServerRegistry
from flotilla.runtime.runner import ContainerRunner
from flotilla.schemas import ContainerOutput, DelegateEnvelope, ImageEnvelope, MediaRef, MessageEnvelope
from flotilla.snapshots import SnapshotWriter
from tests.conftest import FakeRuntime, echo_agent, host_ipc_paths, wait_for, wait_for_async

CHAT = "42"


def sent(channel) -> list[str]:
    return [call.args[1] for call in channel.send_message.await_args_list]


@pytest_asyncio.fixture
async def harness(settings, store, orchestrator_agent, channel, secrets_provider):
    runtime = FakeRuntime(echo_agent)
    runner = ContainerRunner(settings, runtime, secrets_provider)
    queue = ContainerQueue(5)
    orchestrator = Orchestrator(
        settings, store, runner, queue,
        ToolServerRegistry(store), SnapshotWriter(store, settings.ipc_root), channel,
    )
    await orchestrator.start()
    yield SimpleNamespace(
        orchestrator=orchestrator, runtime=runtime, runner=runner, queue=queue,
        channel=channel, store=store, settings=settings, agent=orchestrator_agent,
    )
    await orchestrator.shutdown()
    await queue.join()


async def converse(h, text: str) -> None:
    await h.orchestrator.handle_message(CHAT, "alice", text)
    await wait_for(lambda: f"echo: {text}" in sent(h.channel))


class TestSpawnAndFollowUp:

    async def test_first_message_spawns_orchestrator(self, harness):
        await converse(harness, "hi there")

        [container] = harness.runtime.containers
        container_input = container.input
        assert container_input.is_orchestrator is True
        assert container_input.model == "test/orchestrator-model"
        assert "## Available Specialist Agents" in container_input.system_prompt
        assert container_input.tool_servers[0].name == "flotilla_ipc"
        assert harness.orchestrator.session.running

    async def test_follow_up_reuses_running_container(self, harness):
        await converse(harness, "first")
        await converse(harness, "second")

        assert len(harness.runtime.containers) == 1
        assert sent(harness.channel) == ["echo: first", "echo: second"]

    async def test_turns_and_log_recorded(self, harness):
        await converse(harness, "remember me")
        conversation_id = harness.orchestrator.session.conversation_id

        async def both_turns():
            return len(await harness.store.conversations.get_turns(conversation_id)) == 2

        await wait_for_async(both_turns)
        user, assistant = await harness.store.conversations.get_turns(conversation_id)
        assert user["role"] == "user" and user["sender"] == "alice"
        assert (assistant["role"], assistant["content"]) == ("assistant", "echo: remember me")

        log = await harness.store.messages.recent(CHAT)
        assert [(m.direction, m.content) for m in log] == [
            ("inbound", "remember me"),
            ("outbound", "echo: remember me"),
        ]

    async def test_chat_id_persisted(self, harness):
        await converse(harness, "hello")
        assert await harness.store.state.get(CHAT_STATE_KEY) == CHAT

    async def test_media_staged_into_ipc_dir(self, harness, tmp_path):
        photo = tmp_path / "photo.jpg"
        photo.write_bytes(b"jpeg")

        await harness.orchestrator.handle_message(CHAT, "alice", "what is this?", [MediaRef(path=str(photo))])
        await wait_for(lambda: "echo: what is this?" in sent(harness.channel))

        [ref] = harness.runtime.containers[0].input.media
        assert ref.path.startswith("/workspace/ipc/media/")
        staged = harness.runner.ipc_paths(str(harness.agent.id)).media_dir / ref.path.rsplit("/", 1)[1]
        assert staged.read_bytes() == b"jpeg"

    async def test_model_switch_applies_on_next_spawn(self, harness):
        await harness.orchestrator.handle_message(CHAT, "alice", "/model other/model")
        assert sent(harness.channel)[0].startswith("Model switched from `test/orchestrator-model`")

        await converse(harness, "hi")
        assert harness.runtime.containers[0].input.model == "other/model"

    async def test_spawn_failure_sends_error_notice(self, harness):
        harness.runtime.create_error = RuntimeError("image missing")

        await harness.orchestrator.handle_message(CHAT, "alice", "hello?")
        await wait_for(lambda: ERROR_NOTICE in sent(harness.channel))
        await wait_for(lambda: not harness.orchestrator.session.running)

    async def test_idle_timer_closes_container(self, harness):
        harness.settings.idle_timeout_ms = 100
        await converse(harness, "ping")

        container = harness.runtime.containers[0]
        await wait_for(lambda: not container.running, timeout=3.0)
        await wait_for(lambda: not harness.orchestrator.session.running)


class TestCommands:

    async def test_status_does_not_spawn(self, harness):
        await harness.orchestrator.handle_message(CHAT, "alice", "/status")

        assert sent(harness.channel)[0].startswith("*Nano Status*")
        assert harness.runtime.containers == []

    async def test_delegate_command_forwards_rewritten_text(self, harness):
        await harness.store.agents.create("coder", "You write code.", "test/coder")

        await harness.orchestrator.handle_message(CHAT, "alice", "/delegate coder fix the tests")
        await wait_for(lambda: len(sent(harness.channel)) >= 2)

        assert sent(harness.channel)[0] == "Delegating to *coder*: fix the tests"
        assert harness.runtime.containers[0].input.prompt == "Please delegate this to coder: fix the tests"

    async def test_unknown_slash_text_goes_to_agent(self, harness):
        await converse(harness, "/frobnicate")
        assert len(harness.runtime.containers) == 1


class TestClear:

    async def test_clear_closes_and_rolls_conversation(self, harness):
        await converse(harness, "before")
        old_conversation = harness.orchestrator.session.conversation_id
        container = harness.runtime.containers[0]

        await harness.orchestrator.handle_message(CHAT, "alice", "/clear")

        assert CLEARED_NOTICE in sent(harness.channel)
        await wait_for(lambda: not container.running)

        summarized = await harness.store.conversations.get(old_conversation)
        assert summarized.status == "summarized"
        assert summarized.summary.startswith("Conversation cleared by user on")
        assert harness.orchestrator.session.conversation_id not in (None, old_conversation)
        [memory] = await harness.store.memories.recent()
        assert memory.memory_type == "conversation_summary"
        assert memory.metadata_ == {"conversation_id": old_conversation}

    async def test_message_after_clear_spawns_fresh_container(self, harness):
        await converse(harness, "before")
        await harness.orchestrator.handle_message(CHAT, "alice", "/clear")
        await converse(harness, "after")

        assert len(harness.runtime.containers) == 2
        assert harness.orchestrator.session.running

    async def test_draining_container_never_answers_after_clear(self, harness):
        release = asyncio.Event()
        first_container = None

        async def busy_then_echo(container):
            nonlocal first_container
            if first_container is not None:
                await echo_agent(container)
                return
            # The pre-clear container is stuck in a tool call, then drains input and closes
            first_container = container
            paths = host_ipc_paths(container)
            container.emit(ContainerOutput(status="success", result=f"echo: {container.input.prompt}"))
            await release.wait()
            for message in ipc.drain_messages(paths.input_dir, errors_dir=paths.errors_dir):
                container.emit(ContainerOutput(status="success", result=f"OLD echo: {message.text}"))
            await wait_for(lambda: ipc.consume_close(paths))
            container.exit(0)

        harness.runtime.behavior = busy_then_echo
        await converse(harness, "before")
        await harness.orchestrator.handle_message(CHAT, "alice", "/clear")
        await harness.orchestrator.handle_message(CHAT, "alice", "new1")
        await harness.orchestrator.handle_message(CHAT, "alice", "new2")

        assert len(harness.runtime.containers) == 1
        release.set()
        await wait_for(lambda: "echo: new2" in sent(harness.channel))

        assert sent(harness.channel) == ["echo: before", CLEARED_NOTICE, "echo: new1", "echo: new2"]
        assert len(harness.runtime.containers) == 2

    async def test_unread_follow_up_dropped_by_clear(self, harness):
        release = asyncio.Event()

        async def wait_then_echo(container):
            await release.wait()
            await echo_agent(container)

        harness.runtime.behavior = wait_then_echo
        await harness.orchestrator.handle_message(CHAT, "alice", "first")
        await harness.orchestrator.handle_message(CHAT, "alice", "second")
        await harness.orchestrator.handle_message(CHAT, "alice", "/clear")
        await harness.orchestrator.handle_message(CHAT, "alice", "third")
        release.set()

        await wait_for(lambda: "echo: third" in sent(harness.channel))
        assert "echo: second" not in sent(harness.channel)

    async def test_second_clear_drops_held_follow_ups(self, harness):
        release = asyncio.Event()

        async def wait_then_echo(container):
            await release.wait()
            await echo_agent(container)

        harness.runtime.behavior = wait_then_echo
        await harness.orchestrator.handle_message(CHAT, "alice", "first")
        await harness.orchestrator.handle_message(CHAT, "alice", "/clear")
        await harness.orchestrator.handle_message(CHAT, "alice", "new1")
        await harness.orchestrator.handle_message(CHAT, "alice", "new2")
        await harness.orchestrator.handle_message(CHAT, "alice", "/clear")
        await harness.orchestrator.handle_message(CHAT, "alice", "latest")
        release.set()

        await wait_for(lambda: "echo: latest" in sent(harness.channel))
        assert "echo: new1" not in sent(harness.channel)
        assert "echo: new2" not in sent(harness.channel)
        # The superseded run for new1 never started a container
        assert [c.input.prompt for c in harness.runtime.containers] == ["first", "latest"]

    async def test_clear_when_idle(self, harness):
        await harness.orchestrator.clear(CHAT)
        assert sent(harness.channel) == [CLEARED_NOTICE]

    async def test_shutdown_summarizes(self, harness):
        await converse(harness, "bye")
        conversation_id = harness.orchestrator.session.conversation_id

        await harness.orchestrator.shutdown()

        conversation = await harness.store.conversations.get(conversation_id)
        assert conversation.summary.startswith("Conversation ended due to system shutdown on")
        assert not harness.orchestrator.session.running


class TestDelegation:

    async def test_unknown_agent_relays_not_found(self, harness):
        await harness.store.agents.create("coder", "You write code.", "test/coder")
        await converse(harness, "start")

        assert await harness.orchestrator.delegate("ghost", "do things") is False

        expected = 'echo: Agent "ghost" not found. Available agents: coder'
        await wait_for(lambda: expected in sent(harness.channel))
        assert len(harness.runtime.containers) == 1

    async def test_orchestrator_is_not_a_delegation_target(self, harness):
        assert await harness.orchestrator.delegate("Nano", "recurse") is False
        assert harness.runtime.containers == []

    async def test_specialist_result_relayed_to_orchestrator(self, harness):
        await harness.store.agents.create("coder", "You write code.", "test/coder")
        await converse(harness, "start")

        assert await harness.orchestrator.delegate("coder", "write tests") is True

        expected = "echo: [SPECIALIST RESULT from coder]\necho: write tests"
        await wait_for(lambda: expected in sent(harness.channel))
        orchestrator_container, specialist = harness.runtime.containers
        assert specialist.input.agent_name == "coder"
        assert specialist.input.is_orchestrator is False
        assert specialist.input.system_prompt == "You write code."
        # Specialists are closed after their first answer
        await wait_for(lambda: not specialist.running)
        assert orchestrator_container.running

    async def test_specialist_failure_relayed(self, harness):
        await harness.store.agents.create("coder", "You write code.", "test/coder")
        await converse(harness, "start")
        harness.runtime.create_error = RuntimeError("no capacity")

        await harness.orchestrator.delegate("coder", "write tests")

        await wait_for(lambda: any("[SPECIALIST ERROR from coder]" in text for text in sent(harness.channel)))

    async def test_delegate_envelope_dispatch(self, harness):
        await harness.store.agents.create("coder", "You write code.", "test/coder")
        await harness.orchestrator.handle_ipc_envelope(
            DelegateEnvelope(target_agent="coder", task="lint", wait_for_result=False), str(harness.agent.id),
        )
        await wait_for(lambda: len(harness.runtime.containers) == 1)
        assert harness.runtime.containers[0].input.prompt == "lint"


class TestEnvelopes:

    async def test_message_envelope_formatted_and_logged(self, harness):
        harness.orchestrator.session.chat_id = CHAT
        coder = await harness.store.agents.create("coder", "You write code.", "test/coder")
        envelope = MessageEnvelope(text="Progress <internal>secret</internal>50%", agent_name="coder")

        await harness.orchestrator.handle_ipc_envelope(envelope, str(coder.id))

        assert sent(harness.channel) == ["Progress 50%"]
        [entry] = await harness.store.messages.recent(CHAT)
        assert entry.sender == "coder"
        assert entry.direction == "outbound"

    async def test_internal_only_message_not_sent(self, harness):
        harness.orchestrator.session.chat_id = CHAT
        await harness.orchestrator.handle_ipc_envelope(
            MessageEnvelope(text="<internal>thinking</internal>"), str(harness.agent.id),
        )
        assert sent(harness.channel) == []

    async def test_notify_without_chat(self, harness):
        assert await harness.orchestrator.notify("hello") is False

    async def test_image_under_ipc_dir_is_sent(self, harness):
        harness.orchestrator.session.chat_id = CHAT
        agent_id = str(harness.agent.id)
        media_dir = harness.runner.ipc_paths(agent_id).media_dir
        media_dir.mkdir(parents=True, exist_ok=True)
        (media_dir / "chart.png").write_bytes(b"png")

        await harness.orchestrator.handle_ipc_envelope(
            ImageEnvelope(path="/workspace/ipc/media/chart.png", caption="Sales"), agent_id,
        )

        harness.channel.send_photo.assert_awaited_once_with(CHAT, str((media_dir / "chart.png").resolve()), "Sales")

    async def test_image_outside_ipc_dir_rejected(self, harness):
        harness.orchestrator.session.chat_id = CHAT
        for path in ("/etc/passwd", "/workspace/ipc/../../etc/passwd"):
            await harness.orchestrator.handle_ipc_envelope(ImageEnvelope(path=path), str(harness.agent.id))
        harness.channel.send_photo.assert_not_awaited()

    async def test_photo_failure_falls_back_to_caption(self, harness):
        harness.orchestrator.session.chat_id = CHAT
        agent_id = str(harness.agent.id)
        media_dir = harness.runner.ipc_paths(agent_id).media_dir
        media_dir.mkdir(parents=True, exist_ok=True)
        (media_dir / "a.png").write_bytes(b"png")
        harness.channel.send_photo.side_effect = RuntimeError("too large")

        await harness.orchestrator.handle_ipc_envelope(ImageEnvelope(path="/workspace/ipc/media/a.png"), agent_id)

        assert sent(harness.channel) == ["[Image generated]"]

