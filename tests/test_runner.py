"""Tests for ContainerRunner against the in-memory runtime."""

import asyncio

import pytest

from flotilla import ipc
from flotilla.protocol import OUTPUT_END_MARKER, OUTPUT_START_MARKER, wrap_output
from flotilla.runtime.base import ContainerSummary
from flotilla.runtime.runner import ContainerRunner, container_name
from flotilla.schemas import ContainerInput, ContainerOutput
from tests.conftest import FakeRuntime, wait_for


def make_input(agent_id: str = "agent-1", **overrides) -> ContainerInput:
    fields = dict(
        prompt="hello",
        agent_id=agent_id,
        agent_name="coder",
        model="test/model",
        system_prompt="You write code.",
    )
    fields.update(overrides)
    return ContainerInput(**fields)


@pytest.fixture
def runner_for(settings, secrets_provider):
    def build(runtime: FakeRuntime) -> ContainerRunner:
        return ContainerRunner(settings, runtime, secrets_provider)
    return build


class TestStreaming:

    async def test_outputs_delivered_in_order(self, runner_for):
        async def behavior(container):
            container.stdout("booting...\n")
            container.emit(ContainerOutput(status="success", result="one", conversation_id="c1"))
            container.emit(ContainerOutput(status="success", result="two"))
            container.exit(0)

        runner = runner_for(FakeRuntime(behavior))
        received: list[ContainerOutput] = []

        async def on_output(output):
            received.append(output)

        final = await runner.run_agent(make_input(), on_output)

        assert [o.result for o in received] == ["one", "two"]
        assert final.status == "success"
        assert final.result is None
        assert final.conversation_id == "c1"

    async def test_payload_split_across_frames(self, runner_for):
        text = wrap_output(ContainerOutput(status="success", result="split"))

        async def behavior(container):
            for i in range(0, len(text), 5):
                container.stdout(text[i:i + 5])
            container.exit(0)

        received: list[ContainerOutput] = []

        async def on_output(output):
            received.append(output)

        await runner_for(FakeRuntime(behavior)).run_agent(make_input(), on_output)
        assert [o.result for o in received] == ["split"]

    async def test_handler_error_does_not_stop_delivery(self, runner_for):
        async def behavior(container):
            container.emit(ContainerOutput(status="success", result="a"))
            container.emit(ContainerOutput(status="success", result="b"))
            container.exit(0)

        received: list[str] = []

        async def on_output(output):
            received.append(output.result)
            if output.result == "a":
                raise RuntimeError("telegram down")

        final = await runner_for(FakeRuntime(behavior)).run_agent(make_input(), on_output)
        assert received == ["a", "b"]
        assert final.status == "success"


    async def test_runaway_payload_does_not_block_later_outputs(self, runner_for, settings):
        settings.container_max_output_bytes = 1024

        async def behavior(container):
            container.stdout(f"{OUTPUT_START_MARKER}\n")
            for _ in range(16):
                container.stdout("x" * 4096)
            container.stdout(f"\n{OUTPUT_END_MARKER}\n")
            container.emit(ContainerOutput(status="success", result="after"))
            container.exit(0)

        received: list[str] = []

        async def on_output(output):
            received.append(output.result)

        final = await runner_for(FakeRuntime(behavior)).run_agent(make_input(), on_output)
        assert received == ["after"]
        assert final.status == "success"


class TestSpawn:

    async def test_stdin_carries_input_and_secrets(self, runner_for):
        runtime = FakeRuntime(_exit_ok)
        container_input = make_input()

        await runner_for(runtime).run_agent(container_input)

        container = runtime.containers[0]
        assert container.input.prompt == "hello"
        assert container.input.secrets == {"OPENROUTER_API_KEY": "sk-test"}
        assert container_input.secrets is None

    async def test_spec_mounts_and_labels(self, runner_for, settings):
        runtime = FakeRuntime(_exit_ok)
        await runner_for(runtime).run_agent(make_input())

        spec = runtime.containers[0].spec
        assert spec.name.startswith("flotilla-coder-")
        assert spec.labels["flotilla"] == "true"
        assert f"{settings.data_path / 'ipc' / 'agent-1'}:/workspace/ipc" in spec.binds
        assert spec.env["FLOTILLA_AGENT_ID"] == "agent-1"
        assert spec.env["FLOTILLA_IS_ORCHESTRATOR"] == "0"
        assert "sk-test" not in str(spec.env)

    async def test_create_failure_is_error_output(self, runner_for, secrets_provider):
        runtime = FakeRuntime()
        runtime.create_error = RuntimeError("no such image")
        container_input = make_input()

        output = await runner_for(runtime).run_agent(container_input)

        assert output.status == "error"
        assert output.error.startswith("Failed to create container:")
        assert "no such image" in output.error
        assert container_input.secrets is None

    async def test_start_failure_releases_attachment(self, runner_for):
        runtime = FakeRuntime()
        runtime.start_error = RuntimeError("port already allocated")

        output = await runner_for(runtime).run_agent(make_input())

        [container] = runtime.containers
        assert output.error.startswith("Failed to create container:")
        assert container.attachment.closed
        assert container.removed

    async def test_stale_close_sentinel_cleared(self, runner_for, settings):
        paths = ipc.AgentIpcPaths.for_agent(settings.ipc_root, "agent-1")
        ipc.request_close(paths)
        seen: list[bool] = []

        async def behavior(container):
            seen.append(paths.close_sentinel.exists())
            container.exit(0)

        await runner_for(FakeRuntime(behavior)).run_agent(make_input(), _ignore)
        assert seen == [False]

    def test_container_name_is_sanitized(self):
        assert container_name("my agent/v2").startswith("flotilla-my-agent-v2-")


class TestExitClassification:

    async def test_nonzero_exit_includes_stderr_tail(self, runner_for):
        async def behavior(container):
            container.stderr("Traceback...\nfatal: boom\n")
            container.exit(2)

        output = await runner_for(FakeRuntime(behavior)).run_agent(make_input(), _ignore)

        assert output.status == "error"
        assert output.error.startswith("Container exited with code 2:")
        assert "fatal: boom" in output.error

    async def test_one_shot_parses_last_payload(self, runner_for):
        async def behavior(container):
            container.emit(ContainerOutput(status="success", result="draft"))
            container.emit(ContainerOutput(status="success", result="final"))
            container.exit(0)

        output = await runner_for(FakeRuntime(behavior)).run_agent(make_input())
        assert output.result == "final"

    async def test_one_shot_unparseable_stdout(self, runner_for):
        async def behavior(container):
            container.stdout("nothing useful\n")
            container.exit(0)

        output = await runner_for(FakeRuntime(behavior)).run_agent(make_input())
        assert output.status == "error"
        assert output.error.startswith("Failed to parse output:")


class TestTimeouts:

    @pytest.fixture
    def short_timeouts(self, settings):
        settings.container_timeout_ms = 100
        settings.idle_timeout_ms = 100
        settings.idle_margin_ms = 0
        return settings

    async def test_silent_container_times_out(self, short_timeouts, runner_for):
        runtime = FakeRuntime(_silent)
        output = await runner_for(runtime).run_agent(make_input(), _ignore)

        assert output.status == "error"
        assert output.error == "Container timed out after 100ms"
        assert runtime.containers[0].stopped

    async def test_idle_after_output_is_success(self, short_timeouts, runner_for):
        async def behavior(container):
            container.emit(ContainerOutput(status="success", result="done", conversation_id="c9"))

        output = await runner_for(FakeRuntime(behavior)).run_agent(make_input(), _ignore)

        assert output.status == "success"
        assert output.result is None
        assert output.conversation_id == "c9"

    async def test_failed_stop_escalates_to_kill(self, short_timeouts, runner_for):
        runtime = FakeRuntime(_silent)
        runtime.stop_error = RuntimeError("stop timed out")

        await runner_for(runtime).run_agent(make_input(), _ignore)
        assert runtime.containers[0].killed

    def test_hard_timeout_floor(self, settings, runner_for):
        settings.container_timeout_ms = 10
        settings.idle_timeout_ms = 5_000
        settings.idle_margin_ms = 500
        assert runner_for(FakeRuntime()).effective_timeout_ms(False) == 5_500


class TestSignalling:

    def test_follow_up_written_to_input_dir(self, runner_for, settings):
        runner = runner_for(FakeRuntime())
        assert runner.send_follow_up("agent-1", "and another thing") is True

        input_dir = ipc.AgentIpcPaths.for_agent(settings.ipc_root, "agent-1").input_dir
        messages = ipc.drain_messages(input_dir, errors_dir=settings.ipc_root / "errors")
        assert [m.text for m in messages] == ["and another thing"]

    def test_request_close_writes_sentinel(self, runner_for, settings):
        runner_for(FakeRuntime()).request_close("agent-1")
        assert ipc.AgentIpcPaths.for_agent(settings.ipc_root, "agent-1").close_sentinel.exists()

    async def test_runs_serialized_per_agent(self, runner_for):
        release = asyncio.Event()

        async def behavior(container):
            await release.wait()
            container.exit(0)

        runtime = FakeRuntime(behavior)
        runner = runner_for(runtime)
        first = asyncio.create_task(runner.run_agent(make_input(), _ignore))
        second = asyncio.create_task(runner.run_agent(make_input(), _ignore))

        await wait_for(lambda: len(runtime.containers) == 1)
        assert runner.is_running("agent-1")
        await asyncio.sleep(0.05)
        assert len(runtime.containers) == 1

        release.set()
        await asyncio.gather(first, second)
        assert len(runtime.containers) == 2
        assert not runner.is_running("agent-1")


class TestOrphanCleanup:

    async def test_stops_running_and_removes_created(self, runner_for):
        runtime = FakeRuntime()
        runtime.orphans = [
            ContainerSummary(id="o1", name="flotilla-a-1", state="running"),
            ContainerSummary(id="o2", name="flotilla-b-2", state="exited"),
            ContainerSummary(id="o3", name="flotilla-c-3", state="created"),
        ]

        removed = await runner_for(runtime).cleanup_orphans()

        assert removed == 2
        assert runtime.stopped_ids == ["o1"]
        assert runtime.removed_ids == ["o1", "o3"]

    async def test_one_failure_does_not_stop_cleanup(self, runner_for):
        runtime = FakeRuntime()
        runtime.stop_error = RuntimeError("daemon busy")
        runtime.orphans = [
            ContainerSummary(id="o1", name="flotilla-a-1", state="running"),
            ContainerSummary(id="o2", name="flotilla-b-2", state="created"),
        ]

        assert await runner_for(runtime).cleanup_orphans() == 1
        assert runtime.removed_ids == ["o2"]


async def _ignore(output: ContainerOutput) -> None:
    pass


async def _exit_ok(container) -> None:
    container.exit(0)


async def _silent(container) -> None:
    pass
