"""Container lifecycle: spawn one agent container, stream its results, classify its exit.

A run goes Spawning -> Running -> (Running | WindingDown) -> Exited:

  1. Prepare the agent's IPC + workspace dirs and clear a stale close sentinel.
  2. Create, attach, start; write ContainerInput (with secrets) to stdin, close stdin.
  3. Pump the attach stream: stdout chunks feed an incremental marker parser,
     each complete payload becomes a ContainerOutput that is delivered, in
     order, to ``on_output`` and resets the watchdog. stderr is logged.
  4. The watchdog stops (then kills) the container after ``timeout_ms`` of
     no output.
  5. When the container exits the run is classified into one ContainerOutput.

Runs for the same agent id are serialized so two containers never share an
IPC directory.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import re
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError

from flotilla import ipc
from flotilla.config import Settings
from flotilla.protocol import MarkerParser, parse_final_output
from flotilla.runtime.base import STDERR, STDOUT, Attachment, ContainerRuntime, ContainerSpec
from flotilla.schemas import ContainerInput, ContainerOutput, MediaRef, MessageEnvelope

logger = logging.getLogger(__name__)

OutputCallback = Callable[[ContainerOutput], Awaitable[None]]
SecretsProvider = Callable[[], Awaitable[dict[str, str]]]

CONTAINER_LABEL = "flotilla"
CONTAINER_WORKSPACE_DIR = "/workspace/agent"

_DRAIN_TIMEOUT_S = 10.0


def container_name(agent_name: str) -> str:
    safe = re.sub(r"[^a-zA-Z0-9-]", "-", agent_name)
    return f"flotilla-{safe}-{int(time.time() * 1000)}"


class _CappedBuffer:
    """Byte accumulator that stops growing at ``limit``."""

    def __init__(self, limit: int) -> None:
        self._limit = limit
        self._data = bytearray()
        self.truncated = False

    def append(self, chunk: bytes) -> bool:
        """Append; returns True only on the call that hits the cap."""
        if self.truncated:
            return False
        remaining = self._limit - len(self._data)
        if len(chunk) > remaining:
            self._data.extend(chunk[:remaining])
            self.truncated = True
            return True
        self._data.extend(chunk)
        return False

    def text(self) -> str:
        return self._data.decode("utf-8", errors="replace")


@dataclass
class _RunState:
    stdout: _CappedBuffer
    stderr: _CappedBuffer
    activity: asyncio.Event = field(default_factory=asyncio.Event)
    had_output: bool = False
    conversation_id: str | None = None
    timed_out: bool = False


class ContainerRunner:
    """Spawns agent containers and supervises them to completion."""

    def __init__(
        self,
        settings: Settings,
        runtime: ContainerRuntime,
        secrets_provider: SecretsProvider,
    ) -> None:
        self._settings = settings
        self._runtime = runtime
        self._secrets_provider = secrets_provider
        self._agent_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def ipc_paths(self, agent_id: str) -> ipc.AgentIpcPaths:
        return ipc.AgentIpcPaths.for_agent(self._settings.ipc_root, agent_id)

    def workspace_dir(self, agent_id: str) -> Path:
        return self._settings.data_path / "workspaces" / agent_id

    def effective_timeout_ms(self, is_orchestrator: bool) -> int:
        """Hard timeout never undercuts idle timeout plus margin."""
        configured = (
            self._settings.orchestrator_ttl_ms if is_orchestrator
            else self._settings.container_timeout_ms
        )
        return max(configured, self._settings.idle_timeout_ms + self._settings.idle_margin_ms)

    def is_running(self, agent_id: str) -> bool:
        lock = self._agent_locks.get(agent_id)
        return lock is not None and lock.locked()

    # ------------------------------------------------------------------
    # Host -> container signalling
    # ------------------------------------------------------------------

    def send_follow_up(self, agent_id: str, text: str, media: list[MediaRef] | None = None) -> bool:
        """Queue a follow-up turn on the agent's input channel."""
        paths = self.ipc_paths(agent_id)
        try:
            ipc.write_envelope(paths.input_dir, MessageEnvelope(text=text, media=media or []))
        except OSError:
            logger.warning("Failed to write follow-up for %s", agent_id, exc_info=True)
            return False
        return True

    def request_close(self, agent_id: str) -> None:
        """Ask a running container to wind down after its current turn."""
        try:
            ipc.request_close(self.ipc_paths(agent_id))
        except OSError:
            logger.warning("Failed to write close sentinel for %s", agent_id, exc_info=True)

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def ensure_runtime(self) -> None:
        await self._runtime.ping()
        logger.info("Container runtime is reachable")

    async def cleanup_orphans(self) -> int:
        """Stop and remove labelled containers left over from a previous run."""
        containers = await self._runtime.list_labeled(f"{CONTAINER_LABEL}=true")
        removed = 0
        for container in containers:
            if container.state not in ("running", "created"):
                continue
            try:
                if container.state == "running":
                    await self._runtime.stop(container.id, self._settings.orphan_stop_grace_s)
                await self._runtime.remove(container.id)
                removed += 1
            except Exception:
                logger.warning("Failed to clean up orphan %s", container.name, exc_info=True)
        if removed:
            logger.info("Cleaned up %d orphaned container(s)", removed)
        return removed

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run_agent(
        self,
        container_input: ContainerInput,
        on_output: OutputCallback | None = None,
    ) -> ContainerOutput:
        """Run one agent container to completion.

        With ``on_output`` (streaming mode) every marker payload is delivered
        as it arrives and the final result carries ``result=None``. Without
        it (one-shot mode) the last payload in stdout is the result.
        """
        async with self._agent_locks[container_input.agent_id]:
            return await self._run_locked(container_input, on_output)

    async def _run_locked(
        self,
        container_input: ContainerInput,
        on_output: OutputCallback | None,
    ) -> ContainerOutput:
        started = time.monotonic()
        agent_id = container_input.agent_id
        paths = self.ipc_paths(agent_id)
        ipc.prepare(paths)
        ipc.clear_close(paths)
        workspace = self.workspace_dir(agent_id)
        workspace.mkdir(parents=True, exist_ok=True)

        name = container_name(container_input.agent_name)
        timeout_ms = self.effective_timeout_ms(container_input.is_orchestrator)
        spec = self._build_spec(container_input, name)

        logger.info(
            "Spawning container %s (agent=%s, orchestrator=%s, media=%d)",
            name, container_input.agent_name, container_input.is_orchestrator,
            len(container_input.media),
        )

        container_id: str | None = None
        attachment: Attachment | None = None
        exit_waiter: asyncio.Task | None = None
        try:
            container_input.secrets = await self._secrets_provider()
            container_id = await self._runtime.create(spec)
            attachment = await self._runtime.attach(container_id)
            exit_waiter = asyncio.create_task(self._runtime.wait(container_id), name=f"wait:{name}")
            await self._runtime.start(container_id)
            await attachment.send(container_input.model_dump_json(exclude_none=True).encode("utf-8"))
            await attachment.close_input()
        except Exception as e:
            logger.error("Failed to spawn container %s: %s", name, e)
            if exit_waiter is not None:
                exit_waiter.cancel()
            if attachment is not None:
                with contextlib.suppress(Exception):
                    await attachment.close()
            if container_id is not None:
                with contextlib.suppress(Exception):
                    await self._runtime.remove(container_id)
            return ContainerOutput(status="error", error=f"Failed to create container: {e}")
        finally:
            container_input.secrets = None

        output = await self._supervise(
            name, container_id, attachment, exit_waiter, timeout_ms, on_output,
        )
        logger.info(
            "Container %s finished in %dms (status=%s)",
            name, int((time.monotonic() - started) * 1000), output.status,
        )
        return output

    def _build_spec(self, container_input: ContainerInput, name: str) -> ContainerSpec:
        host_data = self._settings.host_data_path
        agent_id = container_input.agent_id
        return ContainerSpec(
            name=name,
            image=self._settings.container_image,
            network_mode=self._settings.container_network,
            labels={CONTAINER_LABEL: "true", "agent": container_input.agent_name},
            binds=[
                f"{host_data / 'ipc' / agent_id}:{ipc.CONTAINER_IPC_DIR}",
                f"{host_data / 'workspaces' / agent_id}:{CONTAINER_WORKSPACE_DIR}",
            ],
            env={
                "FLOTILLA_AGENT_ID": agent_id,
                "FLOTILLA_AGENT_NAME": container_input.agent_name,
                "FLOTILLA_IS_ORCHESTRATOR": "1" if container_input.is_orchestrator else "0",
                "FLOTILLA_LOG_LEVEL": self._settings.log_level,
                "FLOTILLA_TIMEZONE": self._settings.timezone,
                "FLOTILLA_LLM_BASE_URL": self._settings.llm_base_url,
                "FLOTILLA_LLM_TEMPERATURE": str(self._settings.llm_temperature),
                "FLOTILLA_MAX_AGENT_ITERATIONS": str(self._settings.max_agent_iterations),
                "FLOTILLA_AGENT_IPC_POLL_INTERVAL_MS": str(self._settings.agent_ipc_poll_interval_ms),
            },
        )

    async def _supervise(
        self,
        name: str,
        container_id: str,
        attachment: Attachment,
        exit_waiter: asyncio.Task,
        timeout_ms: int,
        on_output: OutputCallback | None,
    ) -> ContainerOutput:
        limit = self._settings.container_max_output_bytes
        state = _RunState(stdout=_CappedBuffer(limit), stderr=_CappedBuffer(limit))
        deliveries: asyncio.Queue[ContainerOutput | None] = asyncio.Queue()

        deliverer = None
        if on_output is not None:
            deliverer = asyncio.create_task(
                self._deliver(name, deliveries, on_output), name=f"deliver:{name}",
            )
        pump = asyncio.create_task(
            self._pump(name, attachment, state, deliveries if on_output else None),
            name=f"pump:{name}",
        )
        watchdog = asyncio.create_task(
            self._watchdog(name, container_id, state, timeout_ms), name=f"watchdog:{name}",
        )

        exit_code: int | None = None
        wait_error: Exception | None = None
        try:
            exit_code = await exit_waiter
        except Exception as e:
            wait_error = e
            logger.error("Waiting on container %s failed: %s", name, e)
        finally:
            watchdog.cancel()
            try:
                await watchdog
            except asyncio.CancelledError:
                pass
            try:
                await asyncio.wait_for(pump, timeout=_DRAIN_TIMEOUT_S)
            except asyncio.TimeoutError:
                logger.warning("Output stream of %s did not close after exit", name)
            except Exception:
                logger.exception("Output pump for %s failed", name)
            await attachment.close()
            if deliverer is not None:
                deliveries.put_nowait(None)
                await deliverer

        if wait_error is not None:
            return ContainerOutput(status="error", error=f"Container error: {wait_error}")
        return self._classify(name, state, exit_code, timeout_ms, streaming=on_output is not None)

    async def _pump(
        self,
        name: str,
        attachment: Attachment,
        state: _RunState,
        deliveries: asyncio.Queue[ContainerOutput | None] | None,
    ) -> None:
        stdout_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        stderr_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        parser = MarkerParser(max_payload=self._settings.container_max_output_bytes)

        async for stream, data in attachment.frames():
            if stream == STDERR:
                if state.stderr.append(data):
                    logger.warning("Container %s stderr truncated at %d bytes", name, self._settings.container_max_output_bytes)
                for line in stderr_decoder.decode(data).splitlines():
                    if line.strip():
                        logger.debug("[%s] %s", name, line)
                continue
            if stream != STDOUT:
                continue

            if state.stdout.append(data):
                logger.warning("Container %s stdout truncated at %d bytes", name, self._settings.container_max_output_bytes)

            for payload in parser.feed(stdout_decoder.decode(data)):
                try:
                    output = ContainerOutput.model_validate_json(payload)
                except ValidationError as e:
                    logger.warning("Malformed output payload from %s: %s", name, e)
                    continue
                if output.conversation_id:
                    state.conversation_id = output.conversation_id
                state.had_output = True
                state.activity.set()
                if deliveries is not None:
                    deliveries.put_nowait(output)

    async def _deliver(
        self,
        name: str,
        deliveries: asyncio.Queue[ContainerOutput | None],
        on_output: OutputCallback,
    ) -> None:
        while (output := await deliveries.get()) is not None:
            try:
                await on_output(output)
            except Exception:
                logger.exception("Output handler failed for %s", name)

    async def _watchdog(self, name: str, container_id: str, state: _RunState, timeout_ms: int) -> None:
        while True:
            try:
                await asyncio.wait_for(state.activity.wait(), timeout=timeout_ms / 1000)
            except asyncio.TimeoutError:
                break
            state.activity.clear()

        state.timed_out = True
        logger.error("Container %s timed out after %dms, stopping", name, timeout_ms)
        try:
            await self._runtime.stop(container_id, self._settings.container_stop_grace_s)
        except Exception as e:
            logger.warning("Graceful stop of %s failed (%s), killing", name, e)
            try:
                await self._runtime.kill(container_id)
            except Exception as kill_error:
                logger.debug("Kill of %s failed: %s", name, kill_error)

    def _classify(
        self,
        name: str,
        state: _RunState,
        exit_code: int | None,
        timeout_ms: int,
        *,
        streaming: bool,
    ) -> ContainerOutput:
        if state.timed_out:
            if state.had_output:
                # Stopped while idle after producing results: a normal ending
                logger.info("Container %s reached idle cleanup after output", name)
                return ContainerOutput(status="success", result=None, conversation_id=state.conversation_id)
            return ContainerOutput(status="error", error=f"Container timed out after {timeout_ms}ms")

        if exit_code != 0:
            stderr_tail = state.stderr.text()[-200:]
            logger.error("Container %s exited with code %s", name, exit_code)
            return ContainerOutput(
                status="error",
                error=f"Container exited with code {exit_code}: {stderr_tail}",
            )

        if streaming:
            return ContainerOutput(status="success", result=None, conversation_id=state.conversation_id)

        try:
            return parse_final_output(state.stdout.text())
        except ValueError as e:
            logger.error("Failed to parse output of %s: %s", name, e)
            return ContainerOutput(status="error", error=f"Failed to parse output: {e}")
