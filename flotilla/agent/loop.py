"""In-container agent loop.

Reads a ContainerInput from stdin, then cycles:

    collect turn -> complete -> [dispatch tool calls -> complete]* -> emit
    -> wait for follow-up (or _close) -> complete -> ...

Results go to stdout wrapped in output markers; logging goes to stderr.
Follow-up turns and the close sentinel arrive through the IPC input
directory. Exit code 0 after a requested close, 1 after an error output.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import sys
from pathlib import Path
from typing import Any, Protocol, TextIO

from pydantic import ValidationError

from flotilla import ipc
from flotilla.agent.llm import ChatClient
from flotilla.agent.toolservers import ToolServerPool
from flotilla.config import Settings
from flotilla.protocol import wrap_output
from flotilla.registry import MEMORY_SERVER_NAME
from flotilla.schemas import ContainerInput, ContainerOutput, MediaRef, MessageEnvelope, ToolServerConfig

logger = logging.getLogger(__name__)

MAX_ITERATIONS_MESSAGE = "Agent reached maximum iteration limit."


class Completer(Protocol):
    async def complete(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]: ...


class ToolDispatcher(Protocol):
    def definitions(self) -> list[dict[str, Any]]: ...

    async def call(self, name: str, arguments: dict[str, Any]) -> str: ...


def build_user_content(text: str, media: list[MediaRef]) -> str | list[dict[str, Any]]:
    """Plain text, or a content-part list when images could be loaded."""
    parts: list[dict[str, Any]] = []
    for ref in media:
        if ref.type != "image":
            continue
        try:
            data = Path(ref.path).read_bytes()
        except OSError as e:
            logger.warning("Skipping unreadable media %s: %s", ref.path, e)
            continue
        encoded = base64.b64encode(data).decode("ascii")
        parts.append({
            "type": "image_url",
            "image_url": {"url": f"data:{ref.mime_type};base64,{encoded}"},
        })
    if not parts:
        return text
    return [{"type": "text", "text": text}, *parts]


# Secrets each built-in tool server needs; nothing else sees them
SERVER_SECRETS = {MEMORY_SERVER_NAME: ("DATABASE_URL", "OPENROUTER_API_KEY")}


def attach_secrets(configs: list[ToolServerConfig], secrets: dict[str, str]) -> list[ToolServerConfig]:
    attached = []
    for config in configs:
        names = SERVER_SECRETS.get(config.name, ())
        extra = {name: secrets[name] for name in names if secrets.get(name)}
        if extra and config.transport == "stdio":
            config = config.model_copy(update={"env": {**config.env, **extra}})
        attached.append(config)
    return attached


def merge_messages(envelopes: list[MessageEnvelope]) -> tuple[str, list[MediaRef]]:
    text = "\n".join(envelope.text for envelope in envelopes)
    media = [ref for envelope in envelopes for ref in envelope.media]
    return text, media


class AgentLoop:
    def __init__(
        self,
        container_input: ContainerInput,
        llm: Completer,
        tools: ToolDispatcher,
        paths: ipc.AgentIpcPaths,
        *,
        max_iterations: int = 50,
        poll_interval: float = 0.5,
        out: TextIO | None = None,
    ) -> None:
        self._input = container_input
        self._llm = llm
        self._tools = tools
        self._paths = paths
        self._max_iterations = max_iterations
        self._poll_interval = poll_interval
        self._out = out or sys.stdout
        self.messages: list[dict[str, Any]] = []

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def emit(self, output: ContainerOutput) -> None:
        self._out.write(wrap_output(output))
        self._out.flush()

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def drain_input(self) -> list[MessageEnvelope]:
        return ipc.drain_messages(self._paths.input_dir, errors_dir=self._paths.errors_dir)

    def initial_turn(self) -> str | list[dict[str, Any]]:
        """Anything already waiting on the input channel, then the prompt."""
        text = self._input.prompt
        media = list(self._input.media)
        pending = self.drain_input()
        if pending:
            # Leftover input was written before this run's prompt
            earlier_text, earlier_media = merge_messages(pending)
            text = f"{earlier_text}\n{text}"
            media = [*earlier_media, *media]
        return build_user_content(text, media)

    async def wait_for_follow_up(self) -> str | list[dict[str, Any]] | None:
        """Poll until a follow-up arrives (its content) or close is requested (None)."""
        while True:
            if ipc.consume_close(self._paths):
                return None
            pending = self.drain_input()
            if pending:
                return build_user_content(*merge_messages(pending))
            await asyncio.sleep(self._poll_interval)

    # ------------------------------------------------------------------
    # Completion cycle
    # ------------------------------------------------------------------

    async def complete_turn(self) -> str:
        """Complete/dispatch until the model answers without tool calls."""
        tools = self._tools.definitions() or None
        for _ in range(self._max_iterations):
            message = await self._llm.complete(self._input.system_prompt, self.messages, tools)
            self.messages.append(message)

            tool_calls = message.get("tool_calls") or []
            if not tool_calls:
                return message.get("content") or ""

            for call in tool_calls:
                function = call.get("function", {})
                name = function.get("name", "")
                try:
                    arguments = json.loads(function.get("arguments") or "{}")
                except json.JSONDecodeError as e:
                    result = json.dumps({"error": f"Invalid tool arguments: {e}"})
                else:
                    logger.info("Tool call: %s", name)
                    result = await self._tools.call(name, arguments)
                self.messages.append({
                    "role": "tool",
                    "tool_call_id": call.get("id", ""),
                    "content": result,
                })

            # Messages that arrived while tools ran join the conversation now
            for envelope in self.drain_input():
                self.messages.append({
                    "role": "user",
                    "content": build_user_content(envelope.text, envelope.media),
                })

        logger.warning("Reached max iterations (%d)", self._max_iterations)
        return MAX_ITERATIONS_MESSAGE

    async def run(self) -> None:
        conversation_id = self._input.conversation_id
        self.messages.append({"role": "user", "content": self.initial_turn()})
        while True:
            response = await self.complete_turn()
            self.emit(ContainerOutput(
                status="success",
                result=response or None,
                conversation_id=conversation_id,
            ))

            follow_up = await self.wait_for_follow_up()
            if follow_up is None:
                logger.info("Close requested, exiting")
                return
            self.messages.append({"role": "user", "content": follow_up})


# ------------------------------------------------------------------
# Process entry point
# ------------------------------------------------------------------


def _emit_error(message: str, out: TextIO) -> None:
    out.write(wrap_output(ContainerOutput(status="error", error=message)))
    out.flush()


async def run_container(raw_input: str, settings: Settings, out: TextIO) -> int:
    try:
        container_input = ContainerInput.model_validate_json(raw_input)
    except ValidationError as e:
        _emit_error(f"Failed to parse input: {e}", out)
        return 1

    secrets = container_input.secrets or {}
    container_input.secrets = None
    api_key = secrets.get("OPENROUTER_API_KEY")
    if not api_key:
        _emit_error("OPENROUTER_API_KEY not provided in secrets", out)
        return 1

    logger.info(
        "Agent %s starting (model=%s, orchestrator=%s, tool servers=%d)",
        container_input.agent_name, container_input.model,
        container_input.is_orchestrator, len(container_input.tool_servers),
    )

    llm = ChatClient(
        api_key,
        container_input.model,
        base_url=settings.llm_base_url,
        temperature=settings.llm_temperature,
        timeout_connect=settings.llm_timeout_connect,
        timeout_read=settings.llm_timeout_read,
    )
    try:
        async with ToolServerPool() as pool:
            await pool.connect_all(attach_secrets(container_input.tool_servers, secrets))
            loop = AgentLoop(
                container_input,
                llm,
                pool,
                ipc.AgentIpcPaths(Path(settings.container_ipc_dir)),
                max_iterations=settings.max_agent_iterations,
                poll_interval=settings.agent_ipc_poll_interval_ms / 1000,
                out=out,
            )
            await loop.run()
        return 0
    except Exception as e:
        logger.exception("Agent failed")
        _emit_error(str(e), out)
        return 1
    finally:
        await llm.close()


def main() -> None:
    settings = Settings()
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    raw_input = sys.stdin.read()
    sys.exit(asyncio.run(run_container(raw_input, settings, sys.stdout)))
