"""Pydantic models for everything that crosses the container boundary.

Three payload families:
  ContainerInput  - one-shot JSON written to a container's stdin
  ContainerOutput - marker-wrapped JSON streamed on a container's stdout
  IPC envelopes   - one JSON file per envelope, tagged by ``type``

Envelopes form a closed tagged union decoded with a pydantic discriminator.
Unknown ``type`` values are not an error: ``decode_envelope`` logs them and
returns None so watchers can drop the file and move on.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from flotilla.errors import EnvelopeError

logger = logging.getLogger(__name__)

ToolTransport = Literal["stdio", "sse", "streamable-http"]
ScheduleType = Literal["cron", "interval", "once"]


def utc_timestamp() -> str:
    return datetime.now(UTC).isoformat()


# ---------------------------------------------------------------------------
# Container payloads
# ---------------------------------------------------------------------------


class ToolServerConfig(BaseModel):
    """Connection config for one tool server attached to an agent."""

    name: str
    transport: ToolTransport = "stdio"
    command: str | None = None
    args: list[str] = []
    url: str | None = None
    env: dict[str, str] = {}


class MediaRef(BaseModel):
    """A binary attachment referenced by path (container-side path once staged)."""

    type: Literal["image"] = "image"
    path: str
    mime_type: str = "image/jpeg"


class ContainerInput(BaseModel):
    """Payload delivered once on a container's stdin.

    ``secrets`` is filled by the lifecycle manager right before spawn and
    cleared right after, so logging the model never leaks credentials.
    """

    prompt: str
    agent_id: str
    agent_name: str
    model: str
    system_prompt: str
    is_orchestrator: bool = False
    conversation_id: str | None = None
    media: list[MediaRef] = []
    tool_servers: list[ToolServerConfig] = []
    secrets: dict[str, str] | None = Field(default=None, repr=False)


class ContainerOutput(BaseModel):
    """One streamed result from an agent container."""

    status: Literal["success", "error"]
    result: str | None = None
    conversation_id: str | None = None
    error: str | None = None

    def to_json(self) -> str:
        data = self.model_dump(exclude_none=True)
        data.setdefault("result", None)
        return json.dumps(data)


# ---------------------------------------------------------------------------
# IPC envelopes
# ---------------------------------------------------------------------------


class _Envelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    timestamp: str = Field(default_factory=utc_timestamp)
    agent_id: str | None = None
    agent_name: str | None = None


class MessageEnvelope(_Envelope):
    """Text for the user (outbound) or a follow-up turn (host -> container input)."""

    type: Literal["message"] = "message"
    text: str
    media: list[MediaRef] = []
    is_question: bool = False


class ImageEnvelope(_Envelope):
    type: Literal["image"] = "image"
    path: str
    caption: str | None = None


class DelegateEnvelope(_Envelope):
    type: Literal["delegate_to_agent"] = "delegate_to_agent"
    target_agent: str
    task: str
    wait_for_result: bool = True


class ScheduleTaskEnvelope(_Envelope):
    type: Literal["schedule_task"] = "schedule_task"
    prompt: str
    schedule_type: ScheduleType
    schedule_value: str
    target_agent: str | None = None


class PauseTaskEnvelope(_Envelope):
    type: Literal["pause_task"] = "pause_task"
    task_id: str


class ResumeTaskEnvelope(_Envelope):
    type: Literal["resume_task"] = "resume_task"
    task_id: str


class CancelTaskEnvelope(_Envelope):
    type: Literal["cancel_task"] = "cancel_task"
    task_id: str


class CreateAgentEnvelope(_Envelope):
    type: Literal["create_agent"] = "create_agent"
    name: str
    system_prompt: str
    model: str
    tool_servers: list[ToolServerConfig] = []


class UpdateAgentEnvelope(_Envelope):
    type: Literal["update_agent"] = "update_agent"
    name: str
    system_prompt: str | None = None
    model: str | None = None
    tool_servers: list[ToolServerConfig] | None = None


class DeleteAgentEnvelope(_Envelope):
    type: Literal["delete_agent"] = "delete_agent"
    name: str


Envelope = Annotated[
    Union[
        MessageEnvelope,
        ImageEnvelope,
        DelegateEnvelope,
        ScheduleTaskEnvelope,
        PauseTaskEnvelope,
        ResumeTaskEnvelope,
        CancelTaskEnvelope,
        CreateAgentEnvelope,
        UpdateAgentEnvelope,
        DeleteAgentEnvelope,
    ],
    Field(discriminator="type"),
]

_ENVELOPE_ADAPTER: TypeAdapter[Envelope] = TypeAdapter(Envelope)

ENVELOPE_TYPES = frozenset({
    "message",
    "image",
    "delegate_to_agent",
    "schedule_task",
    "pause_task",
    "resume_task",
    "cancel_task",
    "create_agent",
    "update_agent",
    "delete_agent",
})


def decode_envelope(raw: str | bytes) -> Envelope | None:
    """Decode one IPC file body.

    Returns None for a well-formed object with an unknown ``type``.
    Raises EnvelopeError for invalid JSON or a known type with bad fields.
    """
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise EnvelopeError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise EnvelopeError(f"Expected a JSON object, got {type(data).__name__}")

    kind = data.get("type")
    if kind not in ENVELOPE_TYPES:
        logger.warning("Ignoring IPC envelope with unknown type %r", kind)
        return None

    try:
        return _ENVELOPE_ADAPTER.validate_python(data)
    except ValidationError as e:
        raise EnvelopeError(f"Invalid {kind} envelope: {e}") from e
