"""File-based IPC between the host and agent containers.

Layout per agent (``<data>/ipc/<agent_id>/``, mounted at ``/workspace/ipc``)::

    messages/   container -> host: message, image, delegate_to_agent
    tasks/      container -> host: schedule/pause/resume/cancel, agent CRUD
    input/      host -> container: follow-up messages and the _close sentinel
    media/      host -> container: staged attachments
    current_agents.json, current_tasks.json   host-written snapshots

Every envelope is one file written as ``<name>.tmp`` then renamed, so readers
only ever see complete files. Readers process files in lexical (= creation)
order and delete a file only after handling it. Files that fail to decode or
whose handler raises are moved to ``<ipc_root>/errors/<label>-<file>`` so the
rest of the batch keeps flowing.

Both sides import this module; nothing here touches docker or the database.
"""

from __future__ import annotations

import json
import logging
import os
import random
import string
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from flotilla.schemas import Envelope, MessageEnvelope, decode_envelope

logger = logging.getLogger(__name__)

CLOSE_SENTINEL = "_close"
ERRORS_DIR = "errors"
AGENTS_SNAPSHOT = "current_agents.json"
TASKS_SNAPSHOT = "current_tasks.json"
CONTAINER_IPC_DIR = "/workspace/ipc"

_SUFFIX_ALPHABET = string.digits + string.ascii_lowercase


@dataclass(frozen=True)
class AgentIpcPaths:
    """Paths of one agent's IPC directory (host or container view)."""

    root: Path

    @classmethod
    def for_agent(cls, ipc_root: Path, agent_id: str) -> AgentIpcPaths:
        return cls(ipc_root / agent_id)

    @property
    def messages_dir(self) -> Path:
        return self.root / "messages"

    @property
    def tasks_dir(self) -> Path:
        return self.root / "tasks"

    @property
    def input_dir(self) -> Path:
        return self.root / "input"

    @property
    def media_dir(self) -> Path:
        return self.root / "media"

    @property
    def close_sentinel(self) -> Path:
        return self.input_dir / CLOSE_SENTINEL

    @property
    def errors_dir(self) -> Path:
        return self.root / ERRORS_DIR


def prepare(paths: AgentIpcPaths) -> None:
    """Create all subdirectories world-writable (containers run as another uid)."""
    for directory in (paths.messages_dir, paths.tasks_dir, paths.input_dir, paths.media_dir):
        directory.mkdir(parents=True, exist_ok=True)
        _chmod(directory, 0o777)
    _chmod(paths.root, 0o777)


def _chmod(path: Path, mode: int) -> None:
    try:
        os.chmod(path, mode)
    except OSError as e:
        logger.debug("chmod %o failed for %s: %s", mode, path, e)


def new_filename() -> str:
    """``<epoch_ms>-<6 char suffix>.json``; sorts by creation time."""
    suffix = "".join(random.choices(_SUFFIX_ALPHABET, k=6))
    return f"{int(time.time() * 1000)}-{suffix}.json"


def write_json_atomic(path: Path, data: Any, indent: int | None = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(data, indent=indent, default=str), encoding="utf-8")
    _chmod(tmp, 0o666)
    os.replace(tmp, path)
    return path


def write_envelope(directory: Path, envelope: BaseModel | dict[str, Any]) -> Path:
    """Write one envelope atomically into ``directory``; returns the final path."""
    if isinstance(envelope, BaseModel):
        data = envelope.model_dump(mode="json", exclude_none=True)
    else:
        data = dict(envelope)
    return write_json_atomic(directory / new_filename(), data)


def pending_files(directory: Path) -> list[Path]:
    """Complete envelope files in creation order. Missing dir means none."""
    try:
        names = sorted(p.name for p in directory.iterdir() if p.is_file() and p.suffix == ".json")
    except FileNotFoundError:
        return []
    return [directory / name for name in names]


def quarantine(path: Path, errors_dir: Path, label: str) -> None:
    """Move a poison file aside as ``<errors_dir>/<label>-<file>``."""
    try:
        errors_dir.mkdir(parents=True, exist_ok=True)
        os.replace(path, errors_dir / f"{label}-{path.name}")
    except OSError:
        logger.exception("Failed to quarantine %s", path)
        path.unlink(missing_ok=True)


async def consume(
    directory: Path,
    handler: Callable[[Envelope], Awaitable[None]],
    *,
    errors_dir: Path,
    label: str,
) -> int:
    """Handle then delete every pending envelope in ``directory``.

    Unknown envelope types are deleted without calling ``handler``. A decode
    failure or handler exception quarantines that one file and the loop
    continues. Returns the number of files handled and deleted.
    """
    handled = 0
    for path in pending_files(directory):
        try:
            envelope = decode_envelope(path.read_bytes())
            if envelope is not None:
                await handler(envelope)
        except FileNotFoundError:
            continue
        except Exception:
            logger.exception("Error processing IPC file %s/%s", label, path.name)
            quarantine(path, errors_dir, label)
            continue
        path.unlink(missing_ok=True)
        handled += 1
    return handled


def drain_messages(directory: Path, *, errors_dir: Path, label: str = "input") -> list[MessageEnvelope]:
    """Synchronously read and delete all pending message envelopes.

    Used inside containers for follow-up input. Non-message envelopes are
    dropped with a warning; undecodable files are quarantined.
    """
    messages: list[MessageEnvelope] = []
    for path in pending_files(directory):
        try:
            envelope = decode_envelope(path.read_bytes())
        except FileNotFoundError:
            continue
        except Exception:
            logger.exception("Error reading input file %s", path.name)
            quarantine(path, errors_dir, label)
            continue
        path.unlink(missing_ok=True)
        if isinstance(envelope, MessageEnvelope):
            messages.append(envelope)
        elif envelope is not None:
            logger.warning("Ignoring %s envelope on input channel", envelope.type)
    return messages


# ------------------------------------------------------------------
# Close sentinel
# ------------------------------------------------------------------


def request_close(paths: AgentIpcPaths) -> None:
    paths.input_dir.mkdir(parents=True, exist_ok=True)
    paths.close_sentinel.write_text("", encoding="utf-8")
    _chmod(paths.close_sentinel, 0o666)


def clear_close(paths: AgentIpcPaths) -> None:
    paths.close_sentinel.unlink(missing_ok=True)


def consume_close(paths: AgentIpcPaths) -> bool:
    """True (and the sentinel is removed) if the host requested close."""
    if not paths.close_sentinel.exists():
        return False
    paths.close_sentinel.unlink(missing_ok=True)
    return True
