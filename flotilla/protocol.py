"""Marker framing for ContainerOutput on a container's stdout.

Each result is written as::

    ---FLOTILLA_OUTPUT_START---
    {"status": "success", "result": "...", ...}
    ---FLOTILLA_OUTPUT_END---

Anything else on stdout is free-form noise and ignored. ``MarkerParser`` is
incremental so payloads split across arbitrary chunk boundaries still come
out whole and in order.
"""

from __future__ import annotations

import logging

from flotilla.schemas import ContainerOutput

logger = logging.getLogger(__name__)

OUTPUT_START_MARKER = "---FLOTILLA_OUTPUT_START---"
OUTPUT_END_MARKER = "---FLOTILLA_OUTPUT_END---"

# A marker can only appear inside a JSON string, where - is a valid
# spelling of "-". Rewriting the first dash keeps payloads unambiguous.
_ESCAPES = (
    (OUTPUT_START_MARKER, "\\u002d" + OUTPUT_START_MARKER[1:]),
    (OUTPUT_END_MARKER, "\\u002d" + OUTPUT_END_MARKER[1:]),
)


def wrap_output(output: ContainerOutput) -> str:
    """Serialize one output with its start/end markers (newline terminated)."""
    payload = output.to_json()
    for marker, escaped in _ESCAPES:
        payload = payload.replace(marker, escaped)
    return f"{OUTPUT_START_MARKER}\n{payload}\n{OUTPUT_END_MARKER}\n"


class MarkerParser:
    """Incremental extractor of marker-delimited payload strings.

    With ``max_payload`` set, a payload still open after that many characters
    is dropped and scanning resumes at the next start marker.
    """

    def __init__(self, max_payload: int | None = None) -> None:
        self._buffer = ""
        self._max_payload = max_payload
        self.dropped = 0

    def feed(self, chunk: str) -> list[str]:
        """Add a chunk; return every payload completed by it, in order."""
        self._buffer += chunk
        payloads: list[str] = []
        while True:
            start = self._buffer.find(OUTPUT_START_MARKER)
            if start == -1:
                # Keep just enough tail to complete a split start marker
                keep = len(OUTPUT_START_MARKER) - 1
                if len(self._buffer) > keep:
                    self._buffer = self._buffer[-keep:]
                break

            body_start = start + len(OUTPUT_START_MARKER)
            end = self._buffer.find(OUTPUT_END_MARKER, body_start)
            if end == -1:
                self._buffer = self._buffer[start:]
                pending = len(self._buffer) - len(OUTPUT_START_MARKER)
                if self._max_payload is not None and pending > self._max_payload:
                    logger.warning("Output payload exceeds cap of %d, dropped", self._max_payload)
                    self.dropped += 1
                    self._buffer = ""
                break

            payloads.append(self._buffer[body_start:end].strip())
            self._buffer = self._buffer[end + len(OUTPUT_END_MARKER):]
        return payloads


def parse_final_output(stdout: str) -> ContainerOutput:
    """Parse the last marker payload in a buffered stdout.

    Falls back to the last non-empty line when no complete marker pair
    exists. Raises ValueError (pydantic ValidationError) when unparseable.
    """
    end = stdout.rfind(OUTPUT_END_MARKER)
    start = stdout.rfind(OUTPUT_START_MARKER, 0, end) if end != -1 else -1
    if start != -1:
        payload = stdout[start + len(OUTPUT_START_MARKER):end].strip()
    else:
        lines = [line for line in stdout.splitlines() if line.strip()]
        if not lines:
            raise ValueError("No output from container")
        payload = lines[-1].strip()
    return ContainerOutput.model_validate_json(payload)
