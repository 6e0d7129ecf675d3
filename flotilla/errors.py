"""Exception types shared by host and container code."""

from __future__ import annotations


class FlotillaError(Exception):
    """Base class for all flotilla errors."""


class SpawnError(FlotillaError):
    """A container could not be created, attached or started."""


class DockerError(FlotillaError):
    """Docker Engine API returned a non-success status."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"Docker API error ({status_code}): {message}")
        self.status_code = status_code


class SecretResolutionError(FlotillaError):
    """A secret could not be resolved from env or 1Password."""


class EnvelopeError(FlotillaError):
    """An IPC file could not be decoded into a known envelope."""
