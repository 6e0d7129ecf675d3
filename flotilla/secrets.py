"""Secret resolution from environment variables or 1Password.

Priority: env var > reference > default. A value (from either source) that
starts with ``op://`` is read with the 1Password CLI (``op read``) and
cached for the life of the process. Anything else is used as-is, so a
reference setting may also hold a plain value.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re

from flotilla.config import Settings
from flotilla.errors import SecretResolutionError

logger = logging.getLogger(__name__)

OP_PREFIX = "op://"
OP_TIMEOUT_S = 15


def mask_reference(reference: str) -> str:
    """op://vault/item/field -> op://vault/item/***"""
    return re.sub(r"/[^/]+$", "/***", reference)


class SecretResolver:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._cache: dict[str, str] = {}

    async def read(self, reference: str) -> str:
        """Resolve one value; only ``op://`` references hit the CLI."""
        if not reference.startswith(OP_PREFIX):
            return reference
        if reference in self._cache:
            return self._cache[reference]

        value = await self._op_read(reference)
        self._cache[reference] = value
        logger.debug("1Password secret loaded: %s", mask_reference(reference))
        return value

    async def _op_read(self, reference: str) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                "op", "read", reference,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise SecretResolutionError(
                "1Password CLI (op) is not installed. "
                "Install from: https://developer.1password.com/docs/cli/get-started/"
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=OP_TIMEOUT_S)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise SecretResolutionError(
                f"Timed out reading 1Password secret {mask_reference(reference)}"
            ) from e

        if proc.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            if "sign in" in message or "not signed in" in message:
                raise SecretResolutionError("1Password CLI is not signed in. Run: eval $(op signin)")
            raise SecretResolutionError(
                f"Failed to read 1Password secret {mask_reference(reference)}: {message}"
            )

        value = stdout.decode("utf-8").strip()
        if not value:
            raise SecretResolutionError(f"Empty value returned for {mask_reference(reference)}")
        return value

    async def resolve(
        self,
        name: str,
        reference: str | None = None,
        default: str | None = None,
    ) -> str:
        env_value = os.environ.get(name)
        if env_value:
            return await self.read(env_value)

        if reference:
            try:
                return await self.read(reference)
            except SecretResolutionError as e:
                if default is None:
                    raise
                logger.warning("Failed to read %s from 1Password, using default: %s", name, e)
                return default

        if default is not None:
            return default
        raise SecretResolutionError(
            f"Missing required secret: set {name} env var or configure a 1Password reference"
        )

    async def container_secrets(self) -> dict[str, str]:
        """Secrets handed to every agent container over stdin."""
        settings = self._settings
        # name -> (reference, default)
        wanted = {
            "OPENROUTER_API_KEY": (settings.openrouter_api_key or settings.openrouter_api_key_ref, None),
            "DATABASE_URL": (settings.database_url_ref or settings.database_url, settings.db_url),
        }
        secrets: dict[str, str] = {}
        for name, (reference, default) in wanted.items():
            try:
                secrets[name] = await self.resolve(name, reference or None, default=default)
            except SecretResolutionError as e:
                logger.warning("%s not available for containers: %s", name, e)
        return secrets

    def clear_cache(self) -> None:
        self._cache.clear()
