"""OpenAI-compatible chat completions client (OpenRouter by default)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

_RETRY_STATUSES = (429, 500, 502, 503, 529)


class ChatClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        base_url: str = "https://openrouter.ai/api/v1",
        temperature: float = 0.7,
        timeout_connect: float = 10,
        timeout_read: float = 300,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "content-type": "application/json",
            },
            timeout=httpx.Timeout(connect=timeout_connect, read=timeout_read, write=30, pool=10),
            transport=transport,
        )

    async def complete(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        """One completion; returns the assistant message (role/content/tool_calls).

        Retries once on 429/5xx (honouring retry-after, capped at 30s) and on
        timeouts. Raises RuntimeError on persistent errors.
        """
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "system", "content": system_prompt}, *messages],
            "temperature": self.temperature,
        }
        if tools:
            payload["tools"] = tools

        last_error: Exception | None = None
        for attempt in range(2):
            try:
                response = await self._http.post("/chat/completions", json=payload)

                if response.status_code == 200:
                    return self._parse(response.json())

                try:
                    error = response.json().get("error", {})
                    error_msg = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
                except ValueError:
                    error_msg = f"HTTP {response.status_code}: {response.text[:500]}"

                if response.status_code in _RETRY_STATUSES and attempt == 0:
                    try:
                        retry_after = float(response.headers.get("retry-after", "1"))
                    except ValueError:
                        retry_after = 1.0
                    retry_after = min(retry_after, 30.0)
                    logger.warning(
                        "LLM API error %d, retrying in %.1fs: %s",
                        response.status_code, retry_after, error_msg,
                    )
                    await asyncio.sleep(retry_after)
                    continue

                last_error = RuntimeError(f"LLM API error ({response.status_code}): {error_msg}")
                break

            except httpx.TimeoutException as e:
                last_error = RuntimeError(f"LLM request timed out: {e}")
                if attempt == 0:
                    logger.warning("LLM timeout, retrying: %s", e)
                    await asyncio.sleep(1)
                    continue
            except httpx.HTTPError as e:
                last_error = RuntimeError(f"HTTP error: {e}")
                break

        raise last_error or RuntimeError("LLM call failed with unknown error")

    @staticmethod
    def _parse(data: dict[str, Any]) -> dict[str, Any]:
        choices = data.get("choices") or []
        if not choices:
            return {"role": "assistant", "content": "No response from model"}
        message = choices[0].get("message") or {}
        parsed: dict[str, Any] = {"role": "assistant", "content": message.get("content")}
        if message.get("tool_calls"):
            parsed["tool_calls"] = message["tool_calls"]
        return parsed

    async def close(self) -> None:
        await self._http.aclose()
