"""Telegram channel: long-polls the Bot API and delivers private-chat messages.

Inbound text and photos (largest size, downloaded into ``<data>/media/``)
go to an ``on_message(chat_id, sender_name, text, media)`` callback, one
update at a time, in order. Outbound helpers split long text at Telegram's
4096 character limit and serialize sends per chat.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import httpx

from flotilla.schemas import MediaRef

logger = logging.getLogger(__name__)

# Telegram Bot API base
TG_API = "https://api.telegram.org/bot{token}/{method}"
TG_FILE_API = "https://api.telegram.org/file/bot{token}/{path}"

# Max Telegram message length
TG_MAX_LEN = 4096

TYPING_REFRESH_S = 4.0
POLL_TIMEOUT_S = 30

OnMessage = Callable[[str, str, str, list[MediaRef]], Awaitable[None]]


def split_message(text: str, limit: int = TG_MAX_LEN) -> list[str]:
    """Split on line boundaries; lines longer than ``limit`` are hard-cut."""
    if len(text) <= limit:
        return [text]

    chunks: list[str] = []
    current = ""
    for line in text.split("\n"):
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        if len(current) + len(line) + 1 > limit:
            if current:
                chunks.append(current)
            current = line
        else:
            current = f"{current}\n{line}" if current else line
    if current:
        chunks.append(current)
    return chunks


class TelegramChannel:
    def __init__(
        self,
        bot_token: str,
        on_message: OnMessage,
        media_dir: Path,
        allowed_chats: set[int] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.bot_token = bot_token
        self._on_message = on_message
        self._media_dir = media_dir
        self._allowed_chats = allowed_chats
        self._offset = 0
        self._running = False
        self._task: asyncio.Task | None = None
        self._send_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._typing: dict[str, asyncio.Task] = {}
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=10, read=POLL_TIMEOUT_S + 30, write=30, pool=10),
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        me = await self._tg("getMe")
        logger.info("Telegram bot connected: @%s (%s)", me.get("username"), me.get("id"))
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="telegram-poll")

    async def stop(self) -> None:
        self._running = False
        for chat_id in list(self._typing):
            await self.set_typing(chat_id, False)
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Telegram polling stopped")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                updates = await self._tg(
                    "getUpdates",
                    {"offset": self._offset, "timeout": POLL_TIMEOUT_S, "allowed_updates": ["message"]},
                )
                for update in updates or []:
                    self._offset = update["update_id"] + 1
                    try:
                        await self.handle_update(update)
                    except Exception:
                        logger.exception("Error handling Telegram update %s", update.get("update_id"))
            except httpx.ReadTimeout:
                continue  # Normal for long polling
            except Exception as e:
                logger.error("Polling error: %s", e)
                await asyncio.sleep(5)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_update(self, update: dict[str, Any]) -> None:
        message = update.get("message")
        if not message:
            return

        chat = message.get("chat", {})
        if chat.get("type") != "private":
            return
        chat_id = chat["id"]
        if self._allowed_chats and chat_id not in self._allowed_chats:
            logger.debug("Message from non-allowed chat %s ignored", chat_id)
            return

        sender = message.get("from", {})
        sender_name = sender.get("first_name") or sender.get("username") or str(sender.get("id", "user"))

        text = (message.get("text") or "").strip()
        if text == "/start":
            await self.send_message(str(chat_id), "Hi! Send me a message to get started.")
            return

        media: list[MediaRef] = []
        photos = message.get("photo") or []
        if photos:
            try:
                path = await self._download(photos[-1]["file_id"])
            except Exception:
                logger.exception("Failed to download Telegram photo for chat %s", chat_id)
                await self.send_message(str(chat_id), "Sorry, I couldn't download that photo.")
                return
            # Telegram re-encodes photos as JPEG
            media.append(MediaRef(type="image", path=str(path), mime_type="image/jpeg"))
            text = (message.get("caption") or "").strip() or "The user sent a photo."

        if not text:
            return
        await self._on_message(str(chat_id), sender_name, text, media)

    async def _download(self, file_id: str) -> Path:
        info = await self._tg("getFile", {"file_id": file_id})
        file_path = info["file_path"]
        response = await self._http.get(TG_FILE_API.format(token=self.bot_token, path=file_path))
        response.raise_for_status()
        self._media_dir.mkdir(parents=True, exist_ok=True)
        target = self._media_dir / f"{int(time.time() * 1000)}-{Path(file_path).name}"
        target.write_bytes(response.content)
        logger.debug("Downloaded Telegram file to %s (%d bytes)", target, len(response.content))
        return target

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_message(self, chat_id: str, text: str) -> None:
        async with self._send_locks[chat_id]:
            chunks = split_message(text)
            for i, chunk in enumerate(chunks):
                await self._tg("sendMessage", {"chat_id": chat_id, "text": chunk})
                if i < len(chunks) - 1:
                    await asyncio.sleep(0.3)  # Rate limit

    async def send_photo(self, chat_id: str, path: str, caption: str | None = None) -> None:
        photo = Path(path)
        if not photo.is_file():
            raise FileNotFoundError(path)
        data: dict[str, Any] = {"chat_id": chat_id}
        if caption:
            data["caption"] = caption[:1024]
        async with self._send_locks[chat_id]:
            response = await self._http.post(
                TG_API.format(token=self.bot_token, method="sendPhoto"),
                data=data,
                files={"photo": (photo.name, photo.read_bytes())},
            )
        result = response.json()
        if not result.get("ok"):
            raise RuntimeError(f"sendPhoto failed: {result.get('description')}")

    async def set_typing(self, chat_id: str, on: bool) -> None:
        """Show the typing indicator until switched off (refreshed every 4s)."""
        existing = self._typing.pop(chat_id, None)
        if existing:
            existing.cancel()
        if on:
            self._typing[chat_id] = asyncio.create_task(self._typing_loop(chat_id), name=f"typing:{chat_id}")

    async def _typing_loop(self, chat_id: str) -> None:
        while True:
            try:
                await self._tg("sendChatAction", {"chat_id": chat_id, "action": "typing"})
            except Exception as e:
                logger.debug("sendChatAction failed: %s", e)
            await asyncio.sleep(TYPING_REFRESH_S)

    async def _tg(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Call Telegram Bot API."""
        url = TG_API.format(token=self.bot_token, method=method)
        response = await self._http.post(url, json=params or {})
        data = response.json()
        if not data.get("ok"):
            logger.warning("Telegram API error on %s: %s", method, data.get("description", data))
        return data.get("result", {})

    async def close(self) -> None:
        await self._http.aclose()
