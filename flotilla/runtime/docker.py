"""Docker Engine API client over the unix socket.

Plain REST calls go through httpx with a UDS transport. ``attach`` needs a
hijacked connection (HTTP upgrade to a raw bidirectional stream), which
httpx does not expose, so it speaks HTTP/1.1 directly over
``asyncio.open_unix_connection``.

Without a TTY, docker multiplexes stdout/stderr on the attach stream in
frames of an 8-byte header (stream type, 3 pad bytes, big-endian uint32
length) followed by the payload.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import struct
from collections.abc import AsyncIterator

import httpx

from flotilla.errors import DockerError
from flotilla.runtime.base import ContainerSpec, ContainerSummary, Frame

logger = logging.getLogger(__name__)

_FRAME_HEADER = struct.Struct(">BxxxL")
_READ_CHUNK = 65536


class FrameDecoder:
    """Incremental demultiplexer for docker's attach stream framing."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, data: bytes) -> list[Frame]:
        self._buffer.extend(data)
        frames: list[Frame] = []
        while len(self._buffer) >= _FRAME_HEADER.size:
            stream, size = _FRAME_HEADER.unpack_from(self._buffer)
            end = _FRAME_HEADER.size + size
            if len(self._buffer) < end:
                break
            frames.append((stream, bytes(self._buffer[_FRAME_HEADER.size:end])))
            del self._buffer[:end]
        return frames

    @property
    def pending(self) -> int:
        return len(self._buffer)


class DockerAttachment:
    """Hijacked attach connection: write stdin, read demuxed frames."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer

    async def send(self, data: bytes) -> None:
        self._writer.write(data)
        await self._writer.drain()

    async def close_input(self) -> None:
        if self._writer.can_write_eof():
            self._writer.write_eof()
            await self._writer.drain()

    async def frames(self) -> AsyncIterator[Frame]:
        decoder = FrameDecoder()
        while True:
            chunk = await self._reader.read(_READ_CHUNK)
            if not chunk:
                break
            for frame in decoder.feed(chunk):
                yield frame
        if decoder.pending:
            logger.debug("Attach stream ended with %d undecoded bytes", decoder.pending)

    async def close(self) -> None:
        self._writer.close()
        with contextlib.suppress(OSError):
            await self._writer.wait_closed()


class DockerEngine:
    """Minimal async Docker Engine client (containers only)."""

    def __init__(
        self,
        socket_path: str = "/var/run/docker.sock",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._socket_path = socket_path
        self._client = httpx.AsyncClient(
            transport=transport or httpx.AsyncHTTPTransport(uds=socket_path),
            base_url="http://docker",
            timeout=httpx.Timeout(connect=5.0, read=30.0, write=30.0, pool=10.0),
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        ok: tuple[int, ...] = (200, 201, 204),
        **kwargs,
    ) -> httpx.Response:
        response = await self._client.request(method, path, **kwargs)
        if response.status_code not in ok:
            try:
                message = response.json().get("message", response.text)
            except ValueError:
                message = response.text
            raise DockerError(response.status_code, message)
        return response

    async def ping(self) -> None:
        await self._request("GET", "/_ping")

    async def create(self, spec: ContainerSpec) -> str:
        body = {
            "Image": spec.image,
            "Env": [f"{key}={value}" for key, value in spec.env.items()],
            "Labels": spec.labels,
            "AttachStdin": True,
            "AttachStdout": True,
            "AttachStderr": True,
            "OpenStdin": True,
            "StdinOnce": True,
            "Tty": False,
            "HostConfig": {
                "Binds": spec.binds,
                "NetworkMode": spec.network_mode,
                "AutoRemove": spec.auto_remove,
            },
        }
        response = await self._request(
            "POST", "/containers/create", params={"name": spec.name}, json=body,
        )
        container_id = response.json()["Id"]
        logger.debug("Created container %s (%s)", spec.name, container_id[:12])
        return container_id

    async def attach(self, container_id: str) -> DockerAttachment:
        reader, writer = await asyncio.open_unix_connection(self._socket_path)
        request = (
            f"POST /containers/{container_id}/attach?stream=1&stdin=1&stdout=1&stderr=1 HTTP/1.1\r\n"
            "Host: docker\r\n"
            "Connection: Upgrade\r\n"
            "Upgrade: tcp\r\n"
            "Content-Length: 0\r\n"
            "\r\n"
        )
        writer.write(request.encode("ascii"))
        await writer.drain()

        try:
            head = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), timeout=10)
        except (asyncio.TimeoutError, asyncio.IncompleteReadError) as e:
            writer.close()
            raise DockerError(0, f"attach handshake failed: {e}") from e

        status_line = head.split(b"\r\n", 1)[0].decode("latin-1")
        parts = status_line.split(" ", 2)
        status = int(parts[1]) if len(parts) > 1 and parts[1].isdigit() else 0
        if status not in (101, 200):
            writer.close()
            raise DockerError(status, f"attach failed: {status_line}")
        return DockerAttachment(reader, writer)

    async def start(self, container_id: str) -> None:
        await self._request("POST", f"/containers/{container_id}/start", ok=(204, 304))

    async def wait(self, container_id: str) -> int:
        # next-exit registers before start, so AutoRemove cannot race us
        response = await self._request(
            "POST",
            f"/containers/{container_id}/wait",
            params={"condition": "next-exit"},
            timeout=httpx.Timeout(connect=5.0, read=None, write=30.0, pool=10.0),
        )
        data = response.json()
        if data.get("Error"):
            logger.warning("Wait on %s reported: %s", container_id[:12], data["Error"])
        return int(data.get("StatusCode", -1))

    async def stop(self, container_id: str, grace_s: int) -> None:
        await self._request(
            "POST",
            f"/containers/{container_id}/stop",
            params={"t": grace_s},
            ok=(204, 304),
            timeout=httpx.Timeout(connect=5.0, read=grace_s + 30.0, write=30.0, pool=10.0),
        )

    async def kill(self, container_id: str) -> None:
        await self._request("POST", f"/containers/{container_id}/kill", ok=(204,))

    async def remove(self, container_id: str) -> None:
        await self._request(
            "DELETE", f"/containers/{container_id}", params={"force": "true"}, ok=(204, 404),
        )

    async def list_labeled(self, label: str) -> list[ContainerSummary]:
        response = await self._request(
            "GET",
            "/containers/json",
            params={"all": "true", "filters": json.dumps({"label": [label]})},
        )
        return [
            ContainerSummary(
                id=item["Id"],
                name=(item.get("Names") or ["?"])[0].lstrip("/"),
                state=item.get("State", ""),
                labels=item.get("Labels") or {},
            )
            for item in response.json()
        ]

    async def close(self) -> None:
        await self._client.aclose()
