"""Streaming HTTP channel shared by all providers.

The transport POSTs a :class:`ProviderRequest`, slices the response body
into frames, and hands each frame to the codec's parser. Two framings
are supported: Server-Sent Events (``data:`` lines grouped into events by
blank lines) and bare JSON objects streamed back to back, optionally
inside a JSON array.
"""

from __future__ import annotations

import codecs
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from vaultkeeper.cancellation import CancellationToken, OperationCancelled
from vaultkeeper.streaming import NormalizedChunk

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(600.0, connect=10.0)


class TransportError(Exception):
    """The request failed at the HTTP level."""


class Framing(Enum):
    SSE = "sse"
    JSON = "json"

    def decoder(self) -> "SSEDecoder | JSONObjectDecoder":
        if self is Framing.SSE:
            return SSEDecoder()
        return JSONObjectDecoder()


@dataclass
class ProviderRequest:
    """Everything the transport needs to open one provider stream."""

    url: str
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    framing: Framing = Framing.SSE


class SSEDecoder:
    """Incremental Server-Sent Events parser.

    Text may be fed in arbitrary slices; an unterminated trailing line is
    kept until the next call. Only ``data`` fields are collected; ``event``,
    ``id``, ``retry`` and comment lines are ignored.
    """

    MARKER = "data:"

    def __init__(self) -> None:
        self._partial = ""
        self._data: list[str] = []

    def feed(self, text: str) -> list[str]:
        frames: list[str] = []
        lines = (self._partial + text).split("\n")
        self._partial = lines.pop()
        for line in lines:
            frame = self._handle_line(line.rstrip("\r"))
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> list[str]:
        """Dispatch whatever is pending at end of stream."""
        frames: list[str] = []
        if self._partial:
            self._handle_line(self._partial.rstrip("\r"))
            self._partial = ""
        frame = self._dispatch()
        if frame is not None:
            frames.append(frame)
        return frames

    def _handle_line(self, line: str) -> str | None:
        if not line.strip():
            return self._dispatch()
        stripped = line.lstrip()
        if stripped.startswith(self.MARKER):
            self._data.append(stripped[len(self.MARKER):].strip())
        return None

    def _dispatch(self) -> str | None:
        if not self._data:
            return None
        frame = "\n".join(self._data)
        self._data = []
        return frame


class JSONObjectDecoder:
    """Splits a stream of concatenated JSON objects into one string each.

    Anything between top-level objects (whitespace, commas, the brackets
    of an enclosing array) is skipped.
    """

    def __init__(self) -> None:
        self._buffer: list[str] = []
        self._depth = 0
        self._in_string = False
        self._escaped = False

    def feed(self, text: str) -> list[str]:
        frames: list[str] = []
        for char in text:
            if self._depth == 0:
                if char == "{":
                    self._depth = 1
                    self._buffer = [char]
                continue

            self._buffer.append(char)
            if self._in_string:
                if self._escaped:
                    self._escaped = False
                elif char == "\\":
                    self._escaped = True
                elif char == '"':
                    self._in_string = False
                continue

            if char == '"':
                self._in_string = True
            elif char == "{":
                self._depth += 1
            elif char == "}":
                self._depth -= 1
                if self._depth == 0:
                    frames.append("".join(self._buffer))
                    self._buffer = []
        return frames

    def flush(self) -> list[str]:
        # An unfinished object is handed on so the codec can report it.
        if self._depth == 0:
            return []
        frame = "".join(self._buffer)
        self._buffer = []
        self._depth = 0
        self._in_string = False
        self._escaped = False
        return [frame]


class StreamingTransport:
    """Opens provider streams and yields normalised chunks.

    Args:
        client: An ``httpx.AsyncClient`` to reuse. One is created (and
            owned) when omitted.
        timeout: Timeout for a client created by the transport.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
    ):
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "StreamingTransport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def stream(
        self,
        request: ProviderRequest,
        parse_frame: Callable[[str], NormalizedChunk],
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[NormalizedChunk]:
        """Stream one request.

        Yields chunks until the first complete chunk. If the response ends
        without one, a bare complete chunk is yielded last. HTTP and
        network failures end the stream with a complete chunk carrying the
        error. When *cancel* fires, the stream stops without yielding
        anything further and the response is closed.
        """
        cancel = cancel or CancellationToken()
        try:
            async with aclosing(self._read(request, parse_frame, cancel)) as chunks:
                async for chunk in chunks:
                    if cancel.cancelled:
                        return
                    yield chunk
                    if chunk.is_complete:
                        return
        except OperationCancelled:
            logger.info(f"Stream to {request.url} cancelled")
            return
        except (httpx.HTTPError, TransportError) as e:
            message = str(e) or type(e).__name__
            logger.error(f"Stream request error: {message}")
            yield NormalizedChunk(is_complete=True, error=message)
            return

        if not cancel.cancelled:
            yield NormalizedChunk(is_complete=True)

    async def _read(
        self,
        request: ProviderRequest,
        parse_frame: Callable[[str], NormalizedChunk],
        cancel: CancellationToken,
    ) -> AsyncIterator[NormalizedChunk]:
        frame_decoder = request.framing.decoder()
        text_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        async with self.client.stream(
            "POST", request.url, json=request.body, headers=request.headers,
        ) as response:
            if response.status_code >= 400:
                body = await cancel.guard(response.aread())
                raise TransportError(
                    f"API request failed: {response.status_code} - "
                    f"{body.decode('utf-8', errors='replace')}"
                )

            raw = response.aiter_bytes()
            while True:
                data = await cancel.guard(anext(raw, None))
                if data is None:
                    tail = text_decoder.decode(b"", final=True)
                    frames = frame_decoder.feed(tail) + frame_decoder.flush()
                else:
                    frames = frame_decoder.feed(text_decoder.decode(data))

                for frame in frames:
                    yield parse_frame(frame)

                if data is None:
                    return
