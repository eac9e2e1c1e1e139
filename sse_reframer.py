"""
SSE reframing engine.

Consumes the raw bytes of an upstream Server-Sent-Events body and turns them
into the plain incremental text fragments the client receives.

Framing:
- bytes are decoded incrementally, so a multi-byte character split across
  reads is not corrupted
- line endings are normalized to "\\n"
- the accumulation buffer is cut at every "\\n\\n"; each cut is one frame
- whatever remains when the upstream body ends is treated as a final frame

Within a frame only `data: ` lines matter. `[DONE]` stops the stream at once,
anything else is one JSON event.
"""

import codecs
import json
import logging
from typing import Any, AsyncIterator, Iterator, Optional, Protocol

from gateway_errors import StreamReadError
from providers import ApiStyle

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"
FRAME_DELIMITER = "\n\n"


class ByteReader(Protocol):
    async def read(self) -> bytes:
        """Return the next chunk, or b"" once the body is exhausted."""

    async def aclose(self) -> None:
        ...


def parse_frame(frame: str) -> tuple[list[dict[str, Any]], bool]:
    """
    Parse one SSE frame.

    Returns:
        (events, done): the JSON events of the frame in order, and whether the
        `[DONE]` sentinel was seen. Events after the sentinel are dropped.
    """
    events: list[dict[str, Any]] = []
    for line in frame.split("\n"):
        if not line.startswith(DATA_PREFIX):
            continue
        payload = line[len(DATA_PREFIX):]
        if payload.strip() == DONE_SENTINEL:
            return events, True
        try:
            event = json.loads(payload)
        except json.JSONDecodeError as e:
            raise StreamReadError(f"Malformed upstream event: {payload[:100]!r}") from e
        if not isinstance(event, dict):
            raise StreamReadError(f"Unexpected upstream event: {payload[:100]!r}")
        events.append(event)
    return events, False


def extract_text(event: dict[str, Any], api_style: ApiStyle) -> Optional[str]:
    """Text carried by one event, or None for events without choices."""
    error = event.get("error")
    if error:
        message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
        raise StreamReadError(f"Upstream stream error: {message}")

    choices = event.get("choices")
    if not choices:
        return None
    if not isinstance(choices, list):
        raise StreamReadError(f"Unexpected choices in upstream event: {choices!r}")

    # Several candidate slots may be present; for chat the last one is authoritative
    choice = choices[-1] if api_style is ApiStyle.CHAT else choices[0]
    if not isinstance(choice, dict):
        raise StreamReadError(f"Unexpected choice in upstream event: {choice!r}")
    if api_style is ApiStyle.CHAT:
        delta = choice.get("delta") or {}
        if not isinstance(delta, dict):
            raise StreamReadError(f"Unexpected delta in upstream event: {delta!r}")
        return delta.get("content") or ""
    return choice.get("text") or ""


class SSEReframer:
    """Incremental SSE-to-text state machine, fed one raw chunk at a time."""

    def __init__(self, api_style: ApiStyle):
        self.api_style = api_style
        self.done = False
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        # Trailing "\r" held back until we know whether "\n" follows
        self._pending_cr = False

    def _normalize(self, text: str, final: bool = False) -> str:
        if self._pending_cr:
            text = "\r" + text
            self._pending_cr = False
        if text.endswith("\r") and not final:
            text = text[:-1]
            self._pending_cr = True
        return text.replace("\r\n", "\n").replace("\r", "\n")

    def _drain_frame(self, frame: str) -> Iterator[str]:
        events, done = parse_frame(frame)
        if done:
            logger.debug("Upstream signalled [DONE]")
            self.done = True
            self._buffer = ""
        for event in events:
            text = extract_text(event, self.api_style)
            if text is not None:
                yield text

    def feed(self, chunk: bytes) -> Iterator[str]:
        """Consume one raw chunk, yielding the text fragments it completes as they are decoded."""
        if self.done:
            return
        self._buffer += self._normalize(self._decoder.decode(chunk))
        while not self.done:
            boundary = self._buffer.find(FRAME_DELIMITER)
            if boundary < 0:
                break
            frame = self._buffer[:boundary]
            self._buffer = self._buffer[boundary + len(FRAME_DELIMITER):]
            yield from self._drain_frame(frame)

    def finish(self) -> Iterator[str]:
        """Flush the remainder at end-of-stream as one final frame."""
        if self.done:
            return
        self._buffer += self._normalize(self._decoder.decode(b"", final=True), final=True)
        remainder, self._buffer = self._buffer, ""
        self.done = True
        if remainder.strip():
            yield from self._drain_frame(remainder)


async def reframe(reader: ByteReader, api_style: ApiStyle) -> AsyncIterator[str]:
    """
    Drive an SSEReframer over a byte reader, yielding non-empty fragments as
    soon as they are decoded.

    The reader is always closed on exit: normal end, `[DONE]`, a parse or read
    failure, or cancellation of the consumer (client disconnect).
    """
    reframer = SSEReframer(api_style)
    try:
        while not reframer.done:
            try:
                chunk = await reader.read()
            except StreamReadError:
                raise
            except Exception as e:
                raise StreamReadError(f"Failed reading upstream stream: {e}") from e
            fragments = reframer.feed(chunk) if chunk else reframer.finish()
            for fragment in fragments:
                if fragment:
                    yield fragment
    finally:
        await reader.aclose()
