"""
sse_decoder.py — Incremental Server-Sent Events frame decoder for the verify stream

Decodes SSE frames from async byte streams (httpx response.aiter_bytes()).
Handles: UTF-8 characters split across chunks, CRLF normalization, comments,
frames spanning reads, and a trailing frame with no terminating blank line.

Frame fields follow the WebCite wire format: one `event: ` line and one
`data: ` line per frame. A repeated `data: ` line overwrites the previous one.
"""

import codecs
from dataclasses import dataclass
from typing import AsyncGenerator, AsyncIterable, List, Optional

DEFAULT_EVENT_KIND = "message"

_EVENT_PREFIX = "event: "
_DATA_PREFIX = "data: "


@dataclass
class SSEFrame:
    """A single SSE frame, before JSON decoding of its payload."""
    event_kind: str = DEFAULT_EVENT_KIND
    raw_payload: str = ""


class SSEFrameParser:
    """Push parser: feed byte chunks in, get complete frames out.

    State carried between feeds:
    - incremental UTF-8 decoder (partial multi-byte sequences)
    - carry line (text after the last line break)
    - event kind and payload of the frame being built

    One parser per stream; not safe to share across streams.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._carry = ""
        self._event_kind: Optional[str] = None
        self._payload = ""

    def feed(self, chunk: bytes) -> List[SSEFrame]:
        """Decode a byte chunk and return the frames it completes."""
        return self.feed_text(self._decoder.decode(chunk))

    def feed_text(self, text: str) -> List[SSEFrame]:
        """Split decoded text into lines and return the frames they complete."""
        buffer = (self._carry + text).replace("\r\n", "\n")

        # A trailing CR may be the first half of a CRLF split across chunks
        pending_cr = buffer.endswith("\r")
        if pending_cr:
            buffer = buffer[:-1]
        # Bare CR is a line end too
        lines = buffer.replace("\r", "\n").split("\n")

        # Last element is incomplete; keep it for the next feed
        self._carry = lines.pop() + ("\r" if pending_cr else "")

        frames = []
        for line in lines:
            frame = self._process_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> List[SSEFrame]:
        """Finish the stream: resolve dangling bytes and emit any unterminated frame."""
        frames = self.feed_text(self._decoder.decode(b"", final=True))

        if self._carry:
            line = self._carry.rstrip("\r")
            self._carry = ""
            frame = self._process_line(line)
            if frame is not None:
                frames.append(frame)

        if self._payload:
            frames.append(self._dispatch())
        return frames

    def _process_line(self, line: str) -> Optional[SSEFrame]:
        if line.startswith(_EVENT_PREFIX):
            self._event_kind = line[len(_EVENT_PREFIX):].strip()
        elif line.startswith(_DATA_PREFIX):
            self._payload = line[len(_DATA_PREFIX):]
        elif line == "" and self._payload:
            return self._dispatch()
        # Comments (":..."), unknown fields and keep-alive blank lines fall through
        return None

    def _dispatch(self) -> SSEFrame:
        frame = SSEFrame(
            event_kind=self._event_kind or DEFAULT_EVENT_KIND,
            raw_payload=self._payload,
        )
        self._event_kind = None
        self._payload = ""
        return frame


async def sse_decode(stream: AsyncIterable[bytes]) -> AsyncGenerator[SSEFrame, None]:
    """Decode SSE frames from an async byte stream.

    Yields SSEFrame objects as soon as their terminating blank line arrives.
    When the stream ends, a frame whose `data: ` line was never followed by a
    blank line is still yielded.

    The next chunk is only read after the caller has consumed every frame
    from the current one.
    """
    parser = SSEFrameParser()

    async for chunk in stream:
        for frame in parser.feed(chunk):
            yield frame

    for frame in parser.flush():
        yield frame
