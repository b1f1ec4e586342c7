"""
Agent output events

The agent CLI prints one JSON object per line (stream-json). Each complete
line becomes a StreamEvent:
- structured: the parsed object, forwarded verbatim, kind taken from "type"
- raw: anything that is not a JSON object, forwarded as {"type": "raw", "content": line}

Bridge-generated events (errors, end of stream) use the same shape so the
client handles a single tagged union.
"""

import codecs
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class StreamEventKind(str, Enum):
    ASSISTANT = "assistant"
    USER = "user"
    SYSTEM = "system"
    RESULT = "result"
    ERROR = "error"
    RAW = "raw"
    DONE = "done"
    UNKNOWN = "unknown"  # JSON object with a missing or unrecognized "type"

    @classmethod
    def from_type(cls, value: Any) -> "StreamEventKind":
        try:
            kind = cls(value)
        except ValueError:
            return cls.UNKNOWN
        # raw/done are produced by the bridge only
        if kind in (cls.RAW, cls.DONE):
            return cls.UNKNOWN
        return kind


@dataclass
class StreamEvent:
    """One forwarded unit of agent output"""
    kind: StreamEventKind
    payload: Dict[str, Any]

    @classmethod
    def raw(cls, line: str) -> "StreamEvent":
        return cls(StreamEventKind.RAW, {"type": "raw", "content": line})

    @classmethod
    def error(cls, code: str, message: str, retryable: bool = False) -> "StreamEvent":
        return cls(StreamEventKind.ERROR, {
            "type": "error",
            "code": code,
            "message": message,
            "retryable": retryable,
        })

    @classmethod
    def done(cls) -> "StreamEvent":
        return cls(StreamEventKind.DONE, {"type": "done"})

    @property
    def is_raw(self) -> bool:
        return self.kind == StreamEventKind.RAW

    def to_dict(self) -> Dict[str, Any]:
        return self.payload


def parse_line(line: str) -> StreamEvent:
    """Parse one complete output line; never raises"""
    try:
        data = json.loads(line)
    except (json.JSONDecodeError, ValueError):
        return StreamEvent.raw(line)

    if not isinstance(data, dict):
        return StreamEvent.raw(line)

    return StreamEvent(StreamEventKind.from_type(data.get("type")), data)


def assistant_text(event: StreamEvent) -> str:
    """Concatenated text segments of an assistant message event"""
    if event.kind != StreamEventKind.ASSISTANT:
        return ""

    message = event.payload.get("message")
    if not isinstance(message, dict):
        return ""

    content = message.get("content")
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""

    return "".join(
        segment["text"]
        for segment in content
        if isinstance(segment, dict)
        and segment.get("type") == "text"
        and isinstance(segment.get("text"), str)
    )


class LineAssembler:
    """
    Reassemble newline-delimited lines from arbitrary byte chunks.

    NUL bytes are dropped, complete lines are returned as soon as their
    newline arrives, and the trailing fragment waits for the next chunk.
    UTF-8 sequences split across chunks are decoded correctly.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: Union[bytes, str]) -> List[str]:
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._buffer += text.replace("\x00", "")

        *lines, self._buffer = self._buffer.split("\n")
        return [line for line in lines if line.strip()]

    def flush(self) -> Optional[str]:
        """Return the unterminated tail, if any, and reset"""
        tail = (self._buffer + self._decoder.decode(b"", final=True)).replace("\x00", "")
        self._buffer = ""
        return tail if tail.strip() else None

    @property
    def pending(self) -> str:
        return self._buffer
