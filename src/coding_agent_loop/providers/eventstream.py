"""Decoder for the binary ``application/vnd.amazon.eventstream`` framing.

Each frame::

    total_length:u32 | headers_length:u32 | prelude_crc:u32 | headers | payload | message_crc:u32

All integers are big-endian; both checksums are CRC32. Frames may be split
across reads, so the decoder buffers until a whole frame is available.
"""

from __future__ import annotations

import struct
import uuid
import zlib
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from coding_agent_loop.errors import EventStreamError

_PRELUDE = struct.Struct(">III")
_PRELUDE_LENGTH = _PRELUDE.size
_CRC_LENGTH = 4
_MIN_FRAME = _PRELUDE_LENGTH + _CRC_LENGTH
_MAX_FRAME = 16 * 1024 * 1024 + 128 * 1024

# Header value type tags.
_TRUE, _FALSE, _BYTE, _SHORT, _INT, _LONG, _BYTES, _STRING, _TIMESTAMP, _UUID = range(10)


@dataclass(frozen=True)
class EventStreamMessage:
    headers: dict[str, Any] = field(default_factory=dict)
    payload: bytes = b""


def _decode_headers(data: bytes) -> dict[str, Any]:
    headers: dict[str, Any] = {}
    pos = 0
    try:
        while pos < len(data):
            name_len = data[pos]
            pos += 1
            name = data[pos:pos + name_len].decode("utf-8")
            pos += name_len
            value_type = data[pos]
            pos += 1
            if value_type == _TRUE:
                value: Any = True
            elif value_type == _FALSE:
                value = False
            elif value_type == _BYTE:
                (value,) = struct.unpack_from(">b", data, pos)
                pos += 1
            elif value_type == _SHORT:
                (value,) = struct.unpack_from(">h", data, pos)
                pos += 2
            elif value_type == _INT:
                (value,) = struct.unpack_from(">i", data, pos)
                pos += 4
            elif value_type in (_LONG, _TIMESTAMP):
                (value,) = struct.unpack_from(">q", data, pos)
                pos += 8
            elif value_type in (_BYTES, _STRING):
                (length,) = struct.unpack_from(">H", data, pos)
                pos += 2
                raw = data[pos:pos + length]
                pos += length
                value = raw.decode("utf-8") if value_type == _STRING else bytes(raw)
            elif value_type == _UUID:
                value = str(uuid.UUID(bytes=bytes(data[pos:pos + 16])))
                pos += 16
            else:
                raise EventStreamError(f"Unknown header value type {value_type} for header {name!r}")
            headers[name] = value
    except (IndexError, struct.error, UnicodeDecodeError, ValueError) as ex:
        raise EventStreamError(f"Malformed event-stream headers: {ex}") from ex
    return headers


class EventStreamDecoder:
    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet forming a complete frame."""
        return len(self._buffer)

    def feed(self, data: bytes) -> list[EventStreamMessage]:
        """Buffer ``data`` and return every frame completed by it.

        Raises ``EventStreamError`` when a prelude is corrupt, since frame
        boundaries can no longer be trusted. A frame whose message checksum fails
        is skipped.
        """
        self._buffer.extend(data)
        messages: list[EventStreamMessage] = []

        while len(self._buffer) >= _PRELUDE_LENGTH:
            total_length, headers_length, prelude_crc = _PRELUDE.unpack_from(self._buffer, 0)
            if zlib.crc32(bytes(self._buffer[:8])) != prelude_crc:
                raise EventStreamError("Event-stream prelude checksum mismatch")
            if total_length < _MIN_FRAME or total_length > _MAX_FRAME or headers_length > total_length - _MIN_FRAME:
                raise EventStreamError(
                    f"Invalid event-stream frame lengths: total={total_length}, headers={headers_length}"
                )
            if len(self._buffer) < total_length:
                break

            frame = bytes(self._buffer[:total_length])
            del self._buffer[:total_length]

            (message_crc,) = struct.unpack(">I", frame[-_CRC_LENGTH:])
            if zlib.crc32(frame[:-_CRC_LENGTH]) != message_crc:
                logger.warning(f"Skipping event-stream frame with bad checksum ({total_length} bytes)")
                continue

            headers_end = _PRELUDE_LENGTH + headers_length
            messages.append(EventStreamMessage(
                headers=_decode_headers(frame[_PRELUDE_LENGTH:headers_end]),
                payload=frame[headers_end:-_CRC_LENGTH],
            ))

        return messages


def _encode_header(name: str, value: Any) -> bytes:
    encoded_name = name.encode("utf-8")
    out = struct.pack(">B", len(encoded_name)) + encoded_name
    if isinstance(value, bool):
        return out + struct.pack(">B", _TRUE if value else _FALSE)
    if isinstance(value, int):
        return out + struct.pack(">Bi", _INT, value)
    if isinstance(value, bytes):
        return out + struct.pack(">BH", _BYTES, len(value)) + value
    raw = str(value).encode("utf-8")
    return out + struct.pack(">BH", _STRING, len(raw)) + raw


def encode_message(headers: dict[str, Any], payload: bytes) -> bytes:
    """Encode one frame; the inverse of ``EventStreamDecoder.feed`` for a single message."""
    header_bytes = b"".join(_encode_header(name, value) for name, value in headers.items())
    total_length = _MIN_FRAME + len(header_bytes) + len(payload)
    prelude = struct.pack(">II", total_length, len(header_bytes))
    prelude += struct.pack(">I", zlib.crc32(prelude))
    body = prelude + header_bytes + payload
    return body + struct.pack(">I", zlib.crc32(body))
