"""Content-Length framing for the language server byte stream.

Each frame is a block of ``Name: value`` header lines terminated by a blank
line, followed by exactly ``Content-Length`` bytes of payload::

    Content-Length: 52\\r\\n
    \\r\\n
    {"jsonrpc":"2.0","id":1,"method":"initialize",...}

``FrameDecoder`` accumulates raw reads and only ever hands out complete
payloads.
"""

from typing import Dict, Optional

from .errors import ProtocolViolationError

HEADER_TERMINATOR = b"\r\n\r\n"
CONTENT_LENGTH = "content-length"

# A header block larger than this without a terminator is garbage.
MAX_HEADER_BYTES = 8192


def encode_frame(payload: bytes) -> bytes:
    """Prefix a payload with its header block."""
    header = f"Content-Length: {len(payload)}\r\n\r\n"
    return header.encode("ascii") + payload


def parse_headers(block: bytes) -> Dict[str, str]:
    """Parse a header block (without the terminator) into a lower-cased dict.

    Raises:
        ProtocolViolationError: If a line is not a ``Name: value`` pair.
    """
    try:
        text = block.decode("ascii")
    except UnicodeDecodeError as e:
        raise ProtocolViolationError("non-ASCII bytes in frame header", raw=block) from e

    headers: Dict[str, str] = {}
    for line in text.split("\r\n"):
        if not line:
            continue
        if ":" not in line:
            raise ProtocolViolationError(f"malformed header line: {line!r}", raw=block)
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()
    return headers


class FrameDecoder:
    """Incremental decoder turning arbitrary chunks into whole payloads."""

    def __init__(self, max_header_bytes: int = MAX_HEADER_BYTES):
        self._buffer = bytearray()
        self._max_header_bytes = max_header_bytes
        # Payload length of the frame whose header has been consumed
        self._expected: Optional[int] = None

    @property
    def buffered(self) -> int:
        """Number of bytes held that have not yet formed a frame."""
        return len(self._buffer)

    @property
    def has_partial(self) -> bool:
        """True when bytes of an unfinished frame are being held."""
        return self._expected is not None or bool(self._buffer)

    def feed(self, data: bytes) -> None:
        self._buffer.extend(data)

    def next_frame(self) -> Optional[bytes]:
        """Return the next complete payload, or None if more bytes are needed.

        Raises:
            ProtocolViolationError: If a header block is malformed. The bad
                block has already been dropped, so calling again resumes
                with the bytes that follow it.
        """
        if self._expected is None:
            end = self._buffer.find(HEADER_TERMINATOR)
            if end < 0:
                if len(self._buffer) > self._max_header_bytes:
                    raw = bytes(self._buffer)
                    self._buffer.clear()
                    raise ProtocolViolationError(
                        f"no header terminator within {self._max_header_bytes} bytes",
                        raw=raw[:256],
                    )
                return None

            block = bytes(self._buffer[:end])
            del self._buffer[:end + len(HEADER_TERMINATOR)]

            headers = parse_headers(block)
            raw_length = headers.get(CONTENT_LENGTH)
            if raw_length is None:
                raise ProtocolViolationError("frame header has no Content-Length", raw=block)
            try:
                length = int(raw_length)
            except ValueError:
                raise ProtocolViolationError(
                    f"invalid Content-Length: {raw_length!r}", raw=block
                ) from None
            if length < 0:
                raise ProtocolViolationError(f"negative Content-Length: {length}", raw=block)
            self._expected = length

        if len(self._buffer) < self._expected:
            return None

        payload = bytes(self._buffer[:self._expected])
        del self._buffer[:self._expected]
        self._expected = None
        return payload
