# httpwire.py
import asyncio
import logging
from typing import List, NamedTuple, Optional, Tuple

from config import MAX_HEADER_BYTES, RELAY_CHUNK_SIZE

logger = logging.getLogger(__name__)

Headers = List[Tuple[str, str]]

HOP_BY_HOP_HEADERS = frozenset({
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "proxy-connection", "te", "trailer", "transfer-encoding", "upgrade",
})

REASONS = {
    200: "OK", 400: "Bad Request", 404: "Not Found", 405: "Method Not Allowed",
    500: "Internal Server Error", 502: "Bad Gateway", 504: "Gateway Timeout",
}


class HttpWireError(Exception):
    """Malformed HTTP/1.x framing read from a peer."""


class MessageHead(NamedTuple):
    start_line: Tuple[str, str, str]  # (method, target, version) or (version, status, reason)
    headers: Headers

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return get_header(self.headers, name, default)

    @property
    def is_chunked(self) -> bool:
        return "chunked" in (self.get("Transfer-Encoding") or "").lower()

    @property
    def content_length(self) -> Optional[int]:
        value = self.get("Content-Length")
        if value is None:
            return None
        try:
            length = int(value)
        except ValueError as e:
            raise HttpWireError(f"Invalid Content-Length: {value!r}") from e
        if length < 0:
            raise HttpWireError(f"Negative Content-Length: {value!r}")
        return length

    @property
    def status_code(self) -> int:
        return _status_code(self.start_line[1])

    def wants_close(self) -> bool:
        tokens = connection_tokens(self.headers)
        if "close" in tokens:
            return True
        # HTTP/1.0 peers close unless they asked for keep-alive
        version = self.start_line[0] if self.start_line[0].startswith("HTTP/") else self.start_line[2]
        return version == "HTTP/1.0" and "keep-alive" not in tokens


def _status_code(text: str) -> int:
    if len(text) != 3 or not text.isdigit():
        raise HttpWireError(f"Invalid status code: {text[:20]!r}")
    return int(text)


def get_header(headers: Headers, name: str, default: Optional[str] = None) -> Optional[str]:
    lowered = name.lower()
    for key, value in headers:
        if key.lower() == lowered:
            return value
    return default


def connection_tokens(headers: Headers) -> List[str]:
    tokens = []
    for key, value in headers:
        if key.lower() in ("connection", "proxy-connection"):
            tokens.extend(t.strip().lower() for t in value.split(",") if t.strip())
    return tokens


def strip_hop_by_hop(headers: Headers) -> Headers:
    extra = set(connection_tokens(headers))
    return [(k, v) for k, v in headers
            if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() not in extra]


def parse_head(raw: bytes) -> MessageHead:
    lines = raw.decode("latin-1").split("\r\n")
    parts = lines[0].split(" ", 2)
    if len(parts) == 2:
        parts.append("")  # Status lines may omit the reason phrase
    if len(parts) != 3 or not all(parts[:2]):
        raise HttpWireError(f"Malformed start line: {lines[0][:80]!r}")
    if parts[0].startswith("HTTP/"):
        _status_code(parts[1])
    headers: Headers = []
    for line in lines[1:]:
        if not line:
            continue
        if ":" not in line:
            raise HttpWireError(f"Malformed header line: {line[:80]!r}")
        key, value = line.split(":", 1)
        headers.append((key.strip(), value.strip()))
    return MessageHead((parts[0], parts[1], parts[2]), headers)


async def read_head(reader: asyncio.StreamReader) -> Optional[MessageHead]:
    """Read one message head. Returns None when the peer closed cleanly first."""
    try:
        raw = await reader.readuntil(b"\r\n\r\n")
    except asyncio.IncompleteReadError as e:
        if not e.partial.strip():
            return None
        raise HttpWireError("Connection closed in the middle of a message head") from e
    except asyncio.LimitOverrunError as e:
        raise HttpWireError(f"Message head exceeds {MAX_HEADER_BYTES} bytes") from e
    return parse_head(raw[:-4])


def serialize_head(start_line: Tuple[str, str, str], headers: Headers) -> bytes:
    lines = [" ".join(start_line)]
    lines.extend(f"{k}: {v}" for k, v in headers)
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")


def build_response(status: int, body: bytes = b"", headers: Optional[Headers] = None,
                   keep_alive: bool = True, content_type: str = "text/plain") -> bytes:
    all_headers: Headers = [("Content-Type", content_type), ("Content-Length", str(len(body)))]
    all_headers.extend(headers or [])
    all_headers.append(("Connection", "keep-alive" if keep_alive else "close"))
    return serialize_head(("HTTP/1.1", str(status), REASONS.get(status, "Unknown")), all_headers) + body


def response_has_body(status: int, request_method: str) -> bool:
    return not (request_method == "HEAD" or 100 <= status < 200 or status in (204, 304))


async def _copy_exact(reader: asyncio.StreamReader, writer: Optional[asyncio.StreamWriter], length: int) -> int:
    remaining = length
    while remaining > 0:
        chunk = await reader.read(min(RELAY_CHUNK_SIZE, remaining))
        if not chunk:
            raise HttpWireError(f"Body ended {remaining} bytes early")
        remaining -= len(chunk)
        if writer is not None:
            writer.write(chunk)
            await writer.drain()
    return length


async def _copy_chunked(reader: asyncio.StreamReader, writer: Optional[asyncio.StreamWriter]) -> int:
    # Frames are relayed verbatim so the receiver sees the sender's chunking
    total = 0
    while True:
        size_line = await reader.readline()
        if not size_line.endswith(b"\r\n"):
            raise HttpWireError("Chunked body ended without a terminating chunk")
        try:
            size = int(size_line.split(b";", 1)[0].strip(), 16)
        except ValueError as e:
            raise HttpWireError(f"Invalid chunk size line: {size_line[:40]!r}") from e
        if writer is not None:
            writer.write(size_line)
        if size == 0:
            while True:
                trailer = await reader.readline()
                if writer is not None:
                    writer.write(trailer)
                if trailer in (b"\r\n", b""):
                    break
            if writer is not None:
                await writer.drain()
            return total
        try:
            data = await reader.readexactly(size + 2)
        except asyncio.IncompleteReadError as e:
            raise HttpWireError("Chunk truncated") from e
        total += size
        if writer is not None:
            writer.write(data)
            await writer.drain()


async def _copy_until_eof(reader: asyncio.StreamReader, writer: Optional[asyncio.StreamWriter]) -> int:
    total = 0
    while True:
        chunk = await reader.read(RELAY_CHUNK_SIZE)
        if not chunk:
            return total
        total += len(chunk)
        if writer is not None:
            writer.write(chunk)
            await writer.drain()


async def relay_body(reader: asyncio.StreamReader, writer: Optional[asyncio.StreamWriter],
                     head: MessageHead, is_request: bool, request_method: str = "GET") -> Tuple[int, bool]:
    """Stream the body described by `head` from reader to writer (None discards it).

    Returns (body bytes, delimited) where delimited is False when the body ran to EOF
    and the connection therefore cannot be reused.
    """
    if not is_request and not response_has_body(head.status_code, request_method):
        return 0, True
    if head.is_chunked:
        return await _copy_chunked(reader, writer), True
    length = head.content_length
    if length is not None:
        return await _copy_exact(reader, writer, length), True
    if is_request:
        return 0, True
    return await _copy_until_eof(reader, writer), False


async def pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> int:
    """Copy bytes one way until EOF, then half-close the destination."""
    total = 0
    try:
        while True:
            data = await reader.read(RELAY_CHUNK_SIZE)
            if not data:
                break
            total += len(data)
            writer.write(data)
            await writer.drain()
    except (ConnectionResetError, BrokenPipeError) as e:
        logger.debug(f"Tunnel direction closed early: {e}")
    finally:
        if not writer.is_closing() and writer.can_write_eof():
            try:
                writer.write_eof()
            except OSError:
                pass
    return total


async def close_writer(writer: Optional[asyncio.StreamWriter]):
    if writer is None or writer.is_closing():
        return
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionResetError, BrokenPipeError, OSError) as e:
        logger.debug(f"Error while closing stream: {e}")
