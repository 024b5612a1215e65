import pytest
import asyncio
import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from httpwire import (
    HttpWireError, build_response, parse_head, read_head, relay_body, serialize_head, strip_hop_by_hop,
)


def feed(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


class TestParseHead:
    def test_request_head(self):
        head = parse_head(b"GET http://example.com/test HTTP/1.1\r\nHost: example.com\r\nAccept: */*")
        assert head.start_line == ("GET", "http://example.com/test", "HTTP/1.1")
        assert head.get("host") == "example.com"
        assert head.get("missing") is None

    def test_status_line_without_reason(self):
        head = parse_head(b"HTTP/1.1 204\r\nContent-Length: 0")
        assert head.start_line == ("HTTP/1.1", "204", "")
        assert head.content_length == 0

    def test_malformed_start_line(self):
        with pytest.raises(HttpWireError):
            parse_head(b"garbage\r\nHost: x")

    @pytest.mark.parametrize("status_line", [b"HTTP/1.1 abc OK", b"HTTP/1.1 20 OK", b"HTTP/1.1 2000 OK"])
    def test_status_code_must_be_three_digits(self, status_line):
        with pytest.raises(HttpWireError):
            parse_head(status_line + b"\r\nContent-Length: 0")

    def test_status_code(self):
        assert parse_head(b"HTTP/1.1 502 Bad Gateway").status_code == 502

    def test_malformed_header(self):
        with pytest.raises(HttpWireError):
            parse_head(b"GET / HTTP/1.1\r\nno colon here")

    def test_invalid_content_length(self):
        head = parse_head(b"HTTP/1.1 200 OK\r\nContent-Length: ten")
        with pytest.raises(HttpWireError):
            head.content_length

    def test_connection_persistence(self):
        assert parse_head(b"GET / HTTP/1.1\r\nConnection: close").wants_close()
        assert not parse_head(b"GET / HTTP/1.1\r\nHost: x").wants_close()
        assert parse_head(b"GET / HTTP/1.0\r\nHost: x").wants_close()
        assert not parse_head(b"GET / HTTP/1.0\r\nConnection: keep-alive").wants_close()
        assert parse_head(b"HTTP/1.0 200 OK\r\nContent-Length: 2").wants_close()


def test_strip_hop_by_hop_includes_connection_listed_names():
    headers = [
        ("Host", "example.com"), ("Connection", "keep-alive, X-Trace"), ("Keep-Alive", "timeout=5"),
        ("Proxy-Connection", "keep-alive"), ("X-Trace", "1"), ("Transfer-Encoding", "chunked"),
        ("Cache-Control", "no-cache"),
    ]
    assert strip_hop_by_hop(headers) == [("Host", "example.com"), ("Cache-Control", "no-cache")]


def test_build_response():
    raw = build_response(404, b"Not Found", keep_alive=False)
    head_bytes, _, body = raw.partition(b"\r\n\r\n")
    head = parse_head(head_bytes)
    assert head.start_line == ("HTTP/1.1", "404", "Not Found")
    assert head.content_length == len(b"Not Found")
    assert head.get("Connection") == "close"
    assert body == b"Not Found"


def test_serialize_head():
    assert serialize_head(("GET", "/test", "HTTP/1.1"), [("Host", "a")]) == b"GET /test HTTP/1.1\r\nHost: a\r\n\r\n"


class TestReadHead:
    def test_clean_eof_returns_none(self):
        async def scenario():
            return await read_head(feed(b""))
        assert asyncio.run(scenario()) is None

    def test_truncated_head_raises(self):
        async def scenario():
            return await read_head(feed(b"GET / HTTP/1.1\r\nHost:"))
        with pytest.raises(HttpWireError):
            asyncio.run(scenario())

    def test_pipelined_heads_are_read_one_at_a_time(self):
        async def scenario():
            reader = feed(b"GET /a HTTP/1.1\r\nHost: x\r\n\r\nGET /b HTTP/1.1\r\nHost: x\r\n\r\n")
            first = await read_head(reader)
            second = await read_head(reader)
            return first.start_line[1], second.start_line[1], await read_head(reader)
        assert asyncio.run(scenario()) == ("/a", "/b", None)


class TestRelayBody:
    def test_content_length_body(self):
        async def scenario():
            head = parse_head(b"HTTP/1.1 200 OK\r\nContent-Length: 5")
            reader = feed(b"helloEXTRA")
            size, delimited = await relay_body(reader, None, head, is_request=False)
            return size, delimited, await reader.read()
        assert asyncio.run(scenario()) == (5, True, b"EXTRA")

    def test_chunked_body_counts_payload_bytes(self):
        async def scenario():
            head = parse_head(b"HTTP/1.1 200 OK\r\nTransfer-Encoding: chunked")
            reader = feed(b"4\r\nWiki\r\n5\r\npedia\r\n0\r\n\r\n")
            return await relay_body(reader, None, head, is_request=False)
        assert asyncio.run(scenario()) == (9, True)

    def test_truncated_chunked_body(self):
        async def scenario():
            head = parse_head(b"HTTP/1.1 200 OK\r\nTransfer-Encoding: chunked")
            return await relay_body(feed(b"10\r\nshort"), None, head, is_request=False)
        with pytest.raises(HttpWireError):
            asyncio.run(scenario())

    def test_short_content_length_body(self):
        async def scenario():
            head = parse_head(b"HTTP/1.1 200 OK\r\nContent-Length: 50")
            return await relay_body(feed(b"short"), None, head, is_request=False)
        with pytest.raises(HttpWireError):
            asyncio.run(scenario())

    def test_undelimited_response_runs_to_eof(self):
        async def scenario():
            head = parse_head(b"HTTP/1.1 200 OK\r\nContent-Type: text/plain")
            return await relay_body(feed(b"all of it"), None, head, is_request=False)
        assert asyncio.run(scenario()) == (9, False)

    def test_request_without_length_has_no_body(self):
        async def scenario():
            head = parse_head(b"GET / HTTP/1.1\r\nHost: x")
            return await relay_body(feed(b"GET /next HTTP/1.1\r\n\r\n"), None, head, is_request=True)
        assert asyncio.run(scenario()) == (0, True)

    @pytest.mark.parametrize("status, method", [("204", "GET"), ("304", "GET"), ("200", "HEAD")])
    def test_bodiless_responses(self, status, method):
        async def scenario():
            head = parse_head(f"HTTP/1.1 {status} X\r\nContent-Length: 10".encode())
            return await relay_body(feed(b""), None, head, is_request=False, request_method=method)
        assert asyncio.run(scenario()) == (0, True)
