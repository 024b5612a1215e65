import asyncio
import logging
import os
import time
from typing import Optional, Tuple
from urllib.parse import urlsplit

from config import PROXY_UPSTREAM_CONNECT_TIMEOUT_SECONDS, PROXY_VIA, RESULTS_DIR
from httpwire import (
    HttpWireError, MessageHead, build_response, close_writer, pipe, read_head,
    relay_body, serialize_head, strip_hop_by_hop,
)
from metrics import (
    CONNECT_ERROR, PROTOCOL_ERROR, PROXY_UPSTREAM_ERROR, ResultSet, Sample, format_latency, summarize,
)
from report import save_results_csv

logger = logging.getLogger(__name__)

UPSTREAM_ERROR_HEADER = ("X-Proxy-Error", "upstream-unreachable")


class ProxyForwarder:
    def __init__(self, listen_host: str, listen_port: int, upstream: Optional[str] = None,
                 connect_timeout: float = PROXY_UPSTREAM_CONNECT_TIMEOUT_SECONDS,
                 results_dir: Optional[str] = RESULTS_DIR):
        self.listen_host = listen_host
        self.listen_port = listen_port
        self.upstream = urlsplit(upstream) if upstream else None
        self.connect_timeout = connect_timeout
        self.results_dir = results_dir

        self._stop_event = asyncio.Event()
        self._server_obj: Optional[asyncio.AbstractServer] = None
        self.server_task: Optional[asyncio.Task] = None
        # Forwarded exchanges are sampled the same way the client samples direct calls
        self.request_log = ResultSet()
        self._next_index = 0
        self._client_writers = set()

    @property
    def port(self) -> int:
        if self._server_obj and self._server_obj.sockets:
            return self._server_obj.sockets[0].getsockname()[1]
        return self.listen_port

    @property
    def url(self) -> str:
        return f"http://{self.listen_host}:{self.port}"

    def _record(self, started_at: float, reason: Optional[str] = None, status_code: Optional[int] = None,
                size: int = 0):
        if self.request_log.closed:
            return
        index = self._next_index
        self._next_index += 1
        ended_at = time.perf_counter()
        if reason is None:
            sample = Sample.success(index, started_at, ended_at, status_code, size)
        else:
            sample = Sample.failure(index, started_at, ended_at, reason, status_code)
        self.request_log.append(sample)

    async def _open_upstream(self, host: str, port: int) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        return await asyncio.wait_for(asyncio.open_connection(host, port), timeout=self.connect_timeout)

    async def _reply_error(self, client_writer: asyncio.StreamWriter, status: int, message: str,
                           upstream_failure: bool = False):
        headers = [UPSTREAM_ERROR_HEADER] if upstream_failure else []
        client_writer.write(build_response(status, message.encode("utf-8"), headers, keep_alive=False))
        await client_writer.drain()

    async def _discard_request_body(self, client_reader: asyncio.StreamReader, head: MessageHead):
        # Unread request bytes turn the close into a reset, which can discard the reply
        try:
            await relay_body(client_reader, None, head, is_request=True)
        except HttpWireError as e:
            logger.debug(f"Request body left unread: {e}")

    def _resolve_destination(self, head: MessageHead) -> Tuple[str, int, str, str]:
        """Returns (host, port, origin-form target, Host header value)."""
        request_target = head.start_line[1]
        if request_target.startswith("/"):
            if self.upstream is None:
                raise HttpWireError("Origin-form request and no upstream configured")
            host = self.upstream.hostname
            port = self.upstream.port or 80
            return host, port, request_target, self.upstream.netloc
        parts = urlsplit(request_target)
        if parts.scheme != "http" or not parts.hostname:
            raise HttpWireError(f"Unsupported request target {request_target[:80]!r}")
        path = parts.path or "/"
        if parts.query:
            path = f"{path}?{parts.query}"
        return parts.hostname, parts.port or 80, path, parts.netloc

    async def _handle_client_connection(self, client_reader: asyncio.StreamReader,
                                        client_writer: asyncio.StreamWriter):
        client_addr = client_writer.get_extra_info('peername')
        logger.debug(f"Client connection from {client_addr}")
        self._client_writers.add(client_writer)
        try:
            while not self._stop_event.is_set():
                try:
                    head = await read_head(client_reader)
                except HttpWireError as e:
                    logger.warning(f"Bad request from {client_addr}: {e}")
                    await self._reply_error(client_writer, 400, "Bad Request")
                    break
                if head is None:
                    break
                if head.start_line[0] == "CONNECT":
                    await self._tunnel(head, client_reader, client_writer)
                    break
                if not await self._forward(head, client_reader, client_writer):
                    break
        except asyncio.CancelledError:
            logger.debug(f"Client handler for {client_addr} cancelled.")
        except (ConnectionResetError, BrokenPipeError):
            logger.warning(f"Client connection {client_addr} reset/broken.")
        except Exception as e:
            logger.error(f"Error handling client {client_addr}: {e}", exc_info=True)
        finally:
            self._client_writers.discard(client_writer)
            await close_writer(client_writer)
            logger.debug(f"Closed client connection from {client_addr}")

    async def _tunnel(self, head: MessageHead, client_reader: asyncio.StreamReader,
                      client_writer: asyncio.StreamWriter):
        started_at = time.perf_counter()
        authority = head.start_line[1]
        host, _, port_text = authority.rpartition(":")
        if not host or not port_text.isdigit():
            await self._reply_error(client_writer, 400, f"Bad CONNECT authority {authority!r}")
            self._record(started_at, PROTOCOL_ERROR, 400)
            return
        try:
            upstream_reader, upstream_writer = await self._open_upstream(host.strip("[]"), int(port_text))
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"CONNECT to {authority} failed: {e}")
            await self._reply_error(client_writer, 502, f"Upstream {authority} unreachable", upstream_failure=True)
            self._record(started_at, PROXY_UPSTREAM_ERROR, 502)
            return

        client_writer.write(f"{head.start_line[2]} 200 Connection Established\r\nVia: {PROXY_VIA}\r\n\r\n"
                            .encode("latin-1"))
        await client_writer.drain()
        logger.debug(f"Tunnel open to {authority}")
        to_upstream = asyncio.create_task(pipe(client_reader, upstream_writer))
        to_client = asyncio.create_task(pipe(upstream_reader, client_writer))
        try:
            done, pending = await asyncio.wait({to_upstream, to_client}, return_when=asyncio.FIRST_COMPLETED)
            # One side finished; give the other a moment to flush what it already has
            if pending:
                await asyncio.wait(pending, timeout=self.connect_timeout)
        finally:
            for task in (to_upstream, to_client):
                task.cancel()
            await asyncio.gather(to_upstream, to_client, return_exceptions=True)
            await close_writer(upstream_writer)
        relayed = 0
        if to_client.done() and not to_client.cancelled() and to_client.exception() is None:
            relayed = to_client.result()
        self._record(started_at, status_code=200, size=relayed)
        logger.debug(f"Tunnel to {authority} closed after relaying {relayed} bytes downstream")

    async def _forward(self, head: MessageHead, client_reader: asyncio.StreamReader,
                       client_writer: asyncio.StreamWriter) -> bool:
        """Relay one request/response exchange. Returns True if the client connection stays usable."""
        started_at = time.perf_counter()
        method, _, version = head.start_line
        try:
            head.content_length  # Request framing must be readable before anything is relayed
            host, port, origin_target, host_header = self._resolve_destination(head)
        except HttpWireError as e:
            logger.warning(f"Rejecting request {method} {head.start_line[1][:80]}: {e}")
            await self._discard_request_body(client_reader, head)
            await self._reply_error(client_writer, 400, str(e))
            self._record(started_at, PROTOCOL_ERROR, 400)
            return False

        try:
            upstream_reader, upstream_writer = await self._open_upstream(host, port)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Upstream {host}:{port} unreachable for {method} {origin_target}: {e}")
            await self._discard_request_body(client_reader, head)
            await self._reply_error(client_writer, 502, f"Upstream {host}:{port} unreachable", upstream_failure=True)
            self._record(started_at, PROXY_UPSTREAM_ERROR, 502)
            return False

        try:
            headers = [(k, v) for k, v in strip_hop_by_hop(head.headers) if k.lower() != "host"]
            headers.insert(0, ("Host", host_header))
            if head.is_chunked:
                headers.append(("Transfer-Encoding", "chunked"))
            headers.append(("Via", PROXY_VIA))
            headers.append(("Connection", "close"))
            upstream_writer.write(serialize_head((method, origin_target, "HTTP/1.1"), headers))
            await relay_body(client_reader, upstream_writer, head, is_request=True)

            try:
                response_head = await read_head(upstream_reader)
                if response_head is not None:
                    status_code = response_head.status_code
                    response_head.content_length
            except HttpWireError as e:
                response_head = None
                logger.warning(f"Malformed response from {host}:{port}: {e}")
            if response_head is None:
                # Nothing has reached the client yet, so it still gets a gateway error
                await self._reply_error(client_writer, 502, f"Upstream {host}:{port} sent no usable response",
                                        upstream_failure=True)
                self._record(started_at, PROXY_UPSTREAM_ERROR, 502)
                return False

            keep_alive = not head.wants_close() and (
                response_head.is_chunked or response_head.content_length is not None)
            response_headers = strip_hop_by_hop(response_head.headers)
            if response_head.is_chunked:
                response_headers.append(("Transfer-Encoding", "chunked"))
            response_headers.append(("Via", PROXY_VIA))
            response_headers.append(("Connection", "keep-alive" if keep_alive else "close"))
            client_writer.write(serialize_head((version, *response_head.start_line[1:]), response_headers))
            size, delimited = await relay_body(upstream_reader, client_writer, response_head,
                                               is_request=False, request_method=method)
            await client_writer.drain()
            self._record(started_at, status_code=status_code, size=size)
            logger.debug(f"{method} {host}:{port}{origin_target} -> {status_code} ({size} bytes)")
            return keep_alive and delimited
        except HttpWireError as e:
            logger.warning(f"Relay of {method} {origin_target} to {host}:{port} broke: {e}")
            self._record(started_at, PROTOCOL_ERROR)
            return False
        except (ConnectionResetError, BrokenPipeError) as e:
            logger.warning(f"Connection reset while relaying {method} {origin_target}: {e}")
            self._record(started_at, CONNECT_ERROR)
            return False
        finally:
            await close_writer(upstream_writer)

    async def start(self):
        logger.info(f"Starting proxy forwarder on {self.listen_host}:{self.listen_port}, "
                    f"upstream: {self.upstream.geturl() if self.upstream else 'from request'}")
        self._stop_event.clear()
        try:
            self._server_obj = await asyncio.start_server(
                self._handle_client_connection, self.listen_host, self.listen_port)
            logger.info(f"Proxy listening on {self._server_obj.sockets[0].getsockname()}")
            self.server_task = asyncio.create_task(self._server_obj.serve_forever(), name="ProxyForwarder")
        except Exception as e:
            logger.error(f"Failed to start proxy forwarder: {e}", exc_info=True)
            await self.stop()
            raise

    def request_stop(self):
        self._stop_event.set()

    async def serve_until_stopped(self):
        await self._stop_event.wait()

    async def stop(self):
        logger.info("Stopping proxy forwarder...")
        self._stop_event.set()
        if self._server_obj:
            self._server_obj.close()
        for writer in list(self._client_writers):
            writer.close()
        if self.server_task and not self.server_task.done():
            self.server_task.cancel()
            await asyncio.gather(self.server_task, return_exceptions=True)
        if self._server_obj:
            await self._server_obj.wait_closed()
            self._server_obj = None
        self.request_log.close()
        self._log_summary()
        self._save_request_log()
        logger.info("Proxy forwarder stopped.")

    def _log_summary(self):
        if not len(self.request_log):
            return
        summary = summarize(self.request_log)
        logger.info(f"Proxy forwarded {summary.total} exchanges: {summary.succeeded} ok, {summary.failed} failed, "
                    f"mean {format_latency(summary.mean_latency)}ms")

    def _save_request_log(self):
        if not len(self.request_log) or not self.results_dir:
            return
        log_filename = os.path.join(self.results_dir, f"proxy_request_log_{time.strftime('%Y%m%d-%H%M%S')}.csv")
        try:
            save_results_csv(self.request_log, log_filename)
            logger.info(f"Proxy request log saved to {log_filename}")
        except OSError as e:
            logger.error(f"Failed to save proxy request log: {e}", exc_info=True)
