import asyncio
import logging
import ssl
import time
from typing import Optional

from config import KILL_PATH, TEST_PATH
from httpwire import HttpWireError, build_response, close_writer, read_head, relay_body

logger = logging.getLogger(__name__)


class ResponderServer:
    """Minimal HTTP endpoint the harness measures against.

    `/test` answers 200 "OK", `/kill` answers 200 and shuts the server down,
    anything else is 404. Request bodies are drained and discarded.
    """

    def __init__(self, host: str, port: int, ssl_context: Optional[ssl.SSLContext] = None,
                 response_delay_ms: float = 0.0, body: bytes = b"OK"):
        self.host = host
        self.listen_port = port
        self.ssl_context = ssl_context
        self.response_delay_ms = response_delay_ms
        self.body = body

        self.processed_requests_count = 0
        self.total_processing_time_ms = 0.0
        self._stop_event = asyncio.Event()
        self._server_obj: Optional[asyncio.AbstractServer] = None
        self.server_task: Optional[asyncio.Task] = None
        self._client_writers = set()

    @property
    def port(self) -> int:
        if self._server_obj and self._server_obj.sockets:
            return self._server_obj.sockets[0].getsockname()[1]
        return self.listen_port

    @property
    def url(self) -> str:
        scheme = "https" if self.ssl_context else "http"
        return f"{scheme}://{self.host}:{self.port}"

    def _route(self, target: str) -> str:
        """Request target reduced to its path, without query or trailing slash."""
        path = target.split("?", 1)[0]
        if not path.startswith("/"):
            # Absolute-form, as sent by clients that think we are a proxy
            path = "/" + path.split("://", 1)[-1].partition("/")[2]
        return path.rstrip("/")

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        peer = writer.get_extra_info('peername')
        self._client_writers.add(writer)
        try:
            while not self._stop_event.is_set():
                try:
                    head = await read_head(reader)
                except HttpWireError as e:
                    logger.warning(f"Malformed request from {peer}: {e}")
                    writer.write(build_response(400, b"Bad Request", keep_alive=False))
                    await writer.drain()
                    break
                if head is None:
                    break
                start_time = time.perf_counter()
                method, target, _ = head.start_line
                await relay_body(reader, None, head, is_request=True)

                if self.response_delay_ms > 0:
                    await asyncio.sleep(self.response_delay_ms / 1000.0)

                path = self._route(target)
                status = 200 if path in (TEST_PATH, KILL_PATH) else 404
                kill = path == KILL_PATH
                keep_alive = not head.wants_close() and not kill
                body = self.body if status == 200 else b"Not Found"
                writer.write(build_response(status, body, keep_alive=keep_alive))
                await writer.drain()

                self.processed_requests_count += 1
                self.total_processing_time_ms += (time.perf_counter() - start_time) * 1000
                logger.debug(f"{method} {target} from {peer} -> {status}")
                if kill:
                    logger.info(f"Kill request received from {peer}; shutting down.")
                    self._stop_event.set()
                    break
                if not keep_alive:
                    break
        except asyncio.CancelledError:
            logger.debug(f"Handler for {peer} cancelled.")
        except (ConnectionResetError, BrokenPipeError):
            logger.debug(f"Connection {peer} reset/broken.")
        except Exception as e:
            logger.error(f"Error serving {peer}: {e}", exc_info=True)
        finally:
            self._client_writers.discard(writer)
            await close_writer(writer)

    async def start(self):
        self._stop_event.clear()
        self._server_obj = await asyncio.start_server(
            self._handle_connection, self.host, self.listen_port, ssl=self.ssl_context)
        self.server_task = asyncio.create_task(self._server_obj.serve_forever(), name="ResponderServer")
        logger.info(f"Responder listening on {self.url}{TEST_PATH}/")

    def request_stop(self):
        self._stop_event.set()

    async def wait_stopped(self):
        """Block until /kill is requested or stop() is called."""
        await self._stop_event.wait()

    async def stop(self):
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
        avg = (self.total_processing_time_ms / self.processed_requests_count) \
            if self.processed_requests_count > 0 else 0.0
        logger.info(f"Responder stopped after {self.processed_requests_count} requests "
                    f"(avg handling {avg:.2f}ms).")
