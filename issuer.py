import logging
import ssl
import time
from typing import Callable, Optional, Tuple

import httpx

from config import PROBE_HEADERS, REQUEST_TIMEOUT_SECONDS, TlsPolicy
from metrics import (
    CONNECT_ERROR, PROTOCOL_ERROR, PROXY_UPSTREAM_ERROR, STATUS_ERROR, TLS_ERROR, Sample,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

GATEWAY_STATUSES = (502, 504)


def build_client(proxy: Optional[str] = None, tls_policy: TlsPolicy = TlsPolicy.VALIDATE,
                 timeout: float = REQUEST_TIMEOUT_SECONDS, max_connections: int = 1) -> httpx.AsyncClient:
    """Client carrying the run's routing and TLS policy; nothing here is process-wide."""
    return httpx.AsyncClient(
        proxy=proxy,
        verify=tls_policy.verify,
        timeout=httpx.Timeout(timeout),
        limits=httpx.Limits(max_connections=max_connections, max_keepalive_connections=max_connections),
        trust_env=False,  # HTTP(S)_PROXY from the environment must not reroute probes
    )


def _caused_by_ssl(exc: BaseException) -> bool:
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, ssl.SSLError):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False


def classify_error(exc: Exception) -> str:
    if isinstance(exc, httpx.ProxyError):
        return PROXY_UPSTREAM_ERROR
    if isinstance(exc, (httpx.ConnectError, httpx.ReadError, httpx.WriteError)) and _caused_by_ssl(exc):
        return TLS_ERROR
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
        return CONNECT_ERROR
    # Malformed responses, decoding failures and anything else httpx rejects
    return PROTOCOL_ERROR


def classify_status(status_code: int, proxied: bool) -> Optional[str]:
    if proxied and status_code in GATEWAY_STATUSES:
        return PROXY_UPSTREAM_ERROR
    if status_code >= 400:
        return STATUS_ERROR
    return None


async def _send(client: httpx.AsyncClient, target: str, content: Optional[bytes],
                keep_body: bool) -> Tuple[int, int, bytes]:
    method = "POST" if content is not None else "GET"
    async with client.stream(method, target, headers=PROBE_HEADERS, content=content) as response:
        if keep_body:
            body = await response.aread()
            return response.status_code, len(body), body
        size = 0
        async for chunk in response.aiter_raw():
            size += len(chunk)
        return response.status_code, size, b""


async def issue(client: httpx.AsyncClient, target: str, attempt_index: int, *,
                proxied: bool = False, content: Optional[bytes] = None,
                clock: Clock = time.perf_counter) -> Sample:
    sample, _ = await _issue(client, target, attempt_index, proxied, content, clock, keep_body=False)
    return sample


async def echo(client: httpx.AsyncClient, target: str, *, proxied: bool = False,
               clock: Clock = time.perf_counter) -> Tuple[Sample, str]:
    """Single probe that also hands back the decoded response body."""
    sample, body = await _issue(client, target, 0, proxied, None, clock, keep_body=True)
    return sample, body.decode("utf-8", errors="replace")


async def _issue(client: httpx.AsyncClient, target: str, attempt_index: int, proxied: bool,
                 content: Optional[bytes], clock: Clock, keep_body: bool) -> Tuple[Sample, bytes]:
    started_at = clock()
    try:
        status_code, size, body = await _send(client, target, content, keep_body)
    except httpx.HTTPError as e:
        ended_at = clock()
        reason = classify_error(e)
        logger.debug(f"Attempt {attempt_index} to {target} failed ({reason}): {e!r}")
        return Sample.failure(attempt_index, started_at, ended_at, reason), b""
    except OSError as e:
        ended_at = clock()
        reason = TLS_ERROR if isinstance(e, ssl.SSLError) else CONNECT_ERROR
        logger.debug(f"Attempt {attempt_index} to {target} failed at socket level ({reason}): {e!r}")
        return Sample.failure(attempt_index, started_at, ended_at, reason), b""
    ended_at = clock()

    reason = classify_status(status_code, proxied)
    if reason:
        logger.debug(f"Attempt {attempt_index} to {target} answered {status_code} ({reason})")
        return Sample.failure(attempt_index, started_at, ended_at, reason, status_code), body
    return Sample.success(attempt_index, started_at, ended_at, status_code, size), body
