import asyncio
import logging
import random
import string
import time
from typing import Awaitable, Callable, Dict, Iterator, List, NamedTuple, Optional

import httpx

from config import (
    MAX_STABLE_ATTEMPTS, MIN_STABLE_ATTEMPTS, REQUEST_TIMEOUT_SECONDS, SWEEP_ATTEMPTS_PER_SIZE,
    SWEEP_GROWTH, SWEEP_LIMIT_BYTES, SWEEP_START_BYTES, WARMUP_ATTEMPTS,
    ConfigurationError, TlsPolicy,
)
from issuer import build_client, issue
from metrics import INTERNAL_ERROR, ResultSet, Sample, Summary, format_latency, is_stable, summarize

logger = logging.getLogger(__name__)

Issuer = Callable[..., Awaitable[Sample]]


class HarnessCancelled(Exception):
    """The run was cancelled before any attempt completed."""


class PayloadMeasurement(NamedTuple):
    payload_size: int
    summary: Summary


class BenchmarkDriver:
    def __init__(self, target: str, proxy: Optional[str] = None,
                 tls_policy: TlsPolicy = TlsPolicy.VALIDATE,
                 request_timeout: float = REQUEST_TIMEOUT_SECONDS,
                 payload: Optional[bytes] = None,
                 issuer: Issuer = issue,
                 clock: Callable[[], float] = time.perf_counter):
        self.target = target
        self.proxy = proxy
        self.tls_policy = tls_policy
        self.request_timeout = request_timeout
        self.payload = payload
        self._issuer = issuer
        self._clock = clock
        self._cancel_event = asyncio.Event()

    def cancel(self):
        """Stop dispatching; attempts still in flight are abandoned.

        Cancellation is sticky: a driver cancelled before a run starts refuses
        to dispatch, and any run that ends with no completed attempt raises
        HarnessCancelled.
        """
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _finish_cancelled(self, result_set: ResultSet, elapsed: float, planned: int):
        logger.warning(f"Run cancelled after {elapsed:.2f}s: {len(result_set)} of {planned} "
                       f"attempts completed, {len(result_set.abandoned)} abandoned in flight")
        if len(result_set) == 0:
            raise HarnessCancelled("Run cancelled before any attempt completed")

    def _client(self, concurrency_level: int) -> httpx.AsyncClient:
        return build_client(self.proxy, self.tls_policy, self.request_timeout, concurrency_level)

    async def _issue_one(self, client: httpx.AsyncClient, attempt_index: int) -> Sample:
        started_at = self._clock()
        try:
            return await self._issuer(client, self.target, attempt_index,
                                      proxied=self.proxy is not None, content=self.payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Attempt {attempt_index}: unexpected issuer error: {e}", exc_info=True)
            return Sample.failure(attempt_index, started_at, self._clock(), f"{INTERNAL_ERROR}:{type(e).__name__}")

    async def _attempt(self, client: httpx.AsyncClient, attempt_index: int,
                       result_set: ResultSet, semaphore: asyncio.Semaphore,
                       in_flight: Dict[int, asyncio.Task]):
        try:
            sample = await self._issue_one(client, attempt_index)
            result_set.append(sample)
        finally:
            in_flight.pop(attempt_index, None)
            semaphore.release()

    async def _dispatch(self, client: httpx.AsyncClient, attempt_count: int,
                        result_set: ResultSet, semaphore: asyncio.Semaphore,
                        in_flight: Dict[int, asyncio.Task]):
        for attempt_index in range(attempt_count):
            await semaphore.acquire()
            # Index fixed here, at dispatch; completions may land in any order
            in_flight[attempt_index] = asyncio.create_task(
                self._attempt(client, attempt_index, result_set, semaphore, in_flight),
                name=f"attempt-{attempt_index}")
        remaining = list(in_flight.values())
        if remaining:
            await asyncio.gather(*remaining)

    async def run(self, attempt_count: int, concurrency_level: int = 1,
                  run_timeout: Optional[float] = None) -> ResultSet:
        if attempt_count < 1:
            raise ConfigurationError(f"attempt_count must be >= 1, got {attempt_count}")
        if concurrency_level < 1:
            raise ConfigurationError(f"concurrency_level must be >= 1, got {concurrency_level}")
        concurrency_level = min(concurrency_level, attempt_count)
        if self.cancelled:
            raise HarnessCancelled("Run cancelled before it started")

        logger.info(f"Starting run: {attempt_count} attempts, concurrency {concurrency_level}, "
                    f"target {self.target}, proxy {self.proxy or 'none'}, TLS {self.tls_policy.value}")
        result_set = ResultSet(attempt_count)
        semaphore = asyncio.Semaphore(concurrency_level)
        in_flight: Dict[int, asyncio.Task] = {}
        start_time = time.perf_counter()

        async with self._client(concurrency_level) as client:
            dispatcher = asyncio.create_task(
                self._dispatch(client, attempt_count, result_set, semaphore, in_flight), name="dispatcher")
            cancel_waiter = asyncio.create_task(self._cancel_event.wait(), name="cancel-waiter")
            try:
                done, _ = await asyncio.wait({dispatcher, cancel_waiter}, timeout=run_timeout,
                                             return_when=asyncio.FIRST_COMPLETED)
            finally:
                cancel_waiter.cancel()
                await asyncio.gather(cancel_waiter, return_exceptions=True)
                if not dispatcher.done():
                    result_set.cancelled = True
                    dispatcher.cancel()
                    # Tasks still listed have not appended; some may not have started at all
                    abandoned = list(in_flight.items())
                    for attempt_index, task in abandoned:
                        result_set.mark_abandoned(attempt_index)
                        task.cancel()
                    await asyncio.gather(dispatcher, *(task for _, task in abandoned), return_exceptions=True)
            if dispatcher in done and dispatcher.exception() is not None:
                raise dispatcher.exception()

        result_set.close()
        elapsed = time.perf_counter() - start_time
        if result_set.cancelled:
            self._finish_cancelled(result_set, elapsed, attempt_count)
        else:
            logger.info(f"Run finished in {elapsed:.2f}s with {len(result_set)} samples.")
        return result_set

    async def run_until_stable(self, warmup: int = WARMUP_ATTEMPTS,
                               min_attempts: int = MIN_STABLE_ATTEMPTS,
                               max_attempts: int = MAX_STABLE_ATTEMPTS) -> ResultSet:
        """Sequential attempts until the latency series settles, after a discarded warm-up."""
        if max_attempts < 1 or min_attempts < 1:
            raise ConfigurationError("min_attempts and max_attempts must be >= 1")
        if self.cancelled:
            raise HarnessCancelled("Run cancelled before it started")
        result_set = ResultSet(max_attempts)
        start_time = time.perf_counter()
        async with self._client(1) as client:
            for i in range(warmup):
                if self.cancelled:
                    break
                warm = await self._issue_one(client, -1 - i)
                logger.debug(f"Warm-up probe {i}: {warm.outcome} in {format_latency(warm.elapsed)}ms")
            for attempt_index in range(max_attempts):
                if self.cancelled:
                    result_set.cancelled = True
                    break
                result_set.append(await self._issue_one(client, attempt_index))
                if attempt_index >= min_attempts and is_stable(result_set.latencies(), min_attempts):
                    logger.info(f"Latency stable after {attempt_index + 1} attempts")
                    break
            else:
                logger.info(f"Latency did not settle within {max_attempts} attempts")
        result_set.close()
        if result_set.cancelled:
            self._finish_cancelled(result_set, time.perf_counter() - start_time, max_attempts)
        return result_set


async def run_attempts(target: str, proxy: Optional[str] = None,
                       tls_policy: TlsPolicy = TlsPolicy.VALIDATE,
                       attempt_count: int = 1, concurrency_level: int = 1,
                       request_timeout: float = REQUEST_TIMEOUT_SECONDS,
                       run_timeout: Optional[float] = None) -> ResultSet:
    driver = BenchmarkDriver(target, proxy, tls_policy, request_timeout)
    return await driver.run(attempt_count, concurrency_level, run_timeout)


def sweep_sizes(start: int = SWEEP_START_BYTES, limit: int = SWEEP_LIMIT_BYTES,
                growth: float = SWEEP_GROWTH) -> Iterator[int]:
    size = start
    while size <= limit:
        yield size
        size += max(1, int(size * growth))


def random_payload(size: int) -> bytes:
    alphabet = string.ascii_letters + string.digits
    return "".join(random.choices(alphabet, k=size)).encode("ascii")


async def run_payload_sweep(target: str, proxy: Optional[str] = None,
                            tls_policy: TlsPolicy = TlsPolicy.VALIDATE,
                            start: int = SWEEP_START_BYTES, limit: int = SWEEP_LIMIT_BYTES,
                            growth: float = SWEEP_GROWTH,
                            attempts_per_size: int = SWEEP_ATTEMPTS_PER_SIZE,
                            request_timeout: float = REQUEST_TIMEOUT_SECONDS) -> List[PayloadMeasurement]:
    measurements: List[PayloadMeasurement] = []
    for size in sweep_sizes(start, limit, growth):
        driver = BenchmarkDriver(target, proxy, tls_policy, request_timeout, payload=random_payload(size))
        summary = summarize(await driver.run(attempts_per_size, 1))
        logger.info(f"Payload {size} bytes: mean latency {format_latency(summary.mean_latency)}ms "
                    f"({summary.failed} failed)")
        measurements.append(PayloadMeasurement(size, summary))
    return measurements
