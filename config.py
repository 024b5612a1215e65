import logging
from enum import Enum
from typing import NamedTuple, Optional
from urllib.parse import SplitResult, urlsplit

# General
LOG_LEVEL = logging.INFO  # DEBUG for more verbosity
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(filename)s:%(lineno)d - %(message)s'
LOG_FILE = None  # e.g. "latency_tester.log"; None logs to the console only
RESULTS_DIR = "results"  # For benchmark CSVs, proxy logs and charts

# Defaults for the mode orchestrators
DEFAULT_URL = "http://localhost:8080"
TEST_PATH = "/test"
KILL_PATH = "/kill"
PROXY_VIA = "1.1 latency-tester"

# Request Issuer
REQUEST_TIMEOUT_SECONDS = 10  # Per attempt: connect, TLS handshake and response
PROBE_HEADERS = {"Cache-Control": "no-cache"}

# Proxy Forwarder
PROXY_UPSTREAM_CONNECT_TIMEOUT_SECONDS = 10
RELAY_CHUNK_SIZE = 65536
MAX_HEADER_BYTES = 65536

# Adaptive measurement (client mode without an explicit count)
WARMUP_ATTEMPTS = 5
MIN_STABLE_ATTEMPTS = 10
MAX_STABLE_ATTEMPTS = 200  # Upper bound so an unstable link still terminates
STABLE_THRESHOLD = 1.0     # Relative deviation from the mean considered stable
OUTLIER_THRESHOLD = 2.0    # Standard deviations away considered an outlier

# Test mode
TEST_ATTEMPT_COUNT = 200
TEST_CONCURRENCY = 8
TEST_CHART_FILE = "request-latency.svg"
SWEEP_CHART_FILE = "payload-latency.svg"
SWEEP_START_BYTES = 1024
SWEEP_LIMIT_BYTES = 8 * 1024 * 1024
SWEEP_GROWTH = 0.25  # Each step grows the payload by a quarter
SWEEP_ATTEMPTS_PER_SIZE = 10


class TlsPolicy(Enum):
    VALIDATE = "validate"
    NO_VALIDATE = "no-validate"

    @property
    def verify(self) -> bool:
        return self is TlsPolicy.VALIDATE

    @classmethod
    def from_flag(cls, no_validate_certs: bool) -> "TlsPolicy":
        return cls.NO_VALIDATE if no_validate_certs else cls.VALIDATE


class ConfigurationError(ValueError):
    """Raised for settings that make a run impossible; always before any attempt."""


class ListenAddress(NamedTuple):
    scheme: str
    host: str
    port: int


def _split_absolute(url: str, allowed_schemes) -> SplitResult:
    if not url:
        raise ConfigurationError("URL must not be empty")
    parts = urlsplit(url)
    if parts.scheme not in allowed_schemes:
        raise ConfigurationError(
            f"Unsupported scheme in {url!r}: expected one of {', '.join(sorted(allowed_schemes))}")
    if not parts.hostname:
        raise ConfigurationError(f"URL {url!r} has no host")
    try:
        parts.port  # Raises ValueError for out-of-range or non-numeric ports
    except ValueError as e:
        raise ConfigurationError(f"Invalid port in {url!r}: {e}") from e
    return parts


def resolve_target(url: str) -> str:
    """Validate a probe target and return it normalised (empty path -> '/')."""
    parts = _split_absolute(url, {"http", "https"})
    if not parts.path:
        parts = parts._replace(path="/")
    return parts.geturl()


def resolve_proxy(url: Optional[str]) -> Optional[str]:
    if url is None:
        return None
    return _split_absolute(url, {"http"}).geturl()


def resolve_listen_address(url: str) -> ListenAddress:
    parts = _split_absolute(url, {"http", "https"})
    port = parts.port
    if port is None:
        port = 443 if parts.scheme == "https" else 80
    return ListenAddress(parts.scheme, parts.hostname, port)


def with_path(url: str, path: str) -> str:
    return urlsplit(url)._replace(path=path, query="", fragment="").geturl()
