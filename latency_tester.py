import argparse
import asyncio
import logging
import os
import signal
import ssl
import sys
import time
from typing import List, Optional

import config
from benchmark_driver import BenchmarkDriver, HarnessCancelled, run_payload_sweep
from config import ConfigurationError, TlsPolicy
from issuer import build_client, echo
from metrics import format_latency, format_size, summarize
from proxy import ProxyForwarder
from report import (
    append_summary_csv, print_summary, save_results_csv, write_latency_chart, write_payload_chart,
)
from server import ResponderServer

logger = logging.getLogger()  # Root logger for the application


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = config.LOG_FILE):
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='w'))
    logging.basicConfig(
        level=getattr(logging, level.upper(), config.LOG_LEVEL) if level else config.LOG_LEVEL,
        format=config.LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    # httpx logs every request at INFO, which would drown the report
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _install_stop_handler(request_stop):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_stop)
        except (NotImplementedError, RuntimeError):
            pass  # Windows event loops; Ctrl+C still raises KeyboardInterrupt


def _server_ssl_context(certfile: Optional[str], keyfile: Optional[str]) -> Optional[ssl.SSLContext]:
    if not certfile:
        return None
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    context.load_cert_chain(certfile, keyfile)
    return context


async def run_server_mode(args) -> int:
    address = config.resolve_listen_address(args.receive_url)
    ssl_context = _server_ssl_context(args.certfile, args.keyfile)
    if address.scheme == "https" and ssl_context is None:
        raise ConfigurationError("An https receive URL needs --certfile")
    server = ResponderServer(address.host, address.port, ssl_context, response_delay_ms=args.delay_ms)
    await server.start()
    print(f"Server running on {config.with_path(args.receive_url, config.TEST_PATH)}/")
    _install_stop_handler(server.request_stop)
    try:
        await server.wait_stopped()
    finally:
        await server.stop()
    return 0


async def run_proxy_mode(args) -> int:
    address = config.resolve_listen_address(args.listen_url)
    upstream = config.resolve_target(args.upstream) if args.upstream else None
    forwarder = ProxyForwarder(address.host, address.port, upstream, results_dir=args.results_dir)
    await forwarder.start()
    print(f"Proxy running on {forwarder.url}")
    _install_stop_handler(forwarder.request_stop)
    try:
        await forwarder.serve_until_stopped()
    finally:
        await forwarder.stop()
    return 0


def _report(result_set, args, label: str):
    summary = summarize(result_set)
    print_summary(summary, label)
    if args.csv:
        save_results_csv(result_set, args.csv)
    if args.chart:
        write_latency_chart(summary, args.chart, caption=f"{label} latency")
    return summary


async def run_client_mode(args) -> int:
    target = config.resolve_target(args.send_url)
    proxy = config.resolve_proxy(args.proxy_url)
    tls_policy = TlsPolicy.from_flag(args.no_validate_certs)
    print(f"Client sending to: {target}")
    print(f"Validate SSL certificates: {tls_policy.verify}")

    driver = BenchmarkDriver(target, proxy, tls_policy, args.timeout)
    if args.count is not None:
        result_set = await driver.run(args.count, args.concurrency, args.run_timeout)
    else:
        result_set = await driver.run_until_stable()
    summary = _report(result_set, args, "Client")
    return 0 if summary.succeeded else 1


async def run_echo_mode(args) -> int:
    target = config.resolve_target(args.send_url)
    proxy = config.resolve_proxy(args.proxy_url)
    tls_policy = TlsPolicy.from_flag(args.no_validate_certs)
    print(f"Client sending to: {target}")
    print(f"Validate SSL certificates: {tls_policy.verify}")

    async with build_client(proxy, tls_policy, args.timeout) as client:
        sample, body = await echo(client, target, proxied=proxy is not None)
    print("=" * 60)
    if sample.succeeded:
        print(body)
    else:
        print(f"Error: {sample.reason}" + (f" (HTTP {sample.status_code})" if sample.status_code else ""),
              file=sys.stderr)
    print("=" * 60)
    print(f"Latency: {format_latency(sample.elapsed)} ms")
    print(f"Response Size: {len(body) if sample.succeeded else 0} chars")
    return 0 if sample.succeeded else 1


async def run_test_mode(args) -> int:
    print("Test mode")
    tls_policy = TlsPolicy.from_flag(args.no_validate_certs)
    server = ResponderServer("127.0.0.1", 0, response_delay_ms=args.delay_ms)
    forwarder: Optional[ProxyForwarder] = None
    try:
        await server.start()
        print("Server started")
        proxy = None
        if args.via_proxy:
            forwarder = ProxyForwarder("127.0.0.1", 0, results_dir=args.results_dir)
            await forwarder.start()
            proxy = forwarder.url
        target = config.with_path(server.url, config.TEST_PATH + "/")
        print("Calling server multiple times to measure latency")

        driver = BenchmarkDriver(target, proxy, tls_policy, args.timeout)
        result_set = await driver.run(args.count, args.concurrency, args.run_timeout)
        summary = summarize(result_set)
        label = "Test via proxy" if proxy else "Test"
        print_summary(summary, label)

        stamp = time.strftime('%Y%m%d-%H%M%S')
        save_results_csv(result_set, args.csv or os.path.join(args.results_dir, f"test_results_{stamp}.csv"))
        append_summary_csv(summary, os.path.join(args.results_dir, "benchmark_summary.csv"), label)
        write_latency_chart(summary, args.chart or config.TEST_CHART_FILE,
                            caption="Same Machine HTTP requests" + (" via proxy" if proxy else ""))

        if args.payload_sweep:
            measurements = await run_payload_sweep(target, proxy, tls_policy, request_timeout=args.timeout)
            for m in measurements:
                print(f"Average latency: {format_latency(m.summary.mean_latency)} ms : "
                      f"size {format_size(m.payload_size)}")
            write_payload_chart(measurements, config.SWEEP_CHART_FILE)
        return 0 if summary.succeeded else 1
    finally:
        if forwarder:
            await forwarder.stop()
        await server.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="latency-tester", description="Network latency tester.")
    parser.add_argument("-n", "--no-validate-certs", action="store_true",
                        help="Don't validate SSL certificates (self-signed, expired or mismatched are accepted)")
    parser.add_argument("--timeout", type=float, default=config.REQUEST_TIMEOUT_SECONDS,
                        help="Per-request timeout in seconds")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    parser.add_argument("--results-dir", default=config.RESULTS_DIR)
    modes = parser.add_subparsers(dest="mode", required=True)

    server = modes.add_parser("server", aliases=["s"], help="Starts the HTTP server.")
    server.add_argument("receive_url", nargs="?", default=config.DEFAULT_URL)
    server.add_argument("--certfile")
    server.add_argument("--keyfile")
    server.add_argument("--delay-ms", type=float, default=0.0, help="Simulated processing time")
    server.set_defaults(handler=run_server_mode)

    for name, alias, help_text, handler in (
            ("client", "c", "Sends requests to the server and measures latency.", run_client_mode),
            ("echo", "e", "Sends a request to the server and prints the result.", run_echo_mode)):
        sub = modes.add_parser(name, aliases=[alias], help=help_text)
        sub.add_argument("send_url", nargs="?", default=config.DEFAULT_URL)
        sub.add_argument("proxy_url", nargs="?", default=None,
                         help="Optional proxy server URL (example http://localhost:8080)")
        if name == "client":
            sub.add_argument("--count", type=int, default=None,
                             help="Fixed number of attempts (default: sample until latency is stable)")
            sub.add_argument("--concurrency", type=int, default=1)
            sub.add_argument("--run-timeout", type=float, default=None)
            sub.add_argument("--csv")
            sub.add_argument("--chart")
        sub.set_defaults(handler=handler)

    proxy = modes.add_parser("proxy", aliases=["p"], help="Forwards requests to their target.")
    proxy.add_argument("listen_url", nargs="?", default="http://localhost:8888")
    proxy.add_argument("--upstream", help="Fixed upstream for origin-form requests")
    proxy.set_defaults(handler=run_proxy_mode)

    test = modes.add_parser("test", aliases=["t"], help="Starts this app as a server and measures latency.")
    test.add_argument("--count", type=int, default=config.TEST_ATTEMPT_COUNT)
    test.add_argument("--concurrency", type=int, default=config.TEST_CONCURRENCY)
    test.add_argument("--run-timeout", type=float, default=None)
    test.add_argument("--delay-ms", type=float, default=0.0)
    test.add_argument("--via-proxy", action="store_true", help="Route requests through an in-process proxy")
    test.add_argument("--payload-sweep", action="store_true", help="Also measure latency by payload size")
    test.add_argument("--csv")
    test.add_argument("--chart")
    test.set_defaults(handler=run_test_mode)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    try:
        return asyncio.run(args.handler(args))
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 2
    except HarnessCancelled as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user (Ctrl+C). Shutting down...")
        return 130


if __name__ == "__main__":
    sys.exit(main())
