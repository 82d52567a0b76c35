from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import Any, Dict, List, Optional, Tuple

from .cache import ResolutionCache
from .config.config_parser import parse_config_file
from .config.config_schema import BurrowConfig, ConfigError
from .config.logging_config import init_logging
from .dispatcher import QueryDispatcher
from .ratelimit import AdmissionGate, RetryingTransport
from .resolver import SecondaryRoute, UpstreamResolver
from .servers.udp_server import DNSServer
from .stats import StatsCollector, StatsReporter

logger = logging.getLogger("burrow.main")


def build_resolver(
    cfg: BurrowConfig, stats: Optional[StatsCollector] = None
) -> UpstreamResolver:
    """
    Brief: Construct the admission gate, retry policy and upstream resolver.

    Inputs:
      - cfg: Validated BurrowConfig.
      - stats: Optional StatsCollector shared with the dispatcher.

    Outputs:
      - UpstreamResolver wired to one process-wide AdmissionGate.
    """
    gate = AdmissionGate(
        max_concurrent=cfg.rate_limit.max_concurrent,
        min_spacing=cfg.rate_limit.min_spacing_ms / 1000.0,
    )
    transport = RetryingTransport(
        gate,
        max_attempts=cfg.retry.max_attempts,
        per_attempt_timeout_ms=cfg.retry.per_attempt_timeout_ms,
        backoff_ms=cfg.retry.backoff_ms,
    )

    doh = cfg.upstream.doh
    if not doh.verify:
        logger.warning(
            "TLS certificate verification is DISABLED for DoH upstreams "
            "(upstream.doh.verify=false); responses can be spoofed"
        )

    sec = cfg.upstream.secondary
    secondary = None
    if sec.host:
        secondary = SecondaryRoute(
            sec.host,
            sec.port,
            patterns=sec.match,
            match_mode=sec.match_mode,
            timeout_ms=sec.timeout_ms,
            fallback_to_doh=sec.fallback_to_doh,
            gate=gate if sec.rate_limited else None,
        )
        if not secondary.patterns:
            logger.warning(
                "Secondary resolver %s configured without match patterns; it will never be used",
                secondary.label,
            )

    return UpstreamResolver(
        doh.endpoints,
        transport,
        proxy=doh.proxy,
        verify=doh.verify,
        ca_file=doh.ca_file,
        secondary=secondary,
        stats=stats,
    )


def build_dispatcher(
    cfg: BurrowConfig, stats: Optional[StatsCollector] = None
) -> QueryDispatcher:
    """
    Brief: Construct the dispatcher (and its cache) for a configuration.

    Inputs:
      - cfg: Validated BurrowConfig.
      - stats: Optional StatsCollector.

    Outputs:
      - QueryDispatcher owning a fresh, empty ResolutionCache.
    """
    cache = ResolutionCache(negative_ttl=cfg.cache.negative_ttl)
    return QueryDispatcher(
        build_resolver(cfg, stats),
        cache,
        single_flight=cfg.cache.single_flight,
        stats=stats,
    )


def _model_dict(model) -> Dict[str, Any]:
    """Plain mapping for a pydantic model: model_dump() on v2, dict() on v1."""

    for attr in ("model_dump", "dict"):
        method = getattr(model, attr, None)
        if callable(method):
            return dict(method())
    return dict(model)


def _describe_upstreams(cfg: BurrowConfig) -> Tuple[str, str]:
    doh = cfg.upstream.doh
    via = f" via {doh.proxy}" if doh.proxy else " (direct)"
    doh_info = ", ".join(doh.endpoints) + via
    sec = cfg.upstream.secondary
    sec_info = (
        f"{sec.host}:{sec.port} for {sec.match_mode} {sec.match}" if sec.host else "none"
    )
    return doh_info, sec_info


def main(argv: List[str] | None = None) -> int:
    """
    Main entry point for the DNS proxy.
    Parses arguments, loads configuration, wires the dispatcher and serves UDP
    until SIGINT/SIGTERM/SIGHUP.

    Args:
        argv: Command-line arguments.

    Returns:
        An exit code: 0 on clean shutdown, 1 on config or bind errors.

    Example use:
        CLI:
            burrow --config config.yaml -v DOH_PROXY=socks5h://10.0.0.2:1080
    """
    parser = argparse.ArgumentParser(
        description="Caching DNS proxy forwarding over DNS-over-HTTPS through a SOCKS tunnel"
    )
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument(
        "-v",
        "--var",
        action="append",
        default=[],
        metavar="KEY=YAML",
        help="Set a config variable (overrides environment and config file)",
    )
    args = parser.parse_args(argv)

    try:
        cfg = parse_config_file(args.config, cli_vars=args.var)
    except (ConfigError, OSError) as exc:
        print(str(exc))
        return 1

    init_logging(_model_dict(cfg.logging))
    logger.info("Loaded config from %s", args.config)

    stats_collector: Optional[StatsCollector] = None
    stats_reporter: Optional[StatsReporter] = None
    if cfg.statistics.enabled:
        stats_collector = StatsCollector()
        stats_reporter = StatsReporter(
            stats_collector,
            interval_seconds=cfg.statistics.interval_seconds,
            reset_on_log=cfg.statistics.reset_on_log,
            log_level=cfg.statistics.log_level,
        )

    dispatcher = build_dispatcher(cfg, stats_collector)
    doh_info, sec_info = _describe_upstreams(cfg)
    logger.info("DoH upstreams: [%s]; secondary: %s", doh_info, sec_info)

    try:
        server = DNSServer(cfg.listen.host, cfg.listen.port, dispatcher)
    except OSError as exc:
        logger.error(
            "Cannot bind UDP %s:%d: %s", cfg.listen.host, cfg.listen.port, exc
        )
        return 1

    shutdown_event = threading.Event()
    udp_error: Optional[BaseException] = None

    def _run_udp() -> None:
        nonlocal udp_error
        try:
            server.serve_forever()
        except Exception as e:  # pragma: no cover - propagated via udp_error
            udp_error = e
        finally:
            shutdown_event.set()

    def _request_shutdown(signum, _frame) -> None:
        name = signal.Signals(signum).name
        if not shutdown_event.is_set():
            logger.info("Received %s, shutting down", name)
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM, getattr(signal, "SIGHUP", None)):
        if sig is None:
            continue
        try:
            signal.signal(sig, _request_shutdown)
        except (ValueError, OSError):  # pragma: no cover - not main thread
            logger.warning("Could not install %s handler", sig)

    if stats_reporter is not None:
        stats_reporter.start()

    udp_thread = threading.Thread(target=_run_udp, name="burrow-udp", daemon=True)
    udp_thread.start()

    try:
        while not shutdown_event.wait(1.0):
            pass
    except KeyboardInterrupt:  # pragma: no cover - signal handler normally wins
        logger.info("Interrupted, shutting down")
    finally:
        if udp_thread.is_alive():
            server.shutdown()
            udp_thread.join(timeout=5.0)
        if stats_reporter is not None:
            stats_reporter.stop()
            stats_reporter.emit()

    if udp_error is not None:
        logger.error("UDP listener failed: %s", udp_error)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
