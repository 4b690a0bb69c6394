"""Process entry point: load config, bootstrap Apollo, run the loop."""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

from pydantic import ValidationError

from .bootstrap import BootstrapError, bootstrap_sync
from .config import AgentConfig, AgentConfigError, RuntimeSettings, load_agent_config
from .process_control import NginxController
from .reconciler import Reconciler
from .remote_config import ApolloOpenApiClient

logger = logging.getLogger(__name__)


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Keep a local nginx.conf in sync with an Apollo config item.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Agent JSON config file (default: PROXY_SYNC_CONFIG_PATH or config.json).",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Append-only log file (default: PROXY_SYNC_LOG_FILE or agent.log).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level (default: PROXY_SYNC_LOG_LEVEL or INFO).",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run exactly one reconciliation cycle and exit.",
    )
    parser.add_argument(
        "--skip-bootstrap",
        action="store_true",
        help="Do not push the local file to Apollo before reconciling.",
    )
    return parser


def _configure_logging(log_file: str, log_level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        filename=log_file,
        filemode="a",
        encoding="utf-8",
    )


def _fail(message: str) -> int:
    logger.error(message)
    print(f"error: {message}", file=sys.stderr)
    return 1


def install_signal_handlers(stop_event: threading.Event) -> None:
    def _handle_stop(signum, _frame) -> None:
        logger.info("Received %s, stopping after the current cycle", signal.Signals(signum).name)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handle_stop)


def run_agent(
    config: AgentConfig,
    settings: RuntimeSettings,
    *,
    once: bool = False,
    skip_bootstrap: bool = False,
    stop_event: threading.Event | None = None,
) -> int:
    with ApolloOpenApiClient(config) as client:
        if not skip_bootstrap:
            try:
                bootstrap_sync(config, client)
            except BootstrapError as exc:
                return _fail(str(exc))
            logger.info("Local config synced to Apollo")

        controller = NginxController(
            nginx_bin=settings.nginx_bin,
            timeout_s=settings.command_timeout_s,
        )
        reconciler = Reconciler(config, client, controller)
        if once:
            result = reconciler.run_cycle()
            return 1 if result.outcome.is_failure else 0

        if stop_event is None:
            stop_event = threading.Event()
            install_signal_handlers(stop_event)
        reconciler.run(stop_event)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    try:
        settings = RuntimeSettings()
    except ValidationError as exc:
        print(f"error: invalid PROXY_SYNC_* settings: {exc}", file=sys.stderr)
        return 1

    log_file = args.log_file or settings.log_file
    try:
        _configure_logging(log_file, args.log_level or settings.log_level)
    except OSError as exc:
        print(f"error: cannot open log file {log_file}: {exc}", file=sys.stderr)
        return 1

    config_path = args.config or settings.config_path
    try:
        config = load_agent_config(config_path)
    except AgentConfigError as exc:
        return _fail(str(exc))

    logger.info(
        "Sync agent starting: apollo=%s env=%s app=%s file=%s",
        config.ip,
        config.env,
        config.app_id,
        config.nginx_conf_path,
    )
    return run_agent(
        config,
        settings,
        once=args.once,
        skip_bootstrap=args.skip_bootstrap,
    )


if __name__ == "__main__":
    raise SystemExit(main())
