from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Optional, Sequence

from .config import ConfigurationError, OperatorConfig, load_config
from .controller import Controller
from .errors import TransientError
from .kube import KubernetesClusterClient, init_api_client
from .logger import configure_logging

DEFAULT_CONFIG_PATH = "/etc/hub-backup/config.yaml"

LOG = logging.getLogger(__name__)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Hub backup and restore controller.")
    parser.add_argument(
        "--config",
        default=os.getenv("HUB_BACKUP_CONFIG", DEFAULT_CONFIG_PATH),
        help="Path to configuration YAML file.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Reconcile every due resource a single time and exit.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Log level (default INFO).",
    )
    return parser.parse_args(argv)


def load_configuration(path: Path) -> OperatorConfig:
    try:
        return load_config(path)
    except ConfigurationError as exc:
        raise SystemExit(f"Configuration error: {exc}") from exc


def build_controller(config: OperatorConfig) -> Controller:
    try:
        api_client = init_api_client(config.kubernetes)
    except ConfigurationError as exc:
        raise SystemExit(f"Cannot reach the cluster: {exc}") from exc
    return Controller(KubernetesClusterClient(api_client), config)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    config_path = Path(args.config).expanduser()
    config = load_configuration(config_path)
    LOG.info("Starting hub backup controller for hub %s using config %s", config.resolved_hub_id, config_path)
    controller = build_controller(config)

    if args.once:
        try:
            reconciled = controller.run_once()
        except TransientError as exc:
            LOG.error("Reconciliation pass failed: %s", exc)
            return 1
        LOG.info("Reconciled %d resources", reconciled)
        return 0

    return run_until_stopped(controller)


def run_until_stopped(controller: Controller) -> int:
    stop_event = threading.Event()

    def _handle_signal(signum: int, _frame: Optional[object]) -> None:
        LOG.info("Received signal %s; stopping controller", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    controller.run(stop_event)
    return 0


if __name__ == "__main__":
    sys.exit(main())
