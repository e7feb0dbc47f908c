"""CLI entry point for the ctanproxy server."""

from __future__ import annotations

import ipaddress
import logging
import sys
from typing import Any, Optional

from .args import parse_args
from .common.logging_utils import configure_logging
from .constants import ExitCodes
from .proxy.config import ProxyConfig

logger = logging.getLogger(__name__)


def _is_local_bind_host(host: str) -> bool:
    """Return True if host is a loopback/local bind target."""
    if not host:
        return False
    host_lower = host.strip().lower()
    if host_lower in ("localhost",):
        return True
    try:
        return ipaddress.ip_address(host_lower).is_loopback
    except ValueError:
        # Non-IP hostnames are treated as non-local unless explicitly allowed.
        return False


def _enforce_local_binding(host: str, allow_external: bool) -> None:
    """Enforce local-only binding unless explicitly allowed."""
    if _is_local_bind_host(host):
        return
    if not allow_external:
        sys.stderr.write(
            "ERROR: Non-local bindings require --allow-external.\n"
        )
        sys.exit(ExitCodes.USAGE_ERROR.value)
    logger.warning(
        "Binding proxy to non-local address (%s). Ensure network controls are in place.",
        host,
    )


def _setup_logging(args: Any) -> None:
    """Configure logging based on CLI arguments."""
    configure_logging(getattr(args, "LOG_LEVEL", None))

    log_file = getattr(args, "LOG_FILE", None)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        formatter = logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s"
        )
        file_handler.setFormatter(formatter)
        logging.getLogger().addHandler(file_handler)
        logger.info("Logging to file: %s", log_file)


def load_config(args: Any) -> ProxyConfig:
    """Build the proxy config from an optional file plus CLI overrides.

    Exits with FILE_ERROR when the config file is missing or malformed.
    """
    config_path: Optional[str] = getattr(args, "CONFIG", None)
    base = None
    if config_path:
        try:
            base = ProxyConfig.from_file(config_path)
        except FileNotFoundError:
            sys.stderr.write(f"ERROR: Config file not found: {config_path}\n")
            sys.exit(ExitCodes.FILE_ERROR.value)
        except (ValueError, TypeError) as exc:
            sys.stderr.write(f"ERROR: Invalid config file {config_path}: {exc}\n")
            sys.exit(ExitCodes.FILE_ERROR.value)
        logger.info("Loaded config from: %s", config_path)
    try:
        return ProxyConfig.from_args(args, base=base)
    except ValueError as exc:
        sys.stderr.write(f"ERROR: {exc}\n")
        sys.exit(ExitCodes.USAGE_ERROR.value)


def run_proxy_server(args: Any) -> None:
    """Entry point for the proxy server command.

    Args:
        args: Parsed CLI arguments namespace.
    """
    _setup_logging(args)
    config = load_config(args)
    _enforce_local_binding(config.host, config.allow_external)

    from .proxy.server import run_proxy_server_sync

    print(
        f"\n"
        f"  ctanproxy\n"
        f"  =========\n"
        f"  Listening: http://{config.host}:{config.port}\n"
        f"  Store: {config.store_backend}\n"
        f"\n"
        f"  Try: curl http://{config.host}:{config.port}/api/fetch/amsmath\n"
        f"\n"
        f"  Press Ctrl+C to stop\n"
    )
    run_proxy_server_sync(config)


def main(argv=None) -> None:
    """Console script entry point."""
    run_proxy_server(parse_args(argv))
