"""Operator command line: validate configuration and probe remote hosts."""

import argparse
import asyncio
import os
import sys

from dotenv import load_dotenv

from .core.config_loader import DEFAULT_CONFIG_FILE, EngineConfig, load_config
from .core.exceptions import ConfigurationError
from .core.logging_config import get_engine_logger, setup_logging
from .core.ssh_pool import SessionPoolRegistry


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    load_dotenv()

    default_log_level = os.getenv("LOG_LEVEL", "INFO")
    default_config = os.getenv("DBAAS_HOSTS_CONFIG", DEFAULT_CONFIG_FILE)

    parser = argparse.ArgumentParser(
        prog="dbaas-engine", description="Remote database instance provisioning engine"
    )
    parser.add_argument("--config", default=default_config, help="Configuration file path")
    parser.add_argument(
        "--log-level",
        default=default_log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    parser.add_argument("--log-dir", default=os.getenv("LOG_DIR"), help="Directory for log files")
    parser.add_argument(
        "--validate-config", action="store_true", help="Validate configuration and exit"
    )
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("check-hosts", help="Test SSH connectivity to every configured host")

    return parser.parse_args(argv)


async def check_hosts(config: EngineConfig) -> bool:
    """Probe every host once; True when all of them answered."""
    registry = SessionPoolRegistry(
        freshness_threshold=config.settings.session_freshness,
        acquire_timeout=config.settings.acquire_timeout,
    )
    try:
        results = await registry.check_hosts(config.hosts)
    finally:
        await registry.shutdown_all()

    for host_id, ok in results.items():
        print(f"{host_id}\t{config.hosts[host_id].key}\t{'ok' if ok else 'FAILED'}")
    return all(results.values())


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(log_dir=args.log_dir, log_level=args.log_level)
    logger = get_engine_logger()

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        logger.error("Configuration invalid", error=str(e))
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    if args.validate_config:
        print(f"Configuration valid: {len(config.hosts)} host(s) in {config.config_file}")
        return 0

    if args.command == "check-hosts":
        if not config.hosts:
            print("No hosts configured", file=sys.stderr)
            return 2
        return 0 if asyncio.run(check_hosts(config)) else 1

    print("Nothing to do; try --validate-config or check-hosts", file=sys.stderr)
    return 2


if __name__ == "__main__":
    sys.exit(main())
