"""Command line entry point: ``persona-sms --config conf.yaml``."""

import argparse

import uvicorn
from loguru import logger

from .config import load_config
from .exceptions import ConfigError
from .server import create_app, setup_logging


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Persona SMS chat server")
    parser.add_argument("--config", default="conf.yaml", help="Path to the YAML config file")
    parser.add_argument("--host", help="Override server.host")
    parser.add_argument("--port", type=int, help="Override server.port")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(args.config)
    except (ConfigError, FileNotFoundError) as e:
        setup_logging("INFO")
        logger.critical(f"Cannot start: {e}")
        return 1

    setup_logging("DEBUG" if args.verbose else config.server.log_level)
    host = args.host or config.server.host
    port = args.port or config.server.port
    logger.info(f"Starting persona-sms on {host}:{port}")
    uvicorn.run(create_app(config), host=host, port=port, log_level="info")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
