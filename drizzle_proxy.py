#!/usr/bin/env python3
"""
Daytona Drizzle Proxy: a CORS proxy for Drizzle Studio in Daytona environments.

Run ``daytona-drizzle-proxy --help`` for usage.
"""
import argparse
import asyncio
import logging
import sys

import uvicorn
from yarl import URL

from errors import InvalidConfig
from probe import check_target
from proxy_config import (
    DEBUG,
    ENV_INSECURE_TLS,
    ENV_PORT,
    ENV_TARGET,
    LISTEN_HOST,
    PROGRAM_NAME,
    STUDIO_CDN_ORIGIN,
    VERSION,
    ProxyConfig,
    configure_logging,
)
from proxy_server import UVICORN_OPTIONS, create_app

logger = logging.getLogger(PROGRAM_NAME)

EPILOG = f"""
EXAMPLES:
  {PROGRAM_NAME}
    Start proxy on port 8080, forwarding to localhost:4983

  {PROGRAM_NAME} --port 9000 --target http://localhost:4983
    Start proxy on port 9000, forwarding to localhost:4983

USAGE:
  1. Start Drizzle Studio: drizzle-kit studio
  2. Start this proxy: {PROGRAM_NAME}
  3. Use proxy URL: http://localhost:8080
  4. Or access studio directly: http://localhost:8080/studio

ROUTES:
  /studio/**  - Proxies to Drizzle Studio CDN ({STUDIO_CDN_ORIGIN})
  /cdn-cgi/** - Proxies to Drizzle Studio CDN ({STUDIO_CDN_ORIGIN})
  /**         - Proxies to your configured target (default: localhost:4983)
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROGRAM_NAME,
        description="Simple CORS proxy for Drizzle Studio in Daytona environments",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--version", action="version", version=VERSION, help="Show version")
    parser.add_argument("-p", "--port", default=ENV_PORT, help="Proxy server port (default: %(default)s)")
    parser.add_argument("-t", "--target", default=ENV_TARGET, help="Target Drizzle Studio URL (default: %(default)s)")
    parser.add_argument(
        "--insecure",
        action="store_const",
        const=True,
        default=ENV_INSECURE_TLS,
        help="Skip TLS certificate checks for every upstream, not only local ones",
    )
    return parser


def main(argv=None):
    configure_logging()
    args = build_parser().parse_args(argv)

    try:
        config = ProxyConfig.from_values(args.port, args.target, args.insecure)
    except InvalidConfig as e:
        logger.error(str(e))
        sys.exit(1)

    logger.info(f"Testing connection to {config.target}...")
    verify_tls = config.verify_tls_for(URL(config.target).host)
    if asyncio.run(check_target(config.target, verify_tls)):
        logger.info("Target is reachable")
    else:
        logger.warning("Target not reachable - continuing anyway")
        logger.info("Make sure Drizzle Studio is running: drizzle-kit studio")

    uvicorn.run(
        create_app(config),
        host=LISTEN_HOST,
        port=config.port,
        log_level="debug" if DEBUG else "info",
        **UVICORN_OPTIONS,
    )


if __name__ == "__main__":
    main()
