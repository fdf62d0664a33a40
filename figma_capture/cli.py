"""Command-line entry point: send a local HTML file to Figma."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

import httpx

from .client import FigmaCaptureClient
from .config import (
    AUTH_MODES,
    DEFAULT_FILE_NAME,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_POLL_TIMEOUT,
    DEFAULT_PORT,
    OUTPUT_MODES,
    CaptureOptions,
    ClientConfig,
    env_bool,
    env_float,
    env_int,
    env_str,
    resolve_auth_mode,
    resolve_mcp_url,
)
from .errors import FigmaCaptureError
from .orchestrator import run_capture

logger = logging.getLogger("figma_capture.cli")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="figma-capture",
        description="Send a local HTML design to Figma through the Figma MCP server.",
    )
    parser.add_argument(
        "file",
        nargs="?",
        default=Path("index.html"),
        type=Path,
        help="HTML file to capture (default: ./index.html)",
    )
    parser.add_argument(
        "-t",
        "--token",
        default=env_str("FIGMA_ACCESS_TOKEN"),
        help="Figma personal access token (env: FIGMA_ACCESS_TOKEN)",
    )
    parser.add_argument(
        "--team-id",
        default=env_str("FIGMA_TEAM_ID"),
        help="Figma team that should own the new file (env: FIGMA_TEAM_ID)",
    )
    parser.add_argument(
        "--file-name",
        default=env_str("FIGMA_FILE_NAME", DEFAULT_FILE_NAME),
        help="Name of the generated Figma file (env: FIGMA_FILE_NAME)",
    )
    parser.add_argument(
        "--output-mode",
        choices=OUTPUT_MODES,
        default="newFile",
        help="Create a new Figma file or add to an existing one",
    )
    parser.add_argument(
        "--url",
        default=None,
        help="Source URL to record with the capture",
    )
    parser.add_argument(
        "-p",
        "--port",
        type=int,
        default=env_int("FIGMA_SERVER_PORT", DEFAULT_PORT),
        help="Local server port (env: FIGMA_SERVER_PORT)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=env_float("FIGMA_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
        help="Seconds between status checks (env: FIGMA_POLL_INTERVAL)",
    )
    parser.add_argument(
        "--poll-timeout",
        type=float,
        default=env_float("FIGMA_POLL_TIMEOUT", DEFAULT_POLL_TIMEOUT),
        help="Seconds to wait for the capture to finish (env: FIGMA_POLL_TIMEOUT)",
    )
    parser.add_argument(
        "--no-restore",
        dest="restore",
        action="store_false",
        default=env_bool("FIGMA_RESTORE", True),
        help="Leave the capture script in the HTML file afterwards",
    )
    parser.add_argument(
        "--auth",
        choices=AUTH_MODES,
        default=env_str("FIGMA_AUTH_MODE"),
        help="Authentication mode; defaults to token when one is set, else oauth",
    )
    parser.add_argument(
        "--mcp-url",
        default=env_str("FIGMA_MCP_URL"),
        help="MCP endpoint (env: FIGMA_MCP_URL)",
    )
    parser.add_argument(
        "--oauth-client-id",
        default=env_str("FIGMA_OAUTH_CLIENT_ID"),
        help="Pre-registered OAuth client id (env: FIGMA_OAUTH_CLIENT_ID)",
    )
    parser.add_argument(
        "--oauth-client-secret",
        default=env_str("FIGMA_OAUTH_CLIENT_SECRET"),
        help="Pre-registered OAuth client secret (env: FIGMA_OAUTH_CLIENT_SECRET)",
    )
    parser.add_argument(
        "--list-tools",
        action="store_true",
        help="Connect, print the tools the MCP server offers and exit",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return parser.parse_args(argv)


def build_client_config(args: argparse.Namespace) -> ClientConfig:
    auth_mode = resolve_auth_mode(args.auth, args.token)
    config = ClientConfig(
        mcp_url=resolve_mcp_url(args.mcp_url, auth_mode),
        auth_mode=auth_mode,
        access_token=args.token,
        oauth_client_id=args.oauth_client_id,
        oauth_client_secret=args.oauth_client_secret,
    )
    config.validate()
    return config


def build_capture_options(args: argparse.Namespace) -> CaptureOptions:
    options = CaptureOptions(
        html_path=args.file,
        port=args.port,
        file_name=args.file_name,
        team_id=args.team_id,
        output_mode=args.output_mode,
        source_url=args.url,
        poll_interval=args.poll_interval,
        poll_timeout=args.poll_timeout,
        restore=args.restore,
    )
    options.validate()
    return options


async def _list_tools(client: FigmaCaptureClient) -> None:
    try:
        await client.connect()
        for name in await client.list_tools():
            sys.stdout.write(f"{name}\n")
        sys.stdout.flush()
    finally:
        await client.close()


def _run(args: argparse.Namespace) -> None:
    client = FigmaCaptureClient(build_client_config(args))
    if args.list_tools:
        asyncio.run(_list_tools(client))
        return

    options = build_capture_options(args)
    logger.info("HTML file: %s", Path(options.html_path).resolve())
    overall_start = time.perf_counter()
    result = asyncio.run(run_capture(options, client))
    elapsed = time.perf_counter() - overall_start

    if result.design_url:
        logger.info("Finished in %.2fs: %s", elapsed, result.design_url)
        sys.stdout.write(f"{result.design_url}\n")
    else:
        logger.warning(
            "Finished in %.2fs, but capture %s returned no design URL",
            elapsed,
            result.capture_id,
        )


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        args = parse_args(argv)
    except FigmaCaptureError as exc:
        logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
        logger.error("%s", exc)
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
    if not args.verbose:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("mcp").setLevel(logging.WARNING)

    try:
        _run(args)
    except FigmaCaptureError as exc:
        logger.error("%s", exc)
        return 1
    except (OSError, httpx.HTTPError) as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        return 1
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
