"""Command-line entry point: ``pget [-p N] [-m] INPUT OUTPUT``."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from pget.engine import DEFAULT_WORKERS, parallel_get
from pget.errors import PgetError
from pget.remote import LocalDirectoryClient, RemoteDirectoryClient
from pget.s3 import S3DirectoryClient, create_s3_client, is_s3_uri, load_s3_config

log = logging.getLogger(__name__)


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1: {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pget",
        description=(
            "Fetch every file under a remote directory in parallel, either into a "
            "local directory or merged into a single file in listing order."
        ),
    )
    parser.add_argument("input", help="Remote directory (s3://bucket/prefix, file:// URI or local path)")
    parser.add_argument("output", help="Existing output directory, or the new output file with --merge")
    parser.add_argument(
        "-p",
        "--parallel",
        type=_positive_int,
        default=DEFAULT_WORKERS,
        help=f"Number of concurrent fetch workers (default: {DEFAULT_WORKERS})",
    )
    parser.add_argument(
        "-m",
        "--merge",
        action="store_true",
        help="Concatenate all files into OUTPUT in listing order",
    )
    parser.add_argument("--properties", help="S3 .properties file (default: $S3_PROPERTIES or ./s3.properties)")
    parser.add_argument("--region", help="S3 region, overrides s3.region from the properties file")
    parser.add_argument("--endpoint-url", help="Endpoint of an S3-compatible store")
    parser.add_argument("--no-progress", action="store_true", help="Disable the progress bar")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


def open_client(args: argparse.Namespace) -> RemoteDirectoryClient:
    if not is_s3_uri(args.input):
        return LocalDirectoryClient()

    cfg = load_s3_config(args.properties)
    if args.endpoint_url:
        cfg.endpoint_url = args.endpoint_url
    s3_client = create_s3_client(cfg, args.region, max_pool_connections=max(16, args.parallel))
    return S3DirectoryClient(s3_client)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    log.info("input: %s", args.input)
    log.info("output: %s", args.output)

    try:
        client = open_client(args)
    except (OSError, ValueError) as exc:
        print(f"pget: config failed: {exc}", file=sys.stderr)
        return 1

    try:
        summary = parallel_get(
            client,
            args.input,
            args.output,
            workers=args.parallel,
            merge=args.merge,
            progress=not args.no_progress,
        )
    except PgetError as exc:
        print(f"pget: {exc.stage} failed: {exc}", file=sys.stderr)
        return 1

    if summary.bytes_written is not None:
        log.info("Merged %d files (%d bytes) into %s", summary.files, summary.bytes_written, summary.output)
    else:
        log.info("Fetched %d files into %s", summary.files, summary.output)
    return 0
