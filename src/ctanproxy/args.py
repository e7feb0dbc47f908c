"""Argument parsing functionality for ctanproxy."""

import argparse

from .constants import StoreBackend


def build_parser():
    """Build the command-line parser."""
    parser = argparse.ArgumentParser(
        prog="ctanproxy",
        description=(
            "ctanproxy - CTAN package resolution and caching proxy"
        ),
        add_help=True,
    )

    parser.add_argument("--host",
                        dest="PROXY_HOST",
                        help="Address to bind (default: 127.0.0.1)",
                        action="store",
                        type=str)
    parser.add_argument("--port",
                        dest="PROXY_PORT",
                        help="Port to listen on (default: 8080)",
                        action="store",
                        type=int)
    parser.add_argument("--allow-external",
                        dest="ALLOW_EXTERNAL",
                        help="Allow binding to a non-loopback address.",
                        action="store_true")
    parser.add_argument("-c", "--config",
                        dest="CONFIG",
                        help="Path to configuration file (YAML, YML, or JSON)",
                        action="store",
                        type=str)

    parser.add_argument("--store",
                        dest="STORE_BACKEND",
                        help="Object store backend",
                        action="store",
                        type=str.lower,
                        choices=[backend.value for backend in StoreBackend])
    parser.add_argument("--store-path",
                        dest="STORE_PATH",
                        help="Directory for the local object store",
                        action="store",
                        type=str)
    parser.add_argument("--s3-bucket",
                        dest="S3_BUCKET",
                        help="Bucket for the s3 object store",
                        action="store",
                        type=str)
    parser.add_argument("--s3-endpoint",
                        dest="S3_ENDPOINT",
                        help="Endpoint URL for S3-compatible storage (e.g. R2, MinIO)",
                        action="store",
                        type=str)

    parser.add_argument("--loglevel",
                        dest="LOG_LEVEL",
                        help="Set the logging level (default: $CTANPROXY_LOG_LEVEL or INFO)",
                        action="store",
                        type=str.upper,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'])
    parser.add_argument("--logfile",
                        dest="LOG_FILE",
                        help="Log output file",
                        action="store",
                        type=str)
    return parser


def parse_args(argv=None):
    """Parses the arguments passed to the program."""
    return build_parser().parse_args(argv)
