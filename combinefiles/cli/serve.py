#!/usr/bin/env python3
"""
combinefiles-serve – launcher for the job service in service/app.py.

Validates the root, output directory and token before starting uvicorn.
"""
import os
import sys
import argparse
import ipaddress
import logging
from pathlib import Path
from typing import List, Optional

import uvicorn

from ..service.app import app, init_service

DEFAULT_PORT = 8790


def _is_loopback_host(host: str) -> bool:
    h = (host or "").strip().lower()
    if h in ("127.0.0.1", "localhost", "::1"):
        return True
    try:
        return ipaddress.ip_address(h).is_loopback
    except ValueError:
        return False


def _get_port() -> int:
    raw = os.environ.get("COMBINEFILES_PORT", "")
    if not raw:
        return DEFAULT_PORT
    try:
        return int(raw)
    except ValueError:
        print(f"[combinefiles] Warning: Invalid COMBINEFILES_PORT='{raw}', defaulting to {DEFAULT_PORT}", file=sys.stderr)
        return DEFAULT_PORT


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="combinefiles-serve")
    parser.add_argument("--host", default=os.environ.get("COMBINEFILES_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=_get_port())
    parser.add_argument("--root", default=os.environ.get("COMBINEFILES_ROOT"), help="Directory jobs may read from (Required)")
    parser.add_argument("--output", default=os.environ.get("COMBINEFILES_OUTPUT"), help="Output directory (default: <root>/combined)")
    parser.add_argument("--token", default=os.environ.get("COMBINEFILES_TOKEN"), help="Auth token (Required for non-loopback)")
    parser.add_argument("--workers", type=int, default=1, help="Concurrent jobs")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(level=logging.INFO, stream=sys.stderr, format="[%(levelname)s] %(message)s")

    if not args.root:
        print("[combinefiles] Error: Missing root. Set --root or COMBINEFILES_ROOT.", file=sys.stderr)
        return 1

    root = Path(args.root).expanduser().resolve()
    if not root.is_dir():
        print(f"[combinefiles] Error: Root is not a directory: {root}", file=sys.stderr)
        return 1

    output_dir = None
    if args.output:
        try:
            output_dir = Path(args.output).expanduser().resolve()
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            print(f"[combinefiles] Error: Could not create output directory '{args.output}': {e}", file=sys.stderr)
            return 1

    if not _is_loopback_host(args.host) and not args.token:
        print(f"[combinefiles] Security Error: Refusing to bind to non-loopback host '{args.host}' without a token.", file=sys.stderr)
        print("[combinefiles] Hint: Set --token or COMBINEFILES_TOKEN.", file=sys.stderr)
        return 1

    if args.workers < 1:
        print("[combinefiles] Error: --workers must be >= 1", file=sys.stderr)
        return 1

    init_service(root, token=args.token, output_dir=output_dir, max_workers=args.workers)

    print(f"[combinefiles] serving on http://{args.host}:{args.port}", flush=True)
    print(f"[combinefiles] root: {root}", flush=True)
    print(f"[combinefiles] token: {'(set)' if args.token else '(not set)'}", flush=True)

    uvicorn.run(app, host=args.host, port=args.port, log_level="info")
    return 0


if __name__ == "__main__":
    sys.exit(main())
