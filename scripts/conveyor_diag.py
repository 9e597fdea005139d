"""Conveyor diagnostics CLI."""

from __future__ import annotations

import argparse
import importlib
import importlib.metadata
import json
import os
import sys
from pathlib import Path

from conveyor.notify import build_envelope, verify_signature


def _read_json(path: str | None) -> dict:
    text = Path(path).read_text(encoding="utf-8") if path and path != "-" else sys.stdin.read()
    document = json.loads(text)
    if not isinstance(document, dict):
        raise ValueError("Expected a JSON object")
    return document


def _secret(args: argparse.Namespace) -> str | None:
    return args.secret or os.environ.get("WEBHOOK_SECRET")


def cmd_sdk(args: argparse.Namespace) -> int:
    try:
        module = importlib.import_module("claude_agent_sdk")
    except ImportError as exc:
        print(f"Agent SDK unavailable: {exc}", file=sys.stderr)
        return 1
    try:
        version = importlib.metadata.version("claude-agent-sdk")
    except importlib.metadata.PackageNotFoundError:
        version = getattr(module, "__version__", "unknown")
    print(f"Agent SDK imported successfully (version {version})")
    print(f"query function available: {callable(getattr(module, 'query', None))}")
    return 0


def cmd_sign(args: argparse.Namespace) -> int:
    secret = _secret(args)
    if not secret:
        print("A signing secret is required (--secret or WEBHOOK_SECRET)", file=sys.stderr)
        return 1
    payload = _read_json(args.payload)
    payload.pop("signature", None)
    print(json.dumps(build_envelope(payload, secret), ensure_ascii=False))
    return 0


def cmd_verify_signature(args: argparse.Namespace) -> int:
    secret = _secret(args)
    if not secret:
        print("A signing secret is required (--secret or WEBHOOK_SECRET)", file=sys.stderr)
        return 1
    envelope = _read_json(args.envelope)
    if verify_signature(envelope, secret):
        print("signature valid")
        return 0
    print("signature INVALID")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Conveyor diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_sdk = sub.add_parser("sdk", help="Check that the agent SDK can be imported")
    p_sdk.set_defaults(func=cmd_sdk)

    p_sign = sub.add_parser("sign", help="Print the signed envelope for a JSON payload")
    p_sign.add_argument("payload", nargs="?", default="-", help="Payload file (default: stdin)")
    p_sign.add_argument("--secret")
    p_sign.set_defaults(func=cmd_sign)

    p_verify = sub.add_parser("verify-signature", help="Verify a received webhook envelope")
    p_verify.add_argument("envelope", nargs="?", default="-", help="Envelope file (default: stdin)")
    p_verify.add_argument("--secret")
    p_verify.set_defaults(func=cmd_verify_signature)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    exit_code = args.func(args)
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
