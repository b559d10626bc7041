import argparse
import json
import sys
from typing import Any, Dict, Iterable, Iterator, List, Optional, TextIO

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:3000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def iter_sse_events(lines: Iterable[str]) -> Iterator[Dict[str, Any]]:
    for line in lines:
        if not line.startswith("data:"):
            continue
        chunk = line[len("data:"):].strip()
        if not chunk:
            continue
        try:
            yield json.loads(chunk)
        except json.JSONDecodeError:
            continue


def render_event(event: Dict[str, Any], out: TextIO) -> Optional[int]:
    """Print one event; returns an exit code once the stream is finished."""
    if "error" in event:
        out.write(f"\nError: {event['error']}\n")
        return 1
    if event.get("done"):
        out.write("\n")
        return 0
    if event.get("toolCall"):
        try:
            args = json.dumps(json.loads(event.get("toolArgs") or "{}"), indent=2)
        except json.JSONDecodeError:
            args = event.get("toolArgs") or ""
        out.write(f"\n[Using tool: {event['toolCall']}]\n{args}\n")
    elif "toolResponse" in event:
        out.write(f"[Tool response]\n{json.dumps(event['toolResponse'], indent=2)}\n")
    elif event.get("text"):
        out.write(event["text"])
    out.flush()
    return None


def run_ask(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    path = "/api/generate/stream" if args.no_tools else "/api/generate/stream-tools"
    timeout = httpx.Timeout(10.0, read=args.timeout)
    with httpx.Client(timeout=timeout) as client:
        try:
            with client.stream("GET", _join_url(base, path), params={"prompt": args.prompt}) as resp:
                if resp.status_code >= 400:
                    resp.read()
                    print(f"Request failed: HTTP {resp.status_code} {resp.text}")
                    return 1
                for event in iter_sse_events(resp.iter_lines()):
                    code = render_event(event, sys.stdout)
                    if code is not None:
                        return code
        except httpx.HTTPError as exc:
            print(f"Connection error: {exc}")
            return 1
    print("\nStream ended without a completion event.")
    return 1


def run_health(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/check-credentials"), timeout=15)
        if resp.status_code >= 400:
            print(f"Failed to check credentials: HTTP {resp.status_code}")
            return 1
        data = resp.json()
    if data.get("valid"):
        print(f"Model endpoint OK ({data.get('modelId')}).")
        return 0
    print(f"Model endpoint check failed: {data.get('error')}")
    if data.get("help"):
        print(data["help"])
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Weatherstream CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    ask = subparsers.add_parser("ask", help="Stream an answer to a prompt")
    ask.add_argument("prompt", help="Question for the model")
    ask.add_argument("--no-tools", action="store_true", help="Plain streaming without the weather tool")
    ask.add_argument("--timeout", type=float, default=120.0, help="Read timeout in seconds")

    subparsers.add_parser("check", help="Check the model endpoint")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "ask":
        return run_ask(args)
    if args.command == "check":
        return run_health(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
