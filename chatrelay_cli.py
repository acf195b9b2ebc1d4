import argparse
import json
import sys
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_frame(frame: dict) -> None:
    kind = frame.get("type")
    if kind == "content":
        sys.stdout.write(frame.get("text") or "")
        sys.stdout.flush()
    elif kind == "footer":
        print(frame.get("text") or "")
    elif kind == "model_selected":
        print(f"[model] {frame.get('model')}", file=sys.stderr)
    elif kind == "status":
        print(f"[status] {frame.get('text')}", file=sys.stderr)
    elif kind in ("warning", "error"):
        print(f"[{kind}] {frame.get('message')}", file=sys.stderr)


def run_chat(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload = {
        "messages": [{"role": "user", "content": " ".join(args.prompt)}],
        "model": args.model,
        "searchMode": args.search_mode,
        "isDeepResearch": args.deep,
    }
    if args.system:
        payload["systemInstructions"] = args.system
    failed = False
    with httpx.Client(timeout=None) as client:
        with client.stream("POST", _join_url(base, "/api/chat"), json=payload) as resp:
            if resp.status_code >= 400:
                resp.read()
                print(f"Request failed: HTTP {resp.status_code} {resp.text}")
                return 1
            for line in resp.iter_lines():
                if not line.startswith("data:"):
                    continue
                chunk = line[len("data:"):].strip()
                if chunk == "[DONE]":
                    break
                try:
                    frame = json.loads(chunk)
                except ValueError:
                    continue
                failed = failed or frame.get("type") == "error"
                _print_frame(frame)
    print()
    return 1 if failed else 0


def run_usage(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/usage"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch usage: HTTP {resp.status_code}")
            return 1
        data = resp.json()
    today = data.get("today") or {}
    month = data.get("this_month") or {}
    budget = data.get("budget") or {}
    print(f"Today: {today.get('requests', 0)} requests, ${today.get('cost', 0):.4f}")
    print(f"This month: {month.get('requests', 0)} requests, ${month.get('cost', 0):.4f}")
    for provider, usage in (month.get("by_api") or {}).items():
        print(f"  {provider}: {usage.get('requests', 0)} requests, ${usage.get('cost', 0):.4f}")
    flag = " (over budget)" if budget.get("danger") else " (warning)" if budget.get("warning") else ""
    print(
        f"Budget: ${budget.get('limit', 0):.2f}, remaining ${budget.get('remaining', 0):.2f} "
        f"({budget.get('percentage', 0):.1f}% used){flag}"
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="chatrelay CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    chat = subparsers.add_parser("chat", help="Send one prompt and stream the answer")
    chat.add_argument("--model", default="auto", help="Model id, alias or 'auto'")
    chat.add_argument(
        "--search-mode",
        default="auto",
        choices=["auto", "eco", "standard", "high_precision"],
        help="Search tier to force",
    )
    chat.add_argument("--deep", action="store_true", help="Run the Deep Research pipeline")
    chat.add_argument("--system", help="Persona / system instructions")
    chat.add_argument("prompt", nargs="+", help="Prompt text")

    subparsers.add_parser("usage", help="Show usage and budget summary")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "chat":
        return run_chat(args)
    if args.command == "usage":
        return run_usage(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
