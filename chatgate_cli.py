import argparse
import json
import sys
import time
import uuid
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_chat(chat: dict) -> None:
    title = chat.get("title") or "New chat"
    topic = chat.get("topic") or "-"
    print(f"{chat.get('chat_id')}  {title}  [topic: {topic}]  ({chat.get('raw_count', 0)} messages)")


def run_chats_list(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/chats"), params={"user_id": args.user}, timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to list chats: HTTP {resp.status_code}")
            return 1
        chats = resp.json().get("chats") or []
    if not chats:
        print("No chats.")
        return 0
    for chat in chats:
        _print_chat(chat)
    return 0


def run_chats_show(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    params = {"user_id": args.user}
    if args.limit is not None:
        params["limit"] = args.limit
    with httpx.Client() as client:
        resp = client.get(_join_url(base, f"/api/chats/{args.chat_id}/messages"), params=params, timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to load chat: HTTP {resp.status_code}")
            return 1
        data = resp.json()
    for message in data.get("messages") or []:
        marker = " (polished)" if message.get("polished") else ""
        print(f"[{message.get('role')}]{marker} {message.get('content')}")
        print()
    print(f"{data.get('total', 0)} messages total.")
    return 0


def run_chats_delete(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.delete(_join_url(base, f"/api/chats/{args.chat_id}"), params={"user_id": args.user}, timeout=10)
    if resp.status_code == 404:
        print("Chat not found.")
        return 1
    if resp.status_code >= 400:
        print(f"Failed to delete chat: HTTP {resp.status_code}")
        return 1
    print(f"Deleted {args.chat_id}.")
    return 0


def _print_event(event: dict) -> None:
    stage = event.get("stage")
    if stage == "token":
        sys.stdout.write(event.get("message", {}).get("content", ""))
        sys.stdout.flush()
    elif stage == "routing_decision":
        mode = "web" if event.get("use_web") else "local"
        print(f"> route: {mode} ({event.get('reason')})", file=sys.stderr)
    elif stage in ("analysis", "web_agent_failed", "web_agent_unavailable"):
        print(f"> {event.get('content') or event.get('error')}", file=sys.stderr)
    elif stage == "final":
        print()
        for idx, source in enumerate(event.get("sources") or [], start=1):
            print(f"[{idx}] {source.get('title')} {source.get('url')}")
    elif stage == "error":
        print(f"\nError ({event.get('code')}): {event.get('error')}", file=sys.stderr)


def run_ask(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload = {
        "user_id": args.user,
        "chat_id": args.chat_id,
        "prompt": args.prompt,
        "message_id": args.message_id or uuid.uuid4().hex,
        "client_ts": int(time.time() * 1000),
        "use_web": args.web,
        "stream": True,
    }
    if args.model:
        payload["model_id"] = args.model
    status = 0
    with httpx.Client(timeout=httpx.Timeout(args.timeout, connect=10.0)) as client:
        with client.stream("POST", _join_url(base, "/api/chat"), json=payload) as resp:
            if resp.status_code >= 400:
                resp.read()
                print(f"Request failed: HTTP {resp.status_code} {resp.text}")
                return 1
            for line in resp.iter_lines():
                if not line.strip():
                    continue
                try:
                    event = json.loads(line)
                except ValueError:
                    continue
                _print_event(event)
                if event.get("stage") == "error":
                    status = 1
    return status


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ChatGate CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    parser.add_argument("--user", default="cli", help="Owner user id")
    subparsers = parser.add_subparsers(dest="command")

    chats = subparsers.add_parser("chats", help="Conversation management")
    chats_sub = chats.add_subparsers(dest="chats_cmd")
    chats_sub.add_parser("list", help="List conversations")
    show = chats_sub.add_parser("show", help="Print a conversation's messages")
    show.add_argument("chat_id")
    show.add_argument("--limit", type=int, default=None, help="Max messages to print")
    delete = chats_sub.add_parser("delete", help="Delete a conversation")
    delete.add_argument("chat_id")

    ask = subparsers.add_parser("ask", help="Send one turn and stream the answer")
    ask.add_argument("chat_id")
    ask.add_argument("prompt")
    ask.add_argument("--web", action="store_true", help="Allow web search for this turn")
    ask.add_argument("--model", default=None, help="Model id to answer with")
    ask.add_argument("--message-id", default=None, help="Client message id (default: random)")
    ask.add_argument("--timeout", type=float, default=300.0, help="Read timeout seconds")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "chats" and args.chats_cmd == "list":
        return run_chats_list(args)
    if args.command == "chats" and args.chats_cmd == "show":
        return run_chats_show(args)
    if args.command == "chats" and args.chats_cmd == "delete":
        return run_chats_delete(args)
    if args.command == "ask":
        return run_ask(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
