from __future__ import annotations

import asyncio
import json
from typing import Any

from webedt.channels.sse.client import ConnectionState, StreamClient, StreamClientOptions, StreamMessage
from webedt.cli import base_parser
from webedt.core.config.loader import load_app_config
from webedt.core.runtime.errors import StreamError


def _print_line(kind: str, data: Any = None) -> None:
    print(json.dumps({"event": kind, "data": data}, default=str), flush=True)


def build_options(args, cfg) -> StreamClientOptions:
    body = None
    if args.prompt or args.resume:
        body = {
            "userRequest": args.prompt,
            "repositoryUrl": args.repository_url,
            "branch": args.branch,
            "autoCommit": args.auto_commit,
            "resumeSessionId": args.resume,
        }
        body = {k: v for k, v in body.items() if v not in (None, "")}

    def on_message(message: StreamMessage) -> None:
        _print_line(message.event_type, message.data)

    def on_error(error: StreamError) -> None:
        _print_line("error", error.message)

    return StreamClientOptions(
        on_message=on_message,
        on_error=on_error,
        on_connected=lambda: _print_line("connected"),
        on_completed=lambda payload: _print_line("completed", payload),
        auto_reconnect=cfg.stream_client.auto_reconnect and not args.no_reconnect,
        max_reconnect_attempts=cfg.stream_client.max_reconnect_attempts,
        base_delay_ms=cfg.stream_client.base_delay_ms,
        max_delay_ms=cfg.stream_client.max_delay_ms,
        method="POST" if body is not None else "GET",
        body=body,
        cookies={cfg.auth.cookie_name: args.session_cookie} if args.session_cookie else {},
    )


async def _tail(url: str, options: StreamClientOptions) -> int:
    async with StreamClient(url, options) as client:
        state = await client.wait()
    return 0 if state == ConnectionState.COMPLETED else 1


def main() -> int:
    parser = base_parser("webedt-stream", "Follow a WebEDT execute stream and print its events")
    parser.add_argument("url", help="Relay stream URL, e.g. http://127.0.0.1:3001/api/execute")
    parser.add_argument("--session-cookie", default=None, help="Login session cookie value")
    parser.add_argument("--prompt", default=None, help="Send this request with POST")
    parser.add_argument("--repository-url", default=None)
    parser.add_argument("--branch", default=None)
    parser.add_argument("--auto-commit", action="store_true")
    parser.add_argument("--resume", default=None, help="Worker session id to resume")
    parser.add_argument("--no-reconnect", action="store_true")
    args = parser.parse_args()

    cfg = load_app_config(instance_path=args.config)
    return asyncio.run(_tail(args.url, build_options(args, cfg)))


if __name__ == "__main__":
    raise SystemExit(main())
