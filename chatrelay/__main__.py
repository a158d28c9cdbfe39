# Run: python -m chatrelay [--http] [--host H] [--port P]
from __future__ import annotations

import argparse
import asyncio
import logging

from chatrelay.config import settings
from chatrelay.persistence.message_log import JsonlMessageLog
from chatrelay.realtime.server import ChatServer
from chatrelay.security.auth import AnonymousIdentity


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="chatrelay", description="Real-time one-to-one chat relay")
    p.add_argument("--host", default=settings.HOST)
    p.add_argument("--port", type=int, default=settings.PORT)
    p.add_argument("--log", default=settings.MESSAGE_LOG_PATH, help="message log file (JSON lines)")
    p.add_argument("--http", action="store_true",
                   help="serve the HTTP app (health, history, /ws) with uvicorn instead of a bare WebSocket listener")
    p.add_argument("--log-level", default=settings.LOG_LEVEL)
    p.add_argument("--anonymous", action="store_true",
                   help="ignore access tokens and trust whatever user id a client registers as")
    return p.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    identity = AnonymousIdentity() if args.anonymous else None
    store = JsonlMessageLog(args.log)
    server = ChatServer(args.host, args.port, store=store, identity=identity)

    if args.http:
        import uvicorn
        from chatrelay.main import create_app

        uvicorn.run(create_app(chat=server, store=store), host=args.host, port=args.port, log_level=args.log_level.lower())
        return

    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        logging.getLogger("chatrelay").info("interrupted")


if __name__ == "__main__":
    main()
