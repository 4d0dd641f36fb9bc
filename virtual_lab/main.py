import argparse
import logging
import sys


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="virtual-lab", description="Mentor/student virtual lab server")
    parser.add_argument("--host", default="127.0.0.1", help="Host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=5000, help="Port (default: 5000)")
    parser.add_argument("--db", default=None, help="SQLite database path (default: ~/.virtual_lab/virtual_lab.db)")
    parser.add_argument("--ai-timeout", type=float, default=None, help="AI provider timeout in seconds (default: setting ai.timeout)")
    parser.add_argument(
        "--role-collision",
        choices=("reconnect", "reject"),
        default=None,
        help="Second join for an occupied role: reconnect supersedes, reject refuses (default: setting lab.role_collision)",
    )
    parser.add_argument("--idle-ttl", type=float, default=None, help="Evict empty rooms after N seconds (0 = never)")
    parser.add_argument("--send-timeout", type=float, default=None, help="WebSocket send timeout in seconds")
    return parser


def main():
    args = build_parser().parse_args()
    log = logging.getLogger("virtual_lab")
    log.setLevel(logging.DEBUG)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logging.INFO)
    handler.setFormatter(fmt)
    log.addHandler(handler)

    from pathlib import Path

    import uvicorn

    from .server.app import create_app
    from .server.sessions import SessionStore

    store = SessionStore(Path(args.db).expanduser() if args.db else None)
    app = create_app(
        session_store=store,
        cli_overrides={
            "ai.timeout": args.ai_timeout,
            "lab.role_collision": args.role_collision,
            "lab.idle_ttl": args.idle_ttl,
            "server.send_timeout": args.send_timeout,
        },
    )
    print(f"  Local:   http://localhost:{args.port}")
    print()
    log.info("starting virtual lab on %s:%d db=%s", args.host, args.port, store.db_path)
    uvicorn.run(app, host=args.host, port=args.port, log_level="warning", log_config=None)


if __name__ == "__main__":
    main()
