from __future__ import annotations

import argparse
from typing import Optional

import uvicorn

DEFAULT_PORT = 8123


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="agentrelay gui", description="agentrelay GUI-side listener (FastAPI)")
    parser.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help=f"Bind port (default: {DEFAULT_PORT})")
    parser.add_argument("--reload", action="store_true", help="Enable autoreload (dev)")
    parser.add_argument("--log-level", default="info", help="Uvicorn log level (default: info)")
    args = parser.parse_args(argv)
    return serve(host=str(args.host), port=int(args.port), log_level=str(args.log_level), reload=bool(args.reload))


def serve(*, host: str = "127.0.0.1", port: int = DEFAULT_PORT, log_level: str = "info", reload: bool = False) -> int:
    try:
        uvicorn.run(
            "agentrelay.ports.web.app:create_app",
            factory=True,
            host=host,
            port=port,
            log_level=log_level,
            reload=reload,
        )
    except (KeyboardInterrupt, SystemExit):
        pass
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
