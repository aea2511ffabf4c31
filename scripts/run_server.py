"""
Run the fieldclock API under uvicorn.

Usage:
  python scripts/run_server.py [--host 0.0.0.0] [--port 8000] [--reload]
"""
import argparse
import os
import sys

import uvicorn

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

from fieldclock.config import settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the fieldclock API")
    parser.add_argument("--host", default=os.getenv("APP_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("APP_PORT", "8000")))
    parser.add_argument("--reload", action="store_true", help="restart on code changes (development only)")
    return parser


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    print(f"Starting fieldclock on {args.host}:{args.port} ({settings.environment})")
    uvicorn.run(
        "fieldclock.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=settings.log_level.lower(),
        app_dir=PROJECT_ROOT,
    )


if __name__ == "__main__":
    main()
