# __main__.py
"""
Runs the API and the supervised round engine:

    python -m crash_round [--host 0.0.0.0] [--port 8000]
"""

from __future__ import annotations

import argparse
import os

import uvicorn


def main() -> None:
    parser = argparse.ArgumentParser(prog="crash_round")
    parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8000")))
    parser.add_argument("--log-level", default="info")
    args = parser.parse_args()

    uvicorn.run(
        "crash_round.app:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level,
        lifespan="on",
    )


if __name__ == "__main__":
    main()
