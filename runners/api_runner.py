#!/usr/bin/env python3
"""
Vector Search API 서버 실행 스크립트

Usage:
    python runners/api_runner.py                     # 기본 (0.0.0.0:8600)
    python runners/api_runner.py --port 8601
    python runners/api_runner.py --host 127.0.0.1

Swagger UI: http://localhost:8600/docs
"""

import argparse
import logging
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from dotenv import load_dotenv
load_dotenv()

import uvicorn

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Vector Search API server")
    parser.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8600, help="Bind port (default: 8600)")
    parser.add_argument("--reload", action="store_true", help="Auto-reload on code change (dev only)")
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args()

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    logger.info(f"Starting Vector Search API on http://{args.host}:{args.port}")
    logger.info(f"Swagger UI: http://localhost:{args.port}/docs")

    uvicorn.run(
        "docembed.api.search_api:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="debug" if args.debug else "info",
    )


if __name__ == "__main__":
    main()
