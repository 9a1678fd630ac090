#!/usr/bin/env python3
"""
Serve the action engine HTTP API with uvicorn.
"""

import argparse
import sys
from pathlib import Path

import uvicorn

# Add the project root to sys.path so the package imports without installation
sys.path.insert(0, str(Path(__file__).parent.parent))

from actionengine.core.config import debug_enabled


def main():
    parser = argparse.ArgumentParser(description="Run the Action Execution Engine API")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    args = parser.parse_args()

    uvicorn.run(
        "actionengine.api.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="debug" if debug_enabled() else "info",
    )


if __name__ == "__main__":
    main()
