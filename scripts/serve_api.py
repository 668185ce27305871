#!/usr/bin/env python3
"""
Serve the funding engine HTTP API with uvicorn.
"""

import argparse
import sys
from pathlib import Path

import uvicorn

sys.path.insert(0, str(Path(__file__).parent.parent))

from vaultfund.core.config import DEBUG


def main():
    parser = argparse.ArgumentParser(description="Serve the vault funding API")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    parser.add_argument("--port", "-p", type=int, default=8000, help="Port to listen on")
    args = parser.parse_args()

    uvicorn.run("vaultfund.api.main:app", host=args.host, port=args.port, reload=DEBUG)


if __name__ == "__main__":
    main()
