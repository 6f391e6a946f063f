from __future__ import annotations

import argparse

import uvicorn

from tokenguard.apps.api.main import create_app


def main() -> None:
    # Run the ledger API with env-driven settings for compose and local development.
    parser = argparse.ArgumentParser(description="Serve the TokenGuard API.")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()
    uvicorn.run(create_app(), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
