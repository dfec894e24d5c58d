"""Comic Weaver dev launcher. Starts the API server."""

import argparse
import logging
import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
BACKEND_PORT = int(os.getenv("BACKEND_PORT", "13013"))


def main():
    parser = argparse.ArgumentParser(description="Comic Weaver dev launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Snapshot storage directory (default: ./data)")
    parser.add_argument("--port", type=int, default=BACKEND_PORT,
                        help=f"API port (default: {BACKEND_PORT})")
    parser.add_argument("--reload", action="store_true",
                        help="Restart the server when source files change")
    args = parser.parse_args()

    # The app reads settings from the environment, so pass overrides through it
    if args.data_dir:
        os.environ["COMIC_WEAVER_DATA_DIR"] = str(args.data_dir.resolve())

    logging.basicConfig(
        level=os.getenv("COMIC_WEAVER_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print(f"Starting backend on http://localhost:{args.port} ...")
    uvicorn.run("backend.app:app", host=HOST, port=args.port, reload=args.reload)


if __name__ == "__main__":
    main()
