"""Haven Stories — dev launcher. Starts the API server in watch mode."""

import argparse
import os
from pathlib import Path

import uvicorn

from haven import config


def main():
    parser = argparse.ArgumentParser(description="Haven Stories dev launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (default: ./data)")
    parser.add_argument("--demo", action="store_true",
                        help="Replace stored state with demo data")
    parser.add_argument("--no-reload", action="store_true",
                        help="Disable auto-reload")
    args = parser.parse_args()

    # The app reads DATA_DIR when uvicorn imports it, including reload workers
    if args.data_dir:
        os.environ["DATA_DIR"] = str(args.data_dir.resolve())

    if args.demo:
        from haven.demo import create_demo_data
        from haven.storage import Storage
        create_demo_data(Storage(config.data_dir()))

    print(f"Starting API on http://localhost:{config.port()} ...")
    uvicorn.run(
        "haven.app:app",
        host=config.host(),
        port=config.port(),
        log_level=config.log_level(),
        reload=not args.no_reload,
    )


if __name__ == "__main__":
    main()
