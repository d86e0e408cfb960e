#!/usr/bin/env python3
"""
Moorage - Entry Point
========================
One-command startup for the Moorage control plane.

Usage:
    python app.py              # Start with default settings
    python app.py --port 9000  # Start on custom port

This script:
    1. Loads environment variables from .env
    2. Creates config.yaml from config.yaml.example if missing
    3. Configures logging (LOG_LEVEL, default INFO)
    4. Starts uvicorn with the FastAPI application factory

Everything the hosting platform sends to PORT is served from here: the
setup API, the terminals and, for every other path, the gateway itself.
"""

import argparse
import logging
import os
import shutil
import sys

import uvicorn
from dotenv import load_dotenv

LOG_FORMAT = "[%(asctime)s] [%(name)s] %(message)s"
LOG_DATEFMT = "%H:%M:%S"


def main():
    """Parse arguments, load config, and start the web server."""

    # -- Parse command-line arguments ------------------------------------------
    parser = argparse.ArgumentParser(
        description="Moorage - OpenClaw gateway control plane",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Port number for the console (overrides PORT and config.yaml)",
    )
    parser.add_argument(
        "--host", type=str, default=None,
        help="Host binding address (overrides config.yaml)",
    )
    args = parser.parse_args()

    # -- Resolve project directory ---------------------------------------------
    project_dir = os.path.dirname(os.path.abspath(__file__))

    # -- Load environment variables from .env ----------------------------------
    env_path = os.path.join(project_dir, ".env")
    if os.path.exists(env_path):
        load_dotenv(env_path)

    # -- Ensure configuration file exists --------------------------------------
    config_path = os.path.join(project_dir, "config.yaml")
    config_example = os.path.join(project_dir, "config.yaml.example")
    if not os.path.exists(config_path) and os.path.exists(config_example):
        shutil.copy2(config_example, config_path)
        print("[INIT] Created config.yaml from template")

    # -- Logging ---------------------------------------------------------------
    log_level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=log_level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    # -- Load configuration to get web server settings -------------------------
    from console.config import ConfigManager, DEFAULTS
    try:
        config = ConfigManager(project_dir).load()
    except ValueError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        sys.exit(2)

    if not config["auth"].get("password"):
        print("[ERROR] SETUP_PASSWORD is not set; refusing to start.", file=sys.stderr)
        sys.exit(2)

    # Command-line args override config file and environment
    host = args.host or config["web"].get("host", DEFAULTS["web"]["host"])
    port = args.port or config["web"].get("port", DEFAULTS["web"]["port"])
    gateway = config["gateway"]

    # -- Print startup banner --------------------------------------------------
    print()
    print("  ╔══════════════════════════════════════════════╗")
    print("  ║           MOORAGE v1.0                       ║")
    print("  ║   OpenClaw Gateway Control Plane             ║")
    print("  ╚══════════════════════════════════════════════╝")
    print()
    print(f"  Console : http://{host}:{port}/setup")
    print(f"  Gateway : 127.0.0.1:{gateway['port']} (internal)")
    print(f"  State   : {gateway['state_dir']}")
    print()

    # -- Start the web server --------------------------------------------------
    uvicorn.run(
        "console.main:create_app",
        factory=True,
        host=host,
        port=port,
        reload=False,
        log_level=log_level.lower(),
    )


if __name__ == "__main__":
    main()
