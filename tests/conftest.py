import asyncio
import socket
import stat
import sys
import time
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


# Stand-in for the gateway binary. Invoked as
#   <python> fake_gateway.py gateway run --bind loopback --port N --auth token --token T --verbose
# and steered by FAKE_GATEWAY_MODE.
FAKE_GATEWAY = r'''
import argparse
import json
import os
import signal
import sys
import time
from http.server import BaseHTTPRequestHandler, HTTPServer

mode = os.environ.get("FAKE_GATEWAY_MODE", "serve")
parser = argparse.ArgumentParser()
parser.add_argument("--port", type=int, required=True)
parser.add_argument("--token")
args, _ = parser.parse_known_args()

print(f"fake gateway mode={mode} port={args.port}", flush=True)
print("warming up", file=sys.stderr, flush=True)

if mode == "crash":
    sys.exit(3)

if mode == "crash-once":
    marker = os.path.join(os.environ["OPENCLAW_STATE_DIR"], "crashed-once")
    if not os.path.exists(marker):
        open(marker, "w").close()
        sys.exit(3)

if mode == "ignore-term":
    signal.signal(signal.SIGTERM, signal.SIG_IGN)

if mode == "rewrite-token":
    path = os.environ["OPENCLAW_CONFIG_PATH"]
    with open(path, "r", encoding="utf-8") as f:
        doc = json.load(f)
    doc["gateway"]["auth"]["token"] = "rewritten-token"
    with open(path, "w", encoding="utf-8") as f:
        json.dump(doc, f)

if mode == "silent":
    while True:
        time.sleep(1)


class Handler(BaseHTTPRequestHandler):
    def _reply(self):
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length).decode("utf-8") if length else ""
        payload = json.dumps({
            "seen_auth": self.headers.get("Authorization"),
            "path": self.path,
            "method": self.command,
            "body": body,
        }).encode("utf-8")
        # Any status counts as reachable
        self.send_response(401)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    do_GET = _reply
    do_POST = _reply

    def log_message(self, *a):
        pass


HTTPServer(("127.0.0.1", args.port), Handler).serve_forever()
'''


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def free_port() -> int:
    return _free_port()


@pytest.fixture
def fake_gateway(tmp_path: Path) -> Path:
    p = tmp_path / "fake_gateway.py"
    p.write_text(FAKE_GATEWAY, encoding="utf-8")
    p.chmod(p.stat().st_mode | stat.S_IXUSR)
    return p


@pytest.fixture
def make_settings(tmp_path: Path, fake_gateway: Path, free_port: int):
    """Build console settings pointing at the fake gateway inside tmp_path."""
    from console.config import DEFAULTS, _deep_copy

    def _make(**gateway_overrides) -> dict:
        settings = _deep_copy(DEFAULTS)
        settings["auth"]["password"] = "secret"
        settings["gateway"].update({
            "command": [sys.executable, str(fake_gateway)],
            "port": free_port,
            "state_dir": str(tmp_path / "state"),
            "workspace_dir": str(tmp_path / "workspace"),
            "ready_timeout": 15,
            "probe_interval": 0.05,
            "stop_grace": 3,
            "restart_delay": 0.2,
        })
        settings["gateway"].update(gateway_overrides)
        return settings

    return _make


async def wait_until(predicate, timeout: float = 15.0, interval: float = 0.05) -> None:
    """Poll `predicate` on the running loop until it is truthy."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
