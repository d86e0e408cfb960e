"""
Moorage - Terminal Sessions
==============================
Bridges WebSocket connections to commands running inside pseudo-terminals.

Each path maps to a fixed command (e.g. `/onboard/ws` -> `openclaw onboard`,
`/lite/ws` -> `/bin/bash`). Every accepted connection gets its own PTY and
its own process; sessions share nothing but the authorization check.

Wire protocol (JSON text frames):
    client -> server:
        {"type": "input",  "data": "ls\\r"}
        {"type": "resize", "cols": 120, "rows": 30}
        anything that is not JSON is written to the PTY as-is
    server -> client:
        {"type": "output", "data": "..."}
        {"type": "exit",   "code": 0, "signal": null}

Multi-character input is written one character at a time with a short
delay in between; interactive prompt libraries redraw incorrectly when a
paste arrives as one burst.
"""

import asyncio
import codecs
import fcntl
import json
import logging
import os
import pty
import signal
import struct
import termios
import uuid
from typing import Any, Awaitable, Callable

from fastapi import WebSocket
from fastapi.responses import JSONResponse
from starlette.requests import HTTPConnection
from starlette.websockets import WebSocketDisconnect, WebSocketState

logger = logging.getLogger("moorage.terminal")

READ_CHUNK = 65536
EXIT_DRAIN_TIMEOUT = 1.0
KILL_GRACE = 2.0
SPAWN_FAILURE_CODE = 127


async def paste_safe_write(
    write: Callable[[str], Awaitable[None]],
    data: str,
    delay: float,
) -> None:
    """
    Write `data` to a terminal without bulk pastes.

    A single character is written immediately. Longer input is written
    one character per call, sleeping `delay` seconds between characters
    (not after the last one).
    """
    if len(data) <= 1:
        if data:
            await write(data)
        return

    last = len(data) - 1
    for i, char in enumerate(data):
        await write(char)
        if i < last and delay > 0:
            await asyncio.sleep(delay)


def _acquire_controlling_tty() -> None:
    """Child-side: make the PTY on stdin the session's controlling terminal."""
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


class TerminalSession:
    """
    One WebSocket <-> PTY bridge.

    Attributes:
        session_id: Short random id, used in logs and the registry.
        argv:       Command to run.
        proc:       The child process once spawned.
    """

    def __init__(
        self,
        session_id: str,
        websocket: WebSocket,
        argv: list[str],
        env: dict[str, str],
        cwd: str | None,
        cols: int,
        rows: int,
        paste_delay: float,
    ):
        self.session_id = session_id
        self.websocket = websocket
        self.argv = argv
        self.env = env
        self.cwd = cwd
        self.cols = cols
        self.rows = rows
        self.paste_delay = paste_delay

        self.proc: asyncio.subprocess.Process | None = None
        self._master_fd: int | None = None
        self._output: asyncio.Queue = asyncio.Queue()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._reading = False

    # -- Lifecycle ------------------------------------------------------------

    async def run(self) -> None:
        """Spawn the command and bridge until either side goes away."""
        try:
            await self._spawn()
        except OSError as e:
            logger.error("Session %s: failed to start %s: %s", self.session_id, self.argv[0], e)
            await self._send({"type": "output", "data": f"\r\nFailed to start {self.argv[0]}: {e}\r\n"})
            await self._send({"type": "exit", "code": SPAWN_FAILURE_CODE, "signal": None})
            await self._close_websocket()
            return

        logger.info("Session %s: started %s (pid %s)", self.session_id, self.argv[0], self.proc.pid)
        output_task = asyncio.create_task(self._pump_output())
        input_task = asyncio.create_task(self._pump_input())
        exit_task = asyncio.create_task(self.proc.wait())

        try:
            await asyncio.wait({input_task, exit_task}, return_when=asyncio.FIRST_COMPLETED)
            if exit_task.done():
                await self._finish_exited(output_task, exit_task.result())
            else:
                logger.info("Session %s: client disconnected", self.session_id)
                await self.terminate()
        finally:
            for task in (output_task, input_task, exit_task):
                task.cancel()
            await asyncio.gather(output_task, input_task, exit_task, return_exceptions=True)
            self._close_pty()

    async def terminate(self) -> None:
        """Hang up the process group; SIGKILL it if it lingers. Dead processes are fine."""
        proc = self.proc
        if proc is None or proc.returncode is not None:
            return
        _killpg(proc.pid, signal.SIGHUP)
        try:
            await asyncio.wait_for(proc.wait(), timeout=KILL_GRACE)
        except asyncio.TimeoutError:
            _killpg(proc.pid, signal.SIGKILL)
            await proc.wait()

    async def _spawn(self) -> None:
        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(slave_fd, self.cols, self.rows)
            self.proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                env=self.env,
                cwd=self.cwd,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except OSError:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        os.set_blocking(master_fd, False)
        self._master_fd = master_fd
        asyncio.get_running_loop().add_reader(master_fd, self._on_readable)
        self._reading = True

    async def _finish_exited(self, output_task: asyncio.Task, returncode: int) -> None:
        try:
            await asyncio.wait_for(output_task, timeout=EXIT_DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            # a background child still holds the PTY open
            pass

        code, sig = returncode, None
        if returncode < 0:
            code = None
            try:
                sig = signal.Signals(-returncode).name
            except ValueError:
                sig = f"SIG{-returncode}"

        logger.info("Session %s: process exited (code=%s, signal=%s)", self.session_id, code, sig)
        await self._send({"type": "exit", "code": code, "signal": sig})
        await self._close_websocket()

    # -- PTY -> client --------------------------------------------------------

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, READ_CHUNK)
        except BlockingIOError:
            return
        except OSError:
            # EIO once every slave handle is closed
            data = b""

        if data:
            self._output.put_nowait(data)
        else:
            self._stop_reading()
            self._output.put_nowait(None)

    async def _pump_output(self) -> None:
        while True:
            data = await self._output.get()
            if data is None:
                tail = self._decoder.decode(b"", final=True)
                if tail:
                    await self._send({"type": "output", "data": tail})
                return
            text = self._decoder.decode(data)
            if text:
                await self._send({"type": "output", "data": text})

    # -- Client -> PTY --------------------------------------------------------

    async def _pump_input(self) -> None:
        try:
            while True:
                message = await self.websocket.receive()
                if message["type"] == "websocket.disconnect":
                    return
                if message.get("text") is not None:
                    await self.handle_frame(message["text"])
                elif message.get("bytes") is not None:
                    await self._write(message["bytes"].decode("utf-8", errors="replace"))
        except WebSocketDisconnect:
            return

    async def handle_frame(self, text: str) -> None:
        """Apply one client frame; non-JSON frames are raw terminal input."""
        try:
            frame = json.loads(text)
        except ValueError:
            await self._write(text)
            return
        if not isinstance(frame, dict):
            await self._write(text)
            return

        kind = frame.get("type")
        if kind == "input":
            data = frame.get("data")
            if isinstance(data, str):
                await paste_safe_write(self._write, data, self.paste_delay)
        elif kind == "resize":
            try:
                cols, rows = int(frame["cols"]), int(frame["rows"])
            except (KeyError, TypeError, ValueError):
                logger.debug("Session %s: bad resize frame %r", self.session_id, frame)
                return
            if cols > 0 and rows > 0 and self._master_fd is not None:
                _set_winsize(self._master_fd, cols, rows)
        else:
            logger.debug("Session %s: ignoring frame type %r", self.session_id, kind)

    async def _write(self, chunk: str) -> None:
        if self._master_fd is None:
            return
        data = chunk.encode("utf-8")
        while data:
            try:
                written = os.write(self._master_fd, data)
            except BlockingIOError:
                await asyncio.sleep(0.01)
                continue
            except OSError as e:
                logger.debug("Session %s: write failed: %s", self.session_id, e)
                return
            data = data[written:]

    # -- Helpers --------------------------------------------------------------

    def _stop_reading(self) -> None:
        if self._reading and self._master_fd is not None:
            asyncio.get_running_loop().remove_reader(self._master_fd)
            self._reading = False

    def _close_pty(self) -> None:
        self._stop_reading()
        if self._master_fd is not None:
            os.close(self._master_fd)
            self._master_fd = None

    async def _send(self, frame: dict[str, Any]) -> None:
        if self.websocket.client_state != WebSocketState.CONNECTED:
            return
        try:
            await self.websocket.send_text(json.dumps(frame))
        except (WebSocketDisconnect, RuntimeError, OSError):
            pass

    async def _close_websocket(self) -> None:
        if self.websocket.client_state != WebSocketState.CONNECTED:
            return
        try:
            await self.websocket.close()
        except RuntimeError:
            pass


class TerminalMultiplexer:
    """
    Registry and entry point for terminal sessions.

    Args:
        authorize:   Callable deciding whether a handshake carries a valid
                     credential.
        commands:    Mapping of WebSocket path -> argv.
        env:         Extra environment for spawned commands (on top of
                     os.environ and the terminal variables).
        cwd:         Working directory for spawned commands.
        cols, rows:  Initial PTY size.
        paste_delay: Seconds between characters of multi-character input.
    """

    def __init__(
        self,
        authorize: Callable[[HTTPConnection], bool],
        commands: dict[str, list[str]],
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        cols: int = 120,
        rows: int = 30,
        paste_delay: float = 0.005,
    ):
        self.authorize = authorize
        self.commands = {path: list(argv) for path, argv in commands.items()}
        self.extra_env = dict(env or {})
        self.cwd = cwd
        self.cols = cols
        self.rows = rows
        self.paste_delay = paste_delay
        self.sessions: dict[str, TerminalSession] = {}

    @property
    def active_count(self) -> int:
        return len(self.sessions)

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self.extra_env)
        env.update({
            "TERM": "xterm-256color",
            "COLORTERM": "truecolor",
            "FORCE_COLOR": "1",
        })
        return env

    async def handle(self, websocket: WebSocket) -> None:
        """WebSocket endpoint: authorize, then run one session to completion."""
        if not self.authorize(websocket):
            logger.warning("Rejected unauthorized terminal connection on %s", websocket.url.path)
            await _deny(websocket)
            return

        argv = self.commands.get(websocket.url.path)
        if not argv:
            await websocket.close(code=1008)
            return

        cwd = self.cwd if self.cwd and os.path.isdir(self.cwd) else None
        await websocket.accept()
        session = TerminalSession(
            uuid.uuid4().hex[:12],
            websocket,
            argv,
            self.build_env(),
            cwd,
            self.cols,
            self.rows,
            self.paste_delay,
        )
        self.sessions[session.session_id] = session
        try:
            await session.run()
        finally:
            self.sessions.pop(session.session_id, None)

    async def close_all(self) -> None:
        """Terminate every live session's process."""
        sessions = list(self.sessions.values())
        if sessions:
            logger.info("Closing %s terminal session(s)", len(sessions))
        await asyncio.gather(*(s.terminate() for s in sessions), return_exceptions=True)


async def _deny(websocket: WebSocket) -> None:
    """Reject a handshake with HTTP 401 where supported, else close with 1008."""
    if "websocket.http.response" in websocket.scope.get("extensions", {}):
        await websocket.send_denial_response(
            JSONResponse(
                status_code=401,
                content={"error": "Unauthorized", "message": "Invalid or missing password", "details": None},
            )
        )
    else:
        await websocket.close(code=1008)


def _killpg(pid: int, sig: int) -> None:
    try:
        os.killpg(pid, sig)
    except ProcessLookupError:
        pass
