"""
Moorage - Gateway Supervisor
===============================
Owns the lifecycle of the single gateway process.

Responsibilities:
    - Prepare the config document before every launch (migrate, repair,
      inject the gateway connection/auth block) and persist it
    - Resolve the gateway token and keep the token file in sync
    - Spawn the gateway with a curated environment
    - Stream its output and error streams into the log ring buffer
    - Probe for readiness, then keep probing in the background on a
      slow cold start
    - Restart once per unexpected crash, after a fixed delay
    - Stop gracefully (SIGTERM, then SIGKILL after the grace period)

States:
    - "stopped"    : No live process
    - "starting"   : Spawned (or spawning), not yet reachable
    - "ready"      : Answered at least one readiness probe
    - "crash_loop" : Restart ceiling exceeded; waits for an operator

Architecture:
    Process events never mutate state directly. The output/error pumps
    and the exit watcher put ("line", ...) / ("exit", ...) messages on one
    asyncio.Queue, and a single consumer task applies them in order. The
    exit is reported as soon as the process is reaped, even if a leftover
    child still holds its pipes open; the pumps only get a short drain. Start
    and stop run on the same event loop and only flip state synchronously
    before their first await, so two concurrent start() calls can never
    both spawn.

Usage:
    supervisor = GatewaySupervisor(settings, ws_manager)
    await supervisor.start()          # {"ok": True, "message": ...}
    supervisor.logs.since(0)          # {"entries": [...], "lastId": N}
    await supervisor.stop()
"""

import asyncio
import logging
import os
import shlex
import signal
from datetime import datetime, timezone
from typing import Any

import httpx

from gateway.logbuffer import LogBuffer
from gateway.migrate import default_config, migrate_config, repair_config
from gateway.store import ConfigStore
from gateway.token import persist_gateway_token, resolve_gateway_token

logger = logging.getLogger("moorage.gateway")

STATE_STOPPED = "stopped"
STATE_STARTING = "starting"
STATE_READY = "ready"
STATE_CRASH_LOOP = "crash_loop"

# Any HTTP answer on one of these means something is listening.
READINESS_PATHS = ("/openclaw", "/", "/health")

# Stream reader line limit; the gateway logs large JSON blobs in verbose mode.
STREAM_LIMIT = 1024 * 1024

# How often the exit watcher checks whether the process has been reaped.
EXIT_POLL_INTERVAL = 0.1

# How long the pumps may keep reading after the process exited.
OUTPUT_DRAIN_TIMEOUT = 1.0

# Upper bound on waiting for the exit after SIGKILL.
KILL_TIMEOUT = 5.0


class GatewayProcess:
    """
    Handle for one spawned gateway process.

    Attributes:
        proc:       The asyncio subprocess.
        pid:        Process id.
        started_at: ISO timestamp of the spawn.
        token:      Token the process was launched with.
    """

    def __init__(self, proc: asyncio.subprocess.Process, token: str):
        self.proc = proc
        self.pid = proc.pid
        self.started_at = datetime.now(timezone.utc).isoformat()
        self.token = token

    @property
    def alive(self) -> bool:
        return self.proc.returncode is None


class GatewaySupervisor:
    """
    Supervises the gateway process.

    All settings come from the `gateway` section of the console settings
    (see console/config.py DEFAULTS).

    Attributes:
        state:          Current state string.
        ready:          True once the gateway answered a readiness probe.
        token:          Current gateway token (None before the first start).
        logs:           Ring buffer of gateway output.
        store:          Config document store.
        launch_count:   Number of processes spawned so far.
        restart_count:  Number of crash restarts scheduled so far.
        last_exit:      {"code", "signal", "at"} of the last exit, if any.
    """

    def __init__(self, settings: dict[str, Any], ws_manager: Any = None):
        gw = settings["gateway"]
        command = gw.get("command") or ["openclaw"]
        if isinstance(command, str):
            command = shlex.split(command)

        self.command: list[str] = list(command)
        self.port = int(gw["port"])
        self.state_dir: str = gw["state_dir"]
        self.workspace_dir: str = gw["workspace_dir"]
        self.plugins_dir: str = gw.get("plugins_dir") or ""
        self.browsers_path: str = gw.get("browsers_path") or ""
        self.token_override: str | None = gw.get("token") or None
        self.allowed_origins: list[str] = list(gw.get("allowed_origins") or [])

        self.ready_timeout = float(gw.get("ready_timeout", 90))
        self.background_probe_timeout = float(gw.get("background_probe_timeout", 300))
        self.probe_interval = float(gw.get("probe_interval", 0.5))
        self.stop_grace = float(gw.get("stop_grace", 10))
        self.restart_delay = float(gw.get("restart_delay", 5))
        self.max_restart_attempts = int(gw.get("max_restart_attempts", 0))

        self.store = ConfigStore(
            os.path.join(self.state_dir, gw.get("config_file", "openclaw.json"))
        )
        self.logs = LogBuffer(int(gw.get("log_capacity", 1000)))
        self.ws = ws_manager

        self.state: str = STATE_STOPPED
        self.ready: bool = False
        self.token: str | None = None
        self.launch_count: int = 0
        self.restart_count: int = 0
        self.consecutive_crashes: int = 0
        self.last_exit: dict[str, Any] | None = None

        self._handle: GatewayProcess | None = None
        self._spawning = False
        self._shutting_down = False
        self._exited: asyncio.Event | None = None
        self._events: asyncio.Queue | None = None
        self._event_task: asyncio.Task | None = None
        self._restart_task: asyncio.Task | None = None
        self._probe_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

    # -- Status ---------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        """True while a gateway process handle is live."""
        return self._handle is not None and self._handle.alive

    @property
    def pid(self) -> int | None:
        return self._handle.pid if self._handle else None

    @property
    def status(self) -> dict[str, Any]:
        """Status snapshot. Never raises, whatever the gateway is doing."""
        return {
            "state": self.state,
            "running": self.is_running,
            "ready": self.ready,
            "pid": self.pid,
            "started_at": self._handle.started_at if self._handle else None,
            "port": self.port,
            "restart_count": self.restart_count,
            "last_exit": self.last_exit,
            "configured": self.store.exists(),
        }

    def get_recent_logs(self, since_id: int = 0) -> dict[str, Any]:
        """Return buffered log entries newer than `since_id` plus the cursor."""
        return self.logs.since(since_id)

    # -- Lifecycle ------------------------------------------------------------

    async def start(self) -> dict[str, Any]:
        """
        Launch the gateway unless one is already live or starting.

        Waits for readiness up to `ready_timeout`. If the process is still
        alive at that point, probing continues in the background and start
        still reports success.

        Returns:
            {"ok": bool, "message": str}

        Raises:
            ValueError: If the persisted config document is not valid JSON.
            OSError:    If the gateway binary cannot be spawned.
        """
        if self._handle is not None or self.state == STATE_STARTING:
            return {"ok": True, "message": "Gateway is already running"}

        self.state = STATE_STARTING
        self.ready = False
        self._shutting_down = False
        self._cancel_task(self._probe_task)
        self._spawning = True
        try:
            self._ensure_event_loop()
            token = self._prepare_launch()
            logger.info("Starting gateway on port %s...", self.port)
            proc = await asyncio.create_subprocess_exec(
                *self._build_command(token),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(token),
                cwd=self.workspace_dir,
                limit=STREAM_LIMIT,
            )
        except BaseException:
            # Includes cancellation mid-spawn: nothing was launched.
            self.state = STATE_STOPPED
            raise
        finally:
            self._spawning = False

        handle = GatewayProcess(proc, token)
        self._handle = handle
        self._exited = asyncio.Event()
        self.token = token
        self.launch_count += 1
        events = self._events
        pumps = [
            self._spawn(self._pump(proc.stdout, "output", events)),
            self._spawn(self._pump(proc.stderr, "error", events)),
        ]
        self._spawn(self._watch(handle, pumps, events))
        logger.info("Gateway spawned (pid %s)", handle.pid)
        await self._broadcast_status("starting", {"pid": handle.pid})

        if self._shutting_down:
            # stop() ran while we were spawning
            await self.stop()
            return {"ok": False, "message": "Gateway was stopped during startup"}

        return await self._await_ready(handle)

    async def stop(self) -> dict[str, Any]:
        """
        Stop the gateway: SIGTERM, wait `stop_grace`, then SIGKILL.

        Resolves once the exit has been observed by the event consumer,
        or reports failure if even SIGKILL is not observed within
        KILL_TIMEOUT. Also cancels any pending crash restart.
        """
        self._shutting_down = True
        self._cancel_task(self._restart_task)
        self._cancel_task(self._probe_task)

        handle = self._handle
        if handle is None:
            # A start() still inside the spawn sees _shutting_down and stops itself.
            if not self._spawning:
                self.state = STATE_STOPPED
            return {"ok": True, "message": "Gateway is not running"}

        exited = self._exited
        logger.info("Stopping gateway (pid %s)...", handle.pid)
        _signal(handle.proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(exited.wait(), timeout=self.stop_grace)
        except asyncio.TimeoutError:
            logger.warning("Gateway did not stop gracefully, killing...")
            _signal(handle.proc, signal.SIGKILL)
            try:
                await asyncio.wait_for(exited.wait(), timeout=KILL_TIMEOUT)
            except asyncio.TimeoutError:
                logger.error("Gateway (pid %s) did not exit after SIGKILL", handle.pid)
                return {"ok": False, "message": "Gateway did not exit after SIGKILL"}

        return {"ok": True, "message": "Gateway stopped"}

    async def restart(self) -> dict[str, Any]:
        """Stop (if running) and start again with a freshly prepared config."""
        await self.stop()
        return await self.start()

    async def reset(self) -> dict[str, Any]:
        """Stop the gateway and delete the config document."""
        await self.stop()
        removed = self.store.reset()
        logger.info("Config document %s", "removed" if removed else "was already absent")
        return {"ok": True, "message": "Configuration reset" if removed else "Nothing to reset"}

    async def close(self) -> None:
        """Stop the gateway and tear down every background task."""
        await self.stop()
        self._cancel_task(self._event_task)
        for task in list(self._tasks):
            self._cancel_task(task)
        self._event_task = None
        self._events = None

    # -- Launch preparation ---------------------------------------------------

    def _prepare_launch(self) -> str:
        """
        Load/create, migrate, repair and rewrite the config document.

        Returns:
            The token the gateway will be launched with.
        """
        os.makedirs(self.state_dir, exist_ok=True)
        os.makedirs(self.workspace_dir, exist_ok=True)

        token = resolve_gateway_token(self.state_dir, self.token_override)

        if self.store.exists():
            doc = self.store.load()
        else:
            logger.info("No config found, creating default at %s", self.store.path)
            doc = default_config(self.port)

        migrated, changes = migrate_config(doc)
        for change in changes:
            logger.info("Config migration: %s", change)
        for channel in repair_config(doc):
            logger.info("Config repair: channels.%s.allowFrom now includes \"*\"", channel)

        self._apply_gateway_block(doc, token)
        self.store.save(doc)
        return token

    def _apply_gateway_block(self, doc: dict[str, Any], token: str) -> None:
        """Overwrite the connection/auth/control-UI settings we own."""
        gateway = doc.get("gateway")
        if not isinstance(gateway, dict):
            gateway = {}
            doc["gateway"] = gateway

        gateway["mode"] = "local"
        gateway["port"] = self.port
        gateway["bind"] = "loopback"
        gateway["auth"] = {"mode": "token", "token": token}

        control_ui = gateway.get("controlUi")
        if not isinstance(control_ui, dict):
            control_ui = {}
        control_ui["allowedOrigins"] = list(self.allowed_origins)
        gateway["controlUi"] = control_ui

    def _build_command(self, token: str) -> list[str]:
        return [
            *self.command,
            "gateway", "run",
            "--bind", "loopback",
            "--port", str(self.port),
            "--auth", "token",
            "--token", token,
            "--verbose",
        ]

    def _build_env(self, token: str) -> dict[str, str]:
        env = dict(os.environ)
        env.update({
            "HOME": self.state_dir,
            "OPENCLAW_STATE_DIR": self.state_dir,
            "OPENCLAW_WORKSPACE_DIR": self.workspace_dir,
            "OPENCLAW_CONFIG_PATH": self.store.path,
            "OPENCLAW_GATEWAY_TOKEN": token,
        })
        if self.plugins_dir:
            env["OPENCLAW_BUNDLED_PLUGINS_DIR"] = self.plugins_dir
        if self.browsers_path:
            env["PLAYWRIGHT_BROWSERS_PATH"] = self.browsers_path
        return env

    # -- Readiness ------------------------------------------------------------

    def _is_live(self, handle: GatewayProcess) -> bool:
        return self._handle is handle and handle.alive

    async def _await_ready(self, handle: GatewayProcess) -> dict[str, Any]:
        if await self._probe(handle, self.ready_timeout):
            await self._mark_ready(handle)
            return {"ok": True, "message": "Gateway is ready"}

        if not self._is_live(handle):
            return {"ok": False, "message": "Gateway exited before becoming ready"}

        logger.warning(
            "Gateway not reachable after %ss, continuing to probe in the background",
            self.ready_timeout,
        )
        self._probe_task = self._spawn(self._background_probe(handle))
        return {"ok": True, "message": "Gateway started, still waiting for it to become reachable"}

    async def _background_probe(self, handle: GatewayProcess) -> None:
        if await self._probe(handle, self.background_probe_timeout):
            await self._mark_ready(handle)
        elif self._is_live(handle):
            logger.error(
                "Gateway still not reachable after %ss of background probing",
                self.background_probe_timeout,
            )

    async def _probe(self, handle: GatewayProcess, timeout: float) -> bool:
        """
        Poll the readiness paths until one answers or `timeout` elapses.

        Liveness is re-checked on every iteration, so a stop or crash
        mid-probe ends the loop right away.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        base_url = f"http://127.0.0.1:{self.port}"
        async with httpx.AsyncClient(base_url=base_url, timeout=2.0, trust_env=False) as client:
            while self._is_live(handle):
                if await self._probe_once(client):
                    return self._is_live(handle)
                if loop.time() >= deadline:
                    return False
                await asyncio.sleep(self.probe_interval)
        return False

    async def _probe_once(self, client: httpx.AsyncClient) -> bool:
        for path in READINESS_PATHS:
            try:
                await client.get(path)
            except httpx.HTTPError:
                continue
            return True
        return False

    async def _mark_ready(self, handle: GatewayProcess) -> None:
        if not self._is_live(handle):
            return
        self.ready = True
        self.state = STATE_READY
        self.consecutive_crashes = 0
        logger.info("Gateway is ready")
        self._sync_token(handle)
        await self._broadcast_status("ready", {"pid": handle.pid})

    def _sync_token(self, handle: GatewayProcess) -> None:
        """Adopt the gateway's own token if it rewrote the one we gave it."""
        try:
            doc = self.store.load()
        except (OSError, ValueError) as e:
            logger.warning("Could not re-read config for token sync: %s", e)
            return

        gateway = doc.get("gateway") if isinstance(doc.get("gateway"), dict) else {}
        auth = gateway.get("auth") if isinstance(gateway.get("auth"), dict) else {}
        current = auth.get("token")
        if isinstance(current, str) and current and current != handle.token:
            logger.info("Gateway rewrote its token, updating the token file")
            persist_gateway_token(self.state_dir, current)
            handle.token = current
            self.token = current

    # -- Process events -------------------------------------------------------

    def _ensure_event_loop(self) -> None:
        if self._event_task is None or self._event_task.done():
            self._events = asyncio.Queue()
            self._event_task = asyncio.create_task(self._run_events())

    async def _watch(
        self,
        handle: GatewayProcess,
        pumps: list[asyncio.Task],
        events: asyncio.Queue,
    ) -> None:
        """
        Report the exit once the process is reaped. Producer side only.

        `Process.wait()` also waits for the pipes to close, which never
        happens while a child of the gateway keeps them open, so the
        returncode is polled instead. The pumps get OUTPUT_DRAIN_TIMEOUT
        to flush the last lines, then they are cancelled.
        """
        while handle.proc.returncode is None:
            await asyncio.sleep(EXIT_POLL_INTERVAL)
        code = handle.proc.returncode

        _, pending = await asyncio.wait(pumps, timeout=OUTPUT_DRAIN_TIMEOUT)
        for task in pending:
            logger.debug("Output still open after gateway exit, detaching reader")
            task.cancel()
        await events.put(("exit", handle, code))

    async def _pump(self, stream: asyncio.StreamReader, name: str, events: asyncio.Queue) -> None:
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than STREAM_LIMIT: take what is buffered.
                raw = await stream.read(STREAM_LIMIT)
            if not raw:
                break
            text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            await events.put(("line", name, text))

    async def _run_events(self) -> None:
        """Single consumer: every state change caused by the process lands here."""
        while True:
            kind, *payload = await self._events.get()
            try:
                if kind == "line":
                    await self._on_line(*payload)
                elif kind == "exit":
                    await self._on_exit(*payload)
            except Exception:
                logger.exception("Error while handling gateway %s event", kind)

    async def _on_line(self, stream: str, text: str) -> None:
        entry = self.logs.append(stream, text)
        if stream == "error":
            logger.warning("[gateway] %s", text)
        else:
            logger.info("[gateway] %s", text)
        if self.ws is not None:
            # A slow subscriber must not hold up the events queued behind this line.
            self._spawn(self.ws.send_log(entry))

    async def _on_exit(self, handle: GatewayProcess, code: int) -> None:
        if handle is not self._handle:
            return

        signal_name = _signal_name(code)
        self._handle = None
        self.ready = False
        self.state = STATE_STOPPED
        self.last_exit = {
            "code": None if signal_name else code,
            "signal": signal_name,
            "at": datetime.now(timezone.utc).isoformat(),
        }
        logger.info("Gateway exited with code %s, signal %s", self.last_exit["code"], signal_name)
        if self._exited is not None:
            self._exited.set()

        if self._shutting_down or code == 0:
            await self._broadcast_status("stopped", {"last_exit": self.last_exit})
            return

        self.consecutive_crashes += 1
        if self.max_restart_attempts and self.consecutive_crashes > self.max_restart_attempts:
            self.state = STATE_CRASH_LOOP
            logger.error(
                "Gateway crashed %s times in a row, giving up until restarted manually",
                self.consecutive_crashes,
            )
            await self._broadcast_status("crash_loop", {"last_exit": self.last_exit})
            return

        self.restart_count += 1
        logger.warning("Gateway crashed, restarting in %s seconds...", self.restart_delay)
        self._restart_task = self._spawn(self._restart_after_crash())
        await self._broadcast_status("stopped", {"last_exit": self.last_exit, "restarting": True})

    async def _restart_after_crash(self) -> None:
        await asyncio.sleep(self.restart_delay)
        if self._shutting_down:
            return
        try:
            result = await self.start()
        except (OSError, ValueError) as e:
            logger.error("Gateway restart failed: %s", e)
            return
        if not result["ok"]:
            logger.error("Gateway restart failed: %s", result["message"])

    # -- Internal helpers -----------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        """Create a tracked background task."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _cancel_task(self, task: asyncio.Task | None) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _broadcast_status(self, status: str, details: dict | None = None) -> None:
        if self.ws is not None:
            await self.ws.send_status(status, details)


def _signal(proc: asyncio.subprocess.Process, sig: int) -> None:
    """Send `sig` to the process; a process that is already gone is fine."""
    if proc.returncode is not None:
        return
    try:
        proc.send_signal(sig)
    except ProcessLookupError:
        pass


def _signal_name(returncode: int | None) -> str | None:
    """Map a negative asyncio returncode to the signal name that caused it."""
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"SIG{-returncode}"
