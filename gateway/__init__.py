"""
Moorage - Gateway Package
=========================
Everything that touches the supervised OpenClaw gateway.

Modules:
    store.py      -> Read/write the gateway's JSON config document
    migrate.py    -> Legacy layout migration and invariant repair
    token.py      -> Gateway token resolution and persistence
    logbuffer.py  -> Ring buffer of gateway output lines
    supervisor.py -> Spawn, probe, restart and stop the gateway process
    proxy.py      -> HTTP/WebSocket forwarding with token injection
    terminal.py   -> PTY-backed terminal sessions over WebSocket
"""
