"""
Moorage - Gateway Token
==========================
Resolves the bearer token the gateway is launched with.

Priority order:
    1. Explicit override (OPENCLAW_GATEWAY_TOKEN / gateway.token setting)
    2. Token persisted at <state_dir>/gateway.token
    3. Freshly generated, then persisted with mode 0600

The file holds the raw token text, no newline and no encoding. Once the
gateway is up it may rewrite its own token; the supervisor then calls
`persist_gateway_token` so the file follows the gateway.
"""

import logging
import os
import secrets

logger = logging.getLogger("moorage.gateway")

TOKEN_FILENAME = "gateway.token"


def token_path(state_dir: str) -> str:
    """Return the path of the persisted token file."""
    return os.path.join(state_dir, TOKEN_FILENAME)


def read_gateway_token(state_dir: str) -> str | None:
    """Read the persisted token, or None if absent or empty."""
    try:
        with open(token_path(state_dir), "r", encoding="utf-8") as f:
            token = f.read().strip()
    except FileNotFoundError:
        return None
    return token or None


def persist_gateway_token(state_dir: str, token: str) -> None:
    """
    Write the token file with owner-only permissions.

    The file is opened with mode 0600 at creation and chmod'ed afterwards
    in case it already existed with looser bits.
    """
    os.makedirs(state_dir, exist_ok=True)
    path = token_path(state_dir)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(token)
    os.chmod(path, 0o600)


def resolve_gateway_token(state_dir: str, override: str | None = None) -> str:
    """
    Return the token to launch the gateway with, generating one if needed.

    Args:
        state_dir: Gateway state directory.
        override:  Operator-supplied token; wins over everything else.
    """
    if override:
        return override

    existing = read_gateway_token(state_dir)
    if existing:
        return existing

    token = secrets.token_hex(32)
    persist_gateway_token(state_dir, token)
    logger.info("Generated new gateway token")
    return token
