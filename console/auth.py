"""
Moorage - Authentication Module
==================================
Single-password protection for everything behind the console.

Security model:
- One setup password, supplied by the operator (SETUP_PASSWORD)
- No accounts, no sessions: every request carries the password itself
- Accepted carriers, checked in order:
      Authorization: Bearer <password>
      ?password=<password>     (WebSocket clients cannot set headers)
      <cookie_name>=<password> (set by POST /setup/api/login)
- Comparison is constant-time

The same check guards the setup API, the live log socket, the terminal
sockets and the reverse proxy.
"""

import hmac

from fastapi import HTTPException, Request
from starlette.requests import HTTPConnection


class SetupAuth:
    """
    Verifies the setup password on HTTP requests and WebSocket handshakes.

    Attributes:
        cookie_name:    Name of the auth cookie.
        cookie_max_age: Lifetime of the auth cookie in seconds.
    """

    def __init__(self, password: str, cookie_name: str = "moorage_auth", cookie_max_age: int = 86400):
        """
        Args:
            password: The setup password. Must be non-empty.

        Raises:
            ValueError: If no password is configured.
        """
        if not password:
            raise ValueError("SETUP_PASSWORD is required")
        self._password = password
        self.cookie_name = cookie_name
        self.cookie_max_age = cookie_max_age

    def verify(self, candidate: str | None) -> bool:
        """Constant-time check of a candidate password."""
        if not candidate:
            return False
        return hmac.compare_digest(candidate.encode("utf-8"), self._password.encode("utf-8"))

    def credential_from(self, connection: HTTPConnection) -> str | None:
        """Extract the caller-supplied password from header, query or cookie."""
        header = connection.headers.get("authorization", "")
        scheme, _, value = header.partition(" ")
        if scheme.lower() == "bearer" and value:
            return value.strip()

        query = connection.query_params.get("password")
        if query:
            return query

        return connection.cookies.get(self.cookie_name)

    def is_authorized(self, connection: HTTPConnection) -> bool:
        """True if the request or handshake carries the setup password."""
        return self.verify(self.credential_from(connection))


def require_auth(auth: SetupAuth):
    """
    Create a FastAPI dependency that enforces authentication.

    Usage in routes:
        @router.get("/status", dependencies=[Depends(require_auth(auth))])
        async def status(): ...

    Args:
        auth: The SetupAuth instance to check against.

    Returns:
        A FastAPI dependency function.
    """
    async def _verify(request: Request):
        if not auth.is_authorized(request):
            raise HTTPException(status_code=401, detail="Authentication required")
        return True

    return _verify
