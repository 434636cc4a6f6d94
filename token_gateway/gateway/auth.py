from __future__ import annotations

import hmac
from dataclasses import dataclass

from fastapi import Request, status
from fastapi.responses import JSONResponse

from token_gateway.settings import Settings


@dataclass(slots=True)
class AuthResult:
    method: str
    principal: str


class Authenticator:
    """Single shared bearer secret; open when ``AUTH_TOKEN`` is unset."""

    def __init__(self, settings: Settings):
        self.auth_token = (settings.auth_token or "").strip()
        self.required = bool(self.auth_token)

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        if not self.required:
            return None

        auth_header = request.headers.get("authorization", "")
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return _unauthorized("missing bearer token")

        if not hmac.compare_digest(
            token.strip().encode("utf-8"), self.auth_token.encode("utf-8")
        ):
            return _unauthorized("invalid authorization token")

        request.state.auth = AuthResult(method="bearer", principal="gateway-client")
        return None


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        headers={"WWW-Authenticate": "Bearer"},
        content={"error": message},
    )
