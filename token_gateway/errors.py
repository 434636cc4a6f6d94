from __future__ import annotations

from fastapi import status


class GatewayError(RuntimeError):
    """Base class for errors that map onto a JSON error envelope."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NoCredentialError(GatewayError):
    """The pool holds no credentials at all."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS


class PoolExhaustedError(GatewayError):
    """Every credential is busy, too recently used or over quota."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS


class CredentialNotFoundError(GatewayError):
    status_code = status.HTTP_404_NOT_FOUND


class CredentialInvalidError(GatewayError):
    """The upstream confirmed the credential is dead; it has been disabled."""

    status_code = status.HTTP_401_UNAUTHORIZED


class NoValidEndpointError(GatewayError):
    status_code = status.HTTP_502_BAD_GATEWAY


class MalformedRequestError(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST


class StoreUnavailableError(GatewayError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class UpstreamUnreachableError(GatewayError):
    status_code = status.HTTP_502_BAD_GATEWAY


class UpstreamStatusError(GatewayError):
    def __init__(self, status_code: int, body: str) -> None:
        message = "upstream response error"
        if body:
            message = f"{message}: {body}"
        super().__init__(message)
        self.status_code = status_code
        self.body = body
