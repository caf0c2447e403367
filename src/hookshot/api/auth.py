"""Bearer-secret authentication for the enqueue endpoint.

Callers send ``Authorization: Bearer <HOOKSHOT_API_SECRET>``. When no secret
is configured (development and test only; production refuses to start
without one), requests are accepted unauthenticated.
"""

from __future__ import annotations

import hmac
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from hookshot.exceptions import AuthenticationError
from hookshot.logging import get_logger

if TYPE_CHECKING:
    from hookshot.config import Settings

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


def secrets_match(provided: str, expected: str) -> bool:
    """Constant-time secret comparison."""
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


class ApiSecretDependency:
    """FastAPI dependency enforcing the API bearer secret.

    Usage:
        @router.post("/jobs")
        async def enqueue(
            payload: dict[str, Any],
            _: None = Depends(ApiSecretDependency(settings)),
        ):
            ...
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    async def __call__(
        self,
        credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    ) -> None:
        expected = self.settings.api_secret
        if not expected:
            return

        if credentials is None:
            raise AuthenticationError("Missing authentication credentials")
        if not secrets_match(credentials.credentials, expected):
            raise AuthenticationError("Invalid API secret")
        logger.debug("Enqueue request authenticated")
