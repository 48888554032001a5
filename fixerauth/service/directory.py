from __future__ import annotations

from typing import Optional, Protocol

import httpx

from fixerauth.logging import get_logger
from fixerauth.service.errors import ServerError

logger = get_logger(__name__)


class UserDirectory(Protocol):
    """Existence check against the external user directory."""

    def user_exists(self, user_id: int) -> bool: ...


class AllowAllDirectory:
    """Used when no directory is configured; every user id is accepted."""

    def user_exists(self, user_id: int) -> bool:
        return True


class HttpUserDirectory:
    """Looks users up at ``{base_url}/api/usuarios/{id}``.

    200 means the user exists, 404 means it does not; anything else, or a
    transport failure, surfaces as ``ServerError`` so login fails instead of
    silently admitting an unknown id.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            follow_redirects=False,
            transport=transport,
        )

    def user_exists(self, user_id: int) -> bool:
        try:
            response = self._client.get(f"/api/usuarios/{user_id}")
        except httpx.HTTPError as exc:
            logger.error("user_directory_unreachable", user_id=user_id, error=str(exc))
            raise ServerError("user directory unavailable") from exc
        if response.status_code == 404:
            return False
        if response.status_code >= 400:
            logger.error(
                "user_directory_error",
                user_id=user_id,
                status_code=response.status_code,
            )
            raise ServerError("user directory unavailable")
        return True

    def close(self) -> None:
        self._client.close()


__all__ = ["UserDirectory", "AllowAllDirectory", "HttpUserDirectory"]
