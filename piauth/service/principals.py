from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Dict, Iterable, Optional, Protocol

import httpx

from piauth.logging import get_logger
from piauth.service.circuit_breaker import CircuitBreaker
from piauth.service.errors import UpstreamError
from piauth.storage.models import Principal

logger = get_logger(__name__)


class PrincipalDirectory(Protocol):
    """Read-only lookup of user records owned elsewhere."""

    async def get_by_pi_id(self, pi_id: str) -> Optional[Principal]: ...


class CredentialVerifier(Protocol):
    async def verify(self, pi_id: str, access_token: str) -> bool:
        """True when ``access_token`` proves ownership of ``pi_id``.

        Raises DependencyUnavailable when the answer cannot be obtained.
        """
        ...


class MemoryPrincipalDirectory:
    """Principals held in process memory, for development and single-instance use."""

    def __init__(self, principals: Iterable[Principal] = ()) -> None:
        self._lock = threading.Lock()
        self._by_pi_id: Dict[str, Principal] = {p.pi_id: p for p in principals}

    def add(self, principal: Principal) -> None:
        with self._lock:
            self._by_pi_id[principal.pi_id] = principal

    async def get_by_pi_id(self, pi_id: str) -> Optional[Principal]:
        with self._lock:
            return self._by_pi_id.get(pi_id)

    @classmethod
    def from_file(cls, path: str | Path) -> "MemoryPrincipalDirectory":
        """Load a JSON list of principal objects."""
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        principals = [
            Principal(
                user_id=str(item["user_id"]),
                pi_id=str(item["pi_id"]),
                roles=list(item.get("roles") or ["user"]),
                is_merchant=bool(item.get("is_merchant", False)),
                kyc_status=str(item.get("kyc_status", "pending")),
            )
            for item in raw
        ]
        logger.info("principals_loaded", count=len(principals))
        return cls(principals)


class PiNetworkVerifier:
    """Checks a Pi SDK access token against the Pi Platform API.

    ``GET /v2/me`` with the user's access token returns the user it belongs
    to; the token is accepted only when that uid is the claimed piId.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.breaker = breaker
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 5.0)),
                follow_redirects=False,
                transport=self._transport,
            )
        return self._client

    async def _fetch_uid(self, access_token: str) -> Optional[str]:
        client = await self._get_client()
        response = await client.get(
            "/v2/me", headers={"Authorization": f"Bearer {access_token}"}
        )
        if response.status_code >= 500:
            raise UpstreamError("pi api server error", status_code=response.status_code)
        if response.status_code >= 400:
            logger.info("pi_api_token_rejected", status_code=response.status_code)
            return None
        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamError("pi api returned invalid json") from exc
        uid = data.get("uid") if isinstance(data, dict) else None
        return str(uid) if uid else None

    async def verify(self, pi_id: str, access_token: str) -> bool:
        if not pi_id or not access_token:
            return False
        if self.breaker is not None:
            uid = await self.breaker.call(self._fetch_uid, access_token)
        else:
            uid = await self._fetch_uid(access_token)
        if uid != pi_id:
            logger.warning("pi_credential_mismatch", claimed_pi_id=pi_id)
            return False
        return True

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = [
    "PrincipalDirectory",
    "CredentialVerifier",
    "MemoryPrincipalDirectory",
    "PiNetworkVerifier",
]
