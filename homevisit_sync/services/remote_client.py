"""
Remote authority client.

Three operations per entity type (create, update, delete) against the
backend REST API. Transport and status signals are classified into
transient and permanent errors here, so the sync engine only ever sees
``RemoteRecord`` results or ``RemoteError`` subclasses.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import httpx
from pydantic import ValidationError

from ..core.config import settings
from ..core.errors import PermanentRemoteError, TransientRemoteError
from ..models.registry import EntityType
from ..schemas import PatientDto, VisitDto, VisitProtocolDto

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 425, 429}

DTO_BY_ENTITY = {
    EntityType.PATIENT: PatientDto,
    EntityType.VISIT: VisitDto,
    EntityType.PROTOCOL: VisitProtocolDto,
}


@dataclass
class RemoteRecord:
    """Server view of a record after a successful create or update."""
    server_id: str
    fields: dict = field(default_factory=dict)
    updated_at: Optional[datetime] = None


class RemoteAuthority:
    """Boundary the sync engine talks to. One implementation per transport."""

    def create(self, entity_type: EntityType, payload: dict) -> RemoteRecord:
        raise NotImplementedError

    def update(self, entity_type: EntityType, server_id: str, payload: dict) -> RemoteRecord:
        raise NotImplementedError

    def delete(self, entity_type: EntityType, server_id: str) -> None:
        raise NotImplementedError


class HttpRemoteAuthority(RemoteAuthority):
    """JSON-over-HTTP client for the home-visit backend."""

    RESOURCES = {
        EntityType.PATIENT: "api/patients",
        EntityType.VISIT: "api/visits",
        EntityType.PROTOCOL: "api/protocols",
    }

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url if base_url is not None else settings.API_BASE_URL
        self.token = token if token is not None else settings.API_TOKEN
        self.timeout = timeout if timeout is not None else settings.REMOTE_TIMEOUT
        self.transport = transport

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create(self, entity_type: EntityType, payload: dict) -> RemoteRecord:
        entity_type = EntityType(entity_type)
        path = self.RESOURCES[entity_type]
        if entity_type is EntityType.PROTOCOL:
            # Protocols are created under their visit
            path = f"{path}/visit/{payload.get('visitId')}"
        resp = self._send("POST", path, json=payload)
        return self._parse(entity_type, resp)

    def update(self, entity_type: EntityType, server_id: str, payload: dict) -> RemoteRecord:
        entity_type = EntityType(entity_type)
        resp = self._send("PUT", f"{self.RESOURCES[entity_type]}/{server_id}", json=payload)
        record = self._parse(entity_type, resp, default_id=server_id)
        return record

    def delete(self, entity_type: EntityType, server_id: str) -> None:
        entity_type = EntityType(entity_type)
        self._send("DELETE", f"{self.RESOURCES[entity_type]}/{server_id}", missing_ok=True)

    def ping(self, url: Optional[str] = None) -> bool:
        """True when the backend answers at all (any status below 500)."""
        target = url or self.base_url
        if not target:
            return False
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                return client.get(target).status_code < 500
        except httpx.HTTPError as exc:
            logger.debug("Connectivity check to %s failed: %s", target, exc)
            return False

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _send(self, method: str, path: str, json: Optional[dict] = None, missing_ok: bool = False) -> httpx.Response:
        if not self.base_url:
            raise TransientRemoteError("Remote authority is not configured (API_BASE_URL unset)")
        try:
            with httpx.Client(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self._headers(),
                transport=self.transport,
            ) as client:
                resp = client.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            raise TransientRemoteError(f"{method} {path} timed out after {self.timeout}s") from exc
        except httpx.TransportError as exc:
            raise TransientRemoteError(f"{method} {path} failed: {exc}") from exc

        if missing_ok and resp.status_code == 404:
            logger.info("%s %s: already gone on the server", method, path)
            return resp
        self._raise_for_status(method, path, resp)
        return resp

    @staticmethod
    def _raise_for_status(method: str, path: str, resp: httpx.Response) -> None:
        code = resp.status_code
        if 200 <= code < 300:
            return
        message = f"{method} {path} -> {code}: {resp.text[:200]}"
        if code >= 500 or code in RETRYABLE_STATUS_CODES:
            raise TransientRemoteError(message, status_code=code)
        raise PermanentRemoteError(message, status_code=code)

    @staticmethod
    def _parse(entity_type: EntityType, resp: httpx.Response, default_id: Optional[str] = None) -> RemoteRecord:
        dto_cls = DTO_BY_ENTITY[entity_type]
        if not resp.content and default_id:
            # Some update endpoints answer 204 with no body
            return RemoteRecord(server_id=default_id)
        try:
            dto = dto_cls.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            raise TransientRemoteError(f"Malformed {entity_type.value} response: {exc}") from exc
        server_id = dto.id or default_id
        if not server_id:
            raise TransientRemoteError(f"Malformed {entity_type.value} response: no id")
        return RemoteRecord(
            server_id=server_id,
            fields=dto.canonical_fields(),
            updated_at=dto.server_updated_at,
        )
