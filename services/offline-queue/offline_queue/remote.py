"""Remote authority contract and its HTTP adapter.

The queue manager treats ``apply_mutation`` as its only network boundary.
The HTTP adapter speaks the push protocol of the sync API: one document per
request, deduplicated server-side by the ``Idempotency-Key`` header.
"""

import logging
from dataclasses import dataclass
from typing import Any, Protocol, Union

import httpx

from offline_queue.errors import TransientRemoteError
from offline_queue.models import Entity, MutationType, QueuedMutation, intended_fields

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})


@dataclass(frozen=True)
class ApplySuccess:
    entity: Entity | None = None


@dataclass(frozen=True)
class ApplyConflict:
    """The remote holds a newer version. ``remote`` is ``None`` when it must be fetched."""

    remote: Entity | None = None


@dataclass(frozen=True)
class ApplyError:
    message: str
    transient: bool = True
    status_code: int | None = None


ApplyResult = Union[ApplySuccess, ApplyConflict, ApplyError]


class RemoteAuthority(Protocol):
    async def apply_mutation(self, mutation: QueuedMutation) -> ApplyResult: ...

    async def fetch_entity(self, entity_id: str) -> Entity | None: ...


def mutation_to_document(mutation: QueuedMutation) -> dict[str, Any]:
    """Render a mutation as the sync document the push endpoint expects."""
    written_at = mutation.resubmitted_at or mutation.timestamp
    doc: dict[str, Any] = {
        "_id": mutation.target_entity_id,
        "type": "item",
        "updated_at": written_at.isoformat(),
        "mutation_id": mutation.id,
        "mutation_type": mutation.type.value,
    }
    if mutation.type is MutationType.DELETE:
        doc["_deleted"] = True
    else:
        doc.update(intended_fields(mutation))
    return doc


class HttpRemoteAuthority:
    """Client for the sync API's push/fetch endpoints."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        *,
        timeout: float = 30.0,
        collection: str = "items",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.collection = collection
        self.timeout = httpx.Timeout(
            connect=10.0,
            read=float(timeout),
            write=10.0,
            pool=60.0,
        )
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                limits=httpx.Limits(
                    max_keepalive_connections=5,
                    max_connections=10,
                    keepalive_expiry=30.0,
                ),
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def apply_mutation(self, mutation: QueuedMutation) -> ApplyResult:
        doc = mutation_to_document(mutation)
        url = f"{self.base_url}/api/v2/sync/push/{self.collection}"
        client = await self._get_client()
        try:
            response = await client.post(
                url,
                json={"documents": [doc]},
                headers=self._headers(mutation.idempotency_key),
            )
        except httpx.TimeoutException as e:
            logger.warning(f"Push timed out for mutation {mutation.id}: {type(e).__name__}")
            return ApplyError(f"Push timeout ({type(e).__name__})", transient=True)
        except httpx.RequestError as e:
            logger.warning(f"Push request failed for mutation {mutation.id}: {e}")
            return ApplyError(f"Push request failed: {e}", transient=True)

        if response.status_code == 409:
            return ApplyConflict(remote=None)
        if response.status_code >= 500 or response.status_code in TRANSIENT_STATUS_CODES:
            return ApplyError(f"HTTP {response.status_code}", transient=True, status_code=response.status_code)
        if response.status_code >= 400:
            detail = f"HTTP {response.status_code}"
            try:
                detail = response.json().get("detail", detail)
            except ValueError:
                pass
            return ApplyError(str(detail), transient=False, status_code=response.status_code)

        try:
            body = response.json()
        except ValueError:
            return ApplyError("Malformed push response", transient=True, status_code=response.status_code)

        for conflict in body.get("conflicts") or []:
            if conflict.get("document_id") not in (doc["_id"], "unknown"):
                continue
            server_document = conflict.get("server_document")
            if server_document is None:
                return ApplyError(conflict.get("error") or "Rejected by remote", transient=False)
            if server_document.get("_deleted"):
                if mutation.type is MutationType.DELETE:
                    return ApplySuccess()
                return ApplyError("Entity was deleted remotely", transient=False)
            return ApplyConflict(remote=Entity.from_document(server_document))

        return ApplySuccess()

    async def fetch_entity(self, entity_id: str) -> Entity | None:
        url = f"{self.base_url}/api/v2/sync/{self.collection}/{entity_id}"
        client = await self._get_client()
        try:
            response = await client.get(url, headers=self._headers())
        except httpx.RequestError as e:
            raise TransientRemoteError(f"Fetch of {entity_id} failed: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise TransientRemoteError(
                f"Fetch of {entity_id} failed: HTTP {response.status_code}",
                details={"status_code": response.status_code},
            )
        doc = response.json()
        if doc.get("_deleted"):
            return None
        return Entity.from_document(doc)
