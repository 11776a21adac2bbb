"""HTTP client for the submission endpoints.

Maps every outcome onto the sync error taxonomy so the orchestrator never
has to look at status codes:

* transport failures, timeouts, 408, 429 and 5xx -> ``TransientNetworkError``
* 409 -> ``ConflictError``
* any other 4xx -> ``ValidationError``
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from field_sync_client.errors import ConflictError, TransientNetworkError, ValidationError
from field_sync_client.idempotency import idempotency_headers
from field_sync_client.records import AttachmentBlob, IssuePayload

logger = logging.getLogger(__name__)

_RETRYABLE_4XX = {408, 425, 429}


@dataclass(frozen=True)
class SubmissionReceipt:
    issue_id: str
    ticket_number: str
    local_id: str
    replayed: bool = False


def _detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or f"HTTP {resp.status_code}"
    detail = body.get("detail") if isinstance(body, dict) else None
    if isinstance(detail, list):
        # FastAPI request validation errors
        parts = []
        for err in detail:
            if isinstance(err, dict):
                loc = ".".join(str(p) for p in err.get("loc", []) if p != "body")
                parts.append(f"{loc or 'body'}: {err.get('msg', 'invalid')}")
        return ", ".join(parts) or f"HTTP {resp.status_code}"
    if detail:
        return str(detail)
    return f"HTTP {resp.status_code}"


def raise_for_outcome(resp: httpx.Response) -> None:
    status = resp.status_code
    if status < 400:
        return
    message = f"HTTP {status}: {_detail(resp)}"
    if status >= 500 or status in _RETRYABLE_4XX:
        raise TransientNetworkError(message)
    if status == 409:
        ticket = None
        try:
            body = resp.json()
            if isinstance(body, dict):
                ticket = body.get("ticket_number")
        except ValueError:
            pass
        raise ConflictError(message, ticket_number=ticket)
    raise ValidationError(message, status_code=status)


def _receipt(resp: httpx.Response) -> SubmissionReceipt:
    try:
        body = resp.json()
        return SubmissionReceipt(
            issue_id=str(body["issue_id"]),
            ticket_number=str(body["ticket_number"]),
            local_id=str(body["local_id"]),
            replayed=bool(body.get("replayed", False)),
        )
    except (ValueError, KeyError, TypeError) as e:
        # the server did answer, but we cannot trust it; the key makes a retry safe
        raise TransientNetworkError(f"unreadable submission response: {e}") from e


class SubmissionClient:
    """Thin wrapper over ``httpx.AsyncClient`` bound to the API base URL."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        auth_token: str | None = None,
        token_provider: Callable[[], str | None] | None = None,
    ) -> None:
        self.client = client
        self._auth_token = auth_token
        self._token_provider = token_provider

    def _headers(self, local_id: str) -> dict[str, str]:
        headers = idempotency_headers(local_id)
        token = self._token_provider() if self._token_provider else self._auth_token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self.client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{type(e).__name__}: {e}") from e
        raise_for_outcome(resp)
        return resp

    async def submit_issue(self, local_id: str, payload: IssuePayload) -> SubmissionReceipt:
        resp = await self._send(
            "POST",
            "/issues",
            json=payload.to_submission(local_id),
            headers=self._headers(local_id),
        )
        receipt = _receipt(resp)
        if receipt.local_id != local_id:
            raise TransientNetworkError(f"server echoed local_id {receipt.local_id}, expected {local_id}")
        return receipt

    async def lookup(self, local_id: str) -> SubmissionReceipt | None:
        """Ticket already allocated for ``local_id``, or None if the server never saw it."""
        try:
            resp = await self._send("GET", f"/issues/by-local-id/{local_id}", headers=self._headers(local_id))
        except ValidationError as e:
            if e.status_code == 404:
                return None
            raise
        return _receipt(resp)

    async def upload_attachment(self, issue_id: str, local_id: str, blob: AttachmentBlob) -> dict:
        headers = self._headers(local_id)
        headers["Content-Type"] = blob.mime_type
        resp = await self._send(
            "POST",
            f"/issues/{issue_id}/attachments",
            params={"filename": blob.filename},
            content=blob.content,
            headers=headers,
        )
        try:
            return resp.json()
        except ValueError:
            return {}
