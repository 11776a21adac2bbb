from __future__ import annotations

import json

import httpx
import pytest

from field_sync_client.errors import ConflictError, TransientNetworkError, ValidationError
from field_sync_client.idempotency import IDEMPOTENCY_HEADER, idempotency_headers, is_valid_local_id
from field_sync_client.records import AttachmentBlob, IssuePayload, new_local_id
from field_sync_client.transport import SubmissionClient, raise_for_outcome

PAYLOAD = IssuePayload(latitude=1.0, longitude=2.0, category_id=3, description="Leaking hydrant")


@pytest.mark.parametrize("status", [500, 502, 503, 504, 408, 429])
def test_retryable_statuses_are_transient(status):
    with pytest.raises(TransientNetworkError):
        raise_for_outcome(httpx.Response(status))


@pytest.mark.parametrize("status", [400, 401, 403, 404, 413, 422])
def test_client_errors_are_validation(status):
    with pytest.raises(ValidationError) as exc:
        raise_for_outcome(httpx.Response(status, json={"detail": "nope"}))
    assert exc.value.status_code == status
    assert "nope" in str(exc.value)


def test_conflict_carries_ticket():
    with pytest.raises(ConflictError) as exc:
        raise_for_outcome(httpx.Response(409, json={"detail": "dup", "ticket_number": "VMC-2026-000007"}))
    assert exc.value.ticket_number == "VMC-2026-000007"


def test_fastapi_validation_detail_is_flattened():
    body = {"detail": [{"loc": ["body", "latitude"], "msg": "Input should be less than or equal to 90"}]}
    with pytest.raises(ValidationError) as exc:
        raise_for_outcome(httpx.Response(422, json=body))
    assert "latitude: Input should be less than or equal to 90" in str(exc.value)


def test_success_passes():
    raise_for_outcome(httpx.Response(201, json={}))


def test_idempotency_headers_require_uuid():
    local_id = new_local_id()
    assert idempotency_headers(local_id) == {IDEMPOTENCY_HEADER: local_id}
    assert is_valid_local_id(local_id)
    assert not is_valid_local_id("not-a-uuid")
    with pytest.raises(ValueError):
        idempotency_headers("not-a-uuid")


def _client(handler, **kwargs) -> SubmissionClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")
    return SubmissionClient(http, **kwargs)


async def test_submit_sends_key_and_token():
    local_id = new_local_id()
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={
            "issue_id": "issue-1", "ticket_number": "VMC-2026-000001", "local_id": local_id, "replayed": False,
        })

    client = _client(handler, auth_token="secret")
    receipt = await client.submit_issue(local_id, PAYLOAD)
    await client.client.aclose()

    assert receipt.ticket_number == "VMC-2026-000001"
    assert receipt.issue_id == "issue-1"
    (request,) = seen
    assert request.method == "POST"
    assert request.url.path == "/issues"
    assert request.headers[IDEMPOTENCY_HEADER] == local_id
    assert request.headers["Authorization"] == "Bearer secret"
    body = json.loads(request.content)
    assert body["local_id"] == local_id
    assert body["description"] == "Leaking hydrant"
    assert "address" not in body


async def test_token_provider_is_consulted_per_request():
    tokens = iter(["one", "two"])
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers.get("Authorization"))
        return httpx.Response(404, json={"detail": "Issue not found"})

    client = _client(handler, token_provider=lambda: next(tokens))
    assert await client.lookup(new_local_id()) is None
    assert await client.lookup(new_local_id()) is None
    await client.client.aclose()
    assert seen == ["Bearer one", "Bearer two"]


async def test_network_failure_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    client = _client(handler)
    with pytest.raises(TransientNetworkError):
        await client.submit_issue(new_local_id(), PAYLOAD)
    await client.client.aclose()


async def test_unreadable_or_mismatched_receipt_is_transient():
    local_id = new_local_id()
    replies = iter([
        httpx.Response(201, text="<html>proxy</html>"),
        httpx.Response(201, json={"issue_id": "x", "ticket_number": "VMC-2026-000001", "local_id": new_local_id()}),
    ])

    client = _client(lambda request: next(replies))
    with pytest.raises(TransientNetworkError):
        await client.submit_issue(local_id, PAYLOAD)
    with pytest.raises(TransientNetworkError):
        await client.submit_issue(local_id, PAYLOAD)
    await client.client.aclose()


async def test_lookup_other_errors_propagate():
    client = _client(lambda request: httpx.Response(403, json={"detail": "forbidden"}))
    with pytest.raises(ValidationError):
        await client.lookup(new_local_id())
    await client.client.aclose()


async def test_upload_attachment_sends_raw_bytes():
    local_id = new_local_id()
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"attachment_id": 1, "replayed": False})

    client = _client(handler)
    blob = AttachmentBlob(content=b"\xff\xd8jpeg", mime_type="image/jpeg", filename="kerb.jpg")
    result = await client.upload_attachment("issue-1", local_id, blob)
    await client.client.aclose()

    assert result["attachment_id"] == 1
    (request,) = seen
    assert request.url.path == "/issues/issue-1/attachments"
    assert request.url.params["filename"] == "kerb.jpg"
    assert request.headers["Content-Type"] == "image/jpeg"
    assert request.headers[IDEMPOTENCY_HEADER] == local_id
    assert request.content == b"\xff\xd8jpeg"
