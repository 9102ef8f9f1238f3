"""End-to-end tests for the change request HTTP API."""

import pytest
from httpx import AsyncClient
from kombu.exceptions import OperationalError as BrokerError

from app.api import requests as requests_api
from app.core.config import settings
from tests.conftest import request_fields


async def _create(client: AsyncClient, headers: dict, **overrides) -> dict:
    res = await client.post("/api/v1/requests", json=request_fields(**overrides), headers=headers)
    assert res.status_code == 201, res.text
    return res.json()["request"]


@pytest.mark.asyncio
async def test_create_notifies_approver(client: AsyncClient, alice_headers, transport) -> None:
    res = await client.post("/api/v1/requests", json=request_fields(), headers=alice_headers)
    assert res.status_code == 201
    data = res.json()
    assert data["notification"] == "sent"
    assert data["request"]["status"] == "Pending"
    assert data["request"]["created_by"] == "alice@example.com"
    assert data["request"]["version"] == 1
    assert transport.sent[0]["to"] == ["ops@example.com"]


@pytest.mark.asyncio
async def test_create_requires_token(client: AsyncClient) -> None:
    res = await client.post("/api/v1/requests", json=request_fields())
    assert res.status_code == 403
    assert res.json()["code"] == "NOT_AUTHORIZED"


@pytest.mark.asyncio
async def test_create_with_blank_title(client: AsyncClient, alice_headers) -> None:
    res = await client.post("/api/v1/requests", json=request_fields(title=""), headers=alice_headers)
    assert res.status_code == 422
    assert res.json()["fields"] == ["title"]

    listed = await client.get("/api/v1/requests", headers=alice_headers)
    assert listed.json() == []


@pytest.mark.asyncio
async def test_create_survives_notification_failure(client: AsyncClient, alice_headers, transport) -> None:
    transport.fail = True
    res = await client.post("/api/v1/requests", json=request_fields(), headers=alice_headers)
    assert res.status_code == 201
    assert res.json()["notification"] == "failed"

    request_id = res.json()["request"]["id"]
    fetched = await client.get(f"/api/v1/requests/{request_id}", headers=alice_headers)
    assert fetched.status_code == 200
    assert fetched.json()["status"] == "Pending"


@pytest.mark.asyncio
async def test_transition_flow(client: AsyncClient, alice_headers, ops_headers, transport) -> None:
    created = await _create(client, alice_headers)
    url = f"/api/v1/requests/{created['id']}/transition"

    res = await client.post(url, json={"status": "Implemented"}, headers=ops_headers)
    assert res.status_code == 409
    assert res.json()["code"] == "INVALID_TRANSITION"
    assert res.json()["current"] == "Pending"

    res = await client.post(url, json={"status": "Approved"}, headers=alice_headers)
    assert res.status_code == 403

    res = await client.post(url, json={"status": "Approved", "expected_version": 1}, headers=ops_headers)
    assert res.status_code == 200
    assert res.json()["request"]["status"] == "Approved"
    assert res.json()["request"]["version"] == 2
    assert res.json()["notification"] == "sent"

    res = await client.post(url, json={"status": "Implemented", "expected_version": 1}, headers=ops_headers)
    assert res.status_code == 409
    assert res.json()["code"] == "CONFLICT"
    assert res.json()["actual_version"] == 2

    res = await client.post(url, json={"status": "Implemented"}, headers=ops_headers)
    assert res.status_code == 200
    res = await client.post(url, json={"status": "Completed"}, headers=ops_headers)
    assert res.status_code == 200
    assert res.json()["notification"] is None

    # Create, approve and implement each notify.
    assert len(transport.sent) == 3


@pytest.mark.asyncio
async def test_transition_to_unknown_status(client: AsyncClient, alice_headers, ops_headers) -> None:
    created = await _create(client, alice_headers)
    res = await client.post(
        f"/api/v1/requests/{created['id']}/transition", json={"status": "Cancelled"}, headers=ops_headers
    )
    assert res.status_code == 422


@pytest.mark.asyncio
async def test_get_unknown_request(client: AsyncClient, alice_headers) -> None:
    res = await client.get("/api/v1/requests/does-not-exist", headers=alice_headers)
    assert res.status_code == 404
    assert res.json()["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_edit_request(client: AsyncClient, alice_headers, ops_headers) -> None:
    created = await _create(client, alice_headers)
    url = f"/api/v1/requests/{created['id']}"

    res = await client.patch(url, json={"impact_level": "Low", "expected_version": 1}, headers=alice_headers)
    assert res.status_code == 200
    assert res.json()["impact_level"] == "Low"
    assert res.json()["version"] == 2

    res = await client.patch(url, json={"impact_level": "Medium"}, headers=ops_headers)
    assert res.status_code == 403

    res = await client.patch(url, json={"title": "x", "expected_version": "two"}, headers=alice_headers)
    assert res.status_code == 422
    assert res.json()["fields"] == ["expected_version"]


@pytest.mark.asyncio
async def test_list_filters(client: AsyncClient, alice_headers, ops_headers) -> None:
    first = await _create(client, alice_headers, title="First")
    await _create(client, alice_headers, title="Second")
    await client.post(
        f"/api/v1/requests/{first['id']}/transition", json={"status": "Approved"}, headers=ops_headers
    )

    res = await client.get("/api/v1/requests", params={"status": "Approved"}, headers=alice_headers)
    assert [item["title"] for item in res.json()] == ["First"]

    res = await client.get("/api/v1/requests", params={"order": "asc"}, headers=alice_headers)
    assert [item["title"] for item in res.json()] == ["First", "Second"]

    res = await client.get("/api/v1/requests", params={"mine": True}, headers=ops_headers)
    assert len(res.json()) == 2

    res = await client.get("/api/v1/requests")
    assert res.status_code == 401


@pytest.mark.asyncio
async def test_export_endpoint(client: AsyncClient, alice_headers) -> None:
    created = await _create(client, alice_headers, rollback_plan=None)
    url = f"/api/v1/requests/{created['id']}/export"

    res = await client.get(url, headers=alice_headers)
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/csv")
    assert f"change-request-{created['id']}.csv" in res.headers["content-disposition"]
    assert "Rollback Plan,N/A" in res.text

    res = await client.get(url, params={"format": "xlsx"}, headers=alice_headers)
    assert res.status_code == 200
    assert res.content[:2] == b"PK"

    res = await client.get(url, params={"format": "pdf"}, headers=alice_headers)
    assert res.status_code == 422
    assert res.json()["fields"] == ["format"]


@pytest.mark.asyncio
async def test_audit_log_endpoint(client: AsyncClient, alice_headers, ops_headers) -> None:
    created = await _create(client, alice_headers)
    await client.post(
        f"/api/v1/requests/{created['id']}/transition", json={"status": "Denied"}, headers=ops_headers
    )

    res = await client.get(f"/api/v1/requests/{created['id']}/audit-log", headers=alice_headers)
    assert res.status_code == 200
    entries = res.json()
    assert [entry["action"] for entry in entries] == ["created", "status_changed"]
    assert entries[1]["actor"] == "ops@example.com"
    assert entries[1]["details"]["from"] == "Pending"
    assert entries[1]["details"]["to"] == "Denied"


@pytest.mark.asyncio
async def test_attachment_endpoints(client: AsyncClient, alice_headers, ops_headers, blob_store) -> None:
    created = await _create(client, alice_headers)
    base = f"/api/v1/requests/{created['id']}/attachments"

    res = await client.post(
        base,
        files={"uploaded_file": ("plan.txt", b"step one", "text/plain")},
        headers={**alice_headers, "Idempotency-Key": "abc"},
    )
    assert res.status_code == 201
    attachment = res.json()
    assert attachment["name"] == "plan.txt"
    assert attachment["size_bytes"] == 8
    assert attachment["uploaded_by"] == "alice@example.com"

    replay = await client.post(
        base,
        files={"uploaded_file": ("plan.txt", b"step one", "text/plain")},
        headers={**alice_headers, "Idempotency-Key": "abc"},
    )
    assert replay.json()["id"] == attachment["id"]

    listed = await client.get(base, headers=ops_headers)
    assert [a["id"] for a in listed.json()] == [attachment["id"]]

    res = await client.get(f"/api/v1/attachments/{attachment['id']}/url", headers=ops_headers)
    assert res.status_code == 200
    assert res.json()["url"]

    res = await client.delete(f"/api/v1/attachments/{attachment['id']}", headers=ops_headers)
    assert res.status_code == 403

    res = await client.delete(f"/api/v1/attachments/{attachment['id']}", headers=alice_headers)
    assert res.status_code == 204
    assert not await blob_store.exists(attachment["storage_key"])

    listed = await client.get(base, headers=ops_headers)
    assert listed.json() == []


@pytest.mark.asyncio
async def test_oversize_upload_rejected(client: AsyncClient, alice_headers, monkeypatch) -> None:
    monkeypatch.setattr(settings, "max_attachment_bytes", 4)
    created = await _create(client, alice_headers)
    res = await client.post(
        f"/api/v1/requests/{created['id']}/attachments",
        files={"uploaded_file": ("big.bin", b"0123456789", "application/octet-stream")},
        headers=alice_headers,
    )
    assert res.status_code == 413
    assert res.json()["code"] == "PAYLOAD_TOO_LARGE"


@pytest.mark.asyncio
async def test_delete_request_cascades(client: AsyncClient, alice_headers, ops_headers, blob_store) -> None:
    created = await _create(client, alice_headers)
    upload = await client.post(
        f"/api/v1/requests/{created['id']}/attachments",
        files={"uploaded_file": ("plan.txt", b"data", "text/plain")},
        headers=alice_headers,
    )
    key = upload.json()["storage_key"]

    res = await client.delete(f"/api/v1/requests/{created['id']}", headers=ops_headers)
    assert res.status_code == 403

    res = await client.delete(f"/api/v1/requests/{created['id']}", headers=alice_headers)
    assert res.status_code == 204
    assert not await blob_store.exists(key)

    res = await client.get(f"/api/v1/requests/{created['id']}", headers=alice_headers)
    assert res.status_code == 404


@pytest.mark.asyncio
async def test_list_search_and_mixed_case_approver(client: AsyncClient, alice_headers, ops_headers) -> None:
    await _create(client, alice_headers, title="Rotate TLS certificates", approver="Ops@Example.com")
    await _create(client, alice_headers, title="Upgrade switch")

    res = await client.get("/api/v1/requests", params={"q": "tls"}, headers=alice_headers)
    assert [item["title"] for item in res.json()] == ["Rotate TLS certificates"]

    res = await client.get("/api/v1/requests", params={"mine": True, "q": "TLS"}, headers=ops_headers)
    assert [item["approver"] for item in res.json()] == ["ops@example.com"]


@pytest.mark.asyncio
async def test_worker_mode_queues_notification(client: AsyncClient, alice_headers, transport, monkeypatch) -> None:
    queued: list[str] = []
    monkeypatch.setattr(settings, "notifications_via_worker", True)
    monkeypatch.setattr(requests_api, "_enqueue_notification", queued.append)

    res = await client.post("/api/v1/requests", json=request_fields(), headers=alice_headers)
    assert res.status_code == 201
    assert res.json()["notification"] == "queued"
    assert queued == [res.json()["request"]["id"]]
    assert transport.sent == []


@pytest.mark.asyncio
async def test_worker_mode_broker_outage(client: AsyncClient, alice_headers, monkeypatch) -> None:
    def broker_down(request_id: str) -> None:
        raise BrokerError("connection refused")

    monkeypatch.setattr(settings, "notifications_via_worker", True)
    monkeypatch.setattr(requests_api, "_enqueue_notification", broker_down)

    res = await client.post("/api/v1/requests", json=request_fields(), headers=alice_headers)
    assert res.status_code == 201
    assert res.json()["notification"] == "failed"

    fetched = await client.get(f"/api/v1/requests/{res.json()['request']['id']}", headers=alice_headers)
    assert fetched.status_code == 200


@pytest.mark.asyncio
async def test_docx_export(client: AsyncClient, alice_headers) -> None:
    created = await _create(client, alice_headers)
    res = await client.get(f"/api/v1/requests/{created['id']}/export", params={"format": "docx"}, headers=alice_headers)
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("application/vnd.openxmlformats-officedocument.wordprocessingml")
    assert f"change-request-{created['id']}.docx" in res.headers["content-disposition"]
