from __future__ import annotations

import uuid

from conftest import issue_body


async def test_lookup_lists_active_only(api, category_id):
    r = await api.get("/lookups/categories")
    assert r.status_code == 200
    assert [c["slug"] for c in r.json()] == ["pothole"]


async def test_admin_create_and_duplicate(api, category_id):
    r = await api.post("/admin/categories", json={"slug": "streetlight", "name": "Streetlight out", "sla_hours": 72})
    assert r.status_code == 201
    assert r.json()["active"] is True

    dup = await api.post("/admin/categories", json={"slug": "streetlight", "name": "Again"})
    assert dup.status_code == 409


async def test_admin_create_validates_slug(api):
    r = await api.post("/admin/categories", json={"slug": "Bad Slug", "name": "Bad"})
    assert r.status_code == 422


async def test_admin_deactivate_hides_from_lookup(api, category_id):
    r = await api.patch("/admin/categories/pothole", json={"active": False})
    assert r.status_code == 200
    assert r.json()["active"] is False
    assert r.json()["sla_hours"] == 48
    assert (await api.get("/lookups/categories")).json() == []


async def test_admin_update_unknown(api):
    r = await api.patch("/admin/categories/missing", json={"name": "Missing"})
    assert r.status_code == 404


async def test_health(api):
    r = await api.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


async def _file_issue(api, category_id):
    local_id = str(uuid.uuid4())
    r = await api.post("/issues", json=issue_body(local_id, category_id), headers={"Idempotency-Key": local_id})
    assert r.status_code == 201
    return r.json()["issue_id"]


async def test_sla_change_applies_to_new_issues_only(api, category_id):
    before = await _file_issue(api, category_id)
    original_target = (await api.get(f"/issues/{before}")).json()["sla_target_at"]
    assert original_target is not None

    r = await api.patch("/admin/categories/pothole", json={"sla_hours": 4})
    assert r.json()["sla_hours"] == 4

    assert (await api.get(f"/issues/{before}")).json()["sla_target_at"] == original_target
    after = (await api.get(f"/issues/{await _file_issue(api, category_id)}")).json()
    assert after["sla_target_at"] < original_target


async def test_explicit_null_clears_sla(api, category_id):
    kept = await api.patch("/admin/categories/pothole", json={"name": "Potholes"})
    assert kept.json()["sla_hours"] == 48

    cleared = await api.patch("/admin/categories/pothole", json={"sla_hours": None})
    assert cleared.status_code == 200
    assert cleared.json()["sla_hours"] is None

    issue_id = await _file_issue(api, category_id)
    assert (await api.get(f"/issues/{issue_id}")).json()["sla_target_at"] is None


async def test_sla_window_is_bounded(api, category_id):
    r = await api.patch("/admin/categories/pothole", json={"sla_hours": 24 * 30})
    assert r.status_code == 422


async def test_admin_list_counts_issues(api, category_id):
    await _file_issue(api, category_id)
    await _file_issue(api, category_id)

    cats = {c["slug"]: c for c in (await api.get("/admin/categories")).json()}
    assert cats["pothole"]["issue_count"] == 2
    assert cats["retired"]["issue_count"] == 0
    assert [c["active"] for c in (await api.get("/admin/categories")).json()] == [True, False]
