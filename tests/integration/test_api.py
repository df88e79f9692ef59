from __future__ import annotations

import pytest

pytestmark = pytest.mark.integration


async def _seed(async_client, *accounts: tuple[str, int]) -> None:
    response = await async_client.put("/api/keys/key-1", json={"name": "Key one"})
    assert response.status_code == 200
    for account_id, priority in accounts:
        response = await async_client.put(
            f"/api/accounts/{account_id}",
            json={"name": account_id, "platform": "claude", "poolGroup": "main", "priority": priority},
        )
        assert response.status_code == 200


@pytest.mark.asyncio
async def test_admin_endpoints_list_accounts_and_keys(async_client):
    await _seed(async_client, ("a1", 1))

    accounts = (await async_client.get("/api/accounts")).json()["accounts"]
    assert [account["id"] for account in accounts] == ["a1"]
    assert accounts[0]["poolGroup"] == "main"
    assert accounts[0]["status"] == "active"

    keys = (await async_client.get("/api/keys")).json()["keys"]
    assert [key["id"] for key in keys] == ["key-1"]


@pytest.mark.asyncio
async def test_permission_crud_and_selection(async_client):
    await _seed(async_client, ("p2", 2), ("p1", 1))

    response = await async_client.post(
        "/api/keys/key-1/permissions",
        json={"poolGroup": "main", "allowedPlatforms": ["claude"], "priority": 10},
    )
    assert response.status_code == 201
    assert response.json()["selectionStrategy"] == "priority"

    listed = (await async_client.get("/api/keys/key-1/permissions")).json()["permissions"]
    assert [rule["poolGroup"] for rule in listed] == ["main"]

    allowed = await async_client.get("/api/keys/key-1/allowed-accounts", params={"platform": "claude"})
    assert [account["id"] for account in allowed.json()["accounts"]] == ["p1", "p2"]

    check = await async_client.get(
        "/api/keys/key-1/has-permission",
        params={"accountId": "p2", "platform": "claude"},
    )
    assert check.json() == {"allowed": True}

    selected = await async_client.post("/api/keys/key-1/select", json={"platform": "claude"})
    assert selected.status_code == 200
    assert selected.json()["account"]["id"] == "p1"

    removed = await async_client.delete("/api/keys/key-1/permissions/main")
    assert removed.json() == {"status": "deleted"}
    missing = await async_client.delete("/api/keys/key-1/permissions/main")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "permission_not_found"

    selected = await async_client.post("/api/keys/key-1/select", json={"platform": "claude"})
    assert selected.json() == {"account": None}


@pytest.mark.asyncio
async def test_permission_errors_map_to_status_codes(async_client):
    await _seed(async_client)
    body = {"poolGroup": "main", "allowedPlatforms": ["claude"]}

    unknown_key = await async_client.post("/api/keys/nope/permissions", json=body)
    assert unknown_key.status_code == 404
    assert unknown_key.json()["error"]["code"] == "api_key_not_found"

    invalid = await async_client.post(
        "/api/keys/key-1/permissions",
        json={"poolGroup": "main", "allowedPlatforms": ["mainframe"]},
    )
    assert invalid.status_code == 400
    assert invalid.json()["error"]["code"] == "invalid_permission"

    first = await async_client.post("/api/keys/key-1/permissions", json=body)
    assert first.status_code == 201
    assert first.json()["warnings"] == ["Pool group 'main' has no enabled accounts"]
    duplicate = await async_client.post("/api/keys/key-1/permissions", json=body)
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "duplicate_permission"

    malformed = await async_client.post("/api/keys/key-1/permissions", json={"priority": "high"})
    assert malformed.status_code == 422
    assert malformed.json()["error"]["code"] == "validation_error"


@pytest.mark.asyncio
async def test_batch_replace_permissions(async_client):
    await _seed(async_client, ("a1", 1))
    response = await async_client.put(
        "/api/keys/key-1/permissions",
        json={
            "permissions": [
                {"poolGroup": "main", "allowedPlatforms": ["claude"], "priority": 20},
                {"poolGroup": "spare", "allowedPlatforms": ["all"], "priority": 5},
            ]
        },
    )
    assert response.status_code == 200
    assert [rule["poolGroup"] for rule in response.json()["permissions"]] == ["spare", "main"]


@pytest.mark.asyncio
async def test_health_endpoints(async_client):
    await _seed(async_client, ("a1", 1))

    success = await async_client.post(
        "/api/keys/key-1/accounts/a1/success",
        json={"responseTimeMs": 150},
    )
    assert success.status_code == 200
    assert success.json()["successfulRequests"] == 1
    assert success.json()["averageResponseTimeMs"] == pytest.approx(150.0)

    failure = await async_client.post("/api/keys/key-1/accounts/a1/failure")
    assert failure.json()["consecutiveFailures"] == 1

    unhealthy = await async_client.post(
        "/api/keys/key-1/accounts/a1/mark-unhealthy",
        json={"disableSeconds": 60},
    )
    assert unhealthy.json()["healthStatus"] == "unhealthy"
    assert unhealthy.json()["isAvailable"] is False
    assert unhealthy.json()["disabledUntil"].endswith("Z")

    health = await async_client.get("/api/keys/key-1/accounts/a1/health")
    assert health.json()["healthStatus"] == "unhealthy"

    healthy = await async_client.post("/api/keys/key-1/accounts/a1/mark-healthy")
    assert healthy.json()["isAvailable"] is True

    reset = await async_client.post("/api/keys/key-1/accounts/a1/reset-health")
    assert reset.json()["healthStatus"] == "unknown"

    check = await async_client.post("/api/keys/key-1/health-check")
    assert check.json() == {"results": {"a1": True}}

    listed = await async_client.get("/api/keys/key-1/accounts")
    assert [entry["accountId"] for entry in listed.json()["mappings"]] == ["a1"]

    missing = await async_client.get("/api/keys/key-1/accounts/unknown/health")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "mapping_not_found"


@pytest.mark.asyncio
async def test_group_endpoints(async_client):
    await _seed(async_client, ("a1", 1), ("a2", 2))

    created = await async_client.post("/api/groups", json={"name": "core", "requestLimit": 100})
    assert created.status_code == 201
    group = created.json()
    assert group["healthStatus"] == "unknown"
    group_id = group["id"]

    for account_id in ("a1", "a2"):
        added = await async_client.put(f"/api/groups/{group_id}/accounts/{account_id}", json={"weight": 2})
        assert added.status_code == 201

    conflict = await async_client.post("/api/groups", json={"name": "Core"})
    assert conflict.status_code == 409

    rejected = await async_client.post(f"/api/groups/{group_id}/select")
    assert rejected.json() == {"selection": None}

    health = await async_client.post(f"/api/groups/{group_id}/health-check")
    assert health.json() == {"healthy": True}

    selected = await async_client.post(f"/api/groups/{group_id}/select")
    selection = selected.json()["selection"]
    assert selection["accountId"] == "a1"
    assert selection["strategy"] == "round_robin"

    usage = await async_client.post(
        f"/api/groups/{group_id}/usage",
        json={"accountId": "a1", "success": True, "cost": 1.5, "responseTimeMs": 80},
    )
    assert usage.json()["successfulRequests"] == 1

    info = (await async_client.get(f"/api/groups/{group_id}/usage-info")).json()
    assert info["totalRequests"] == 1
    assert info["requestUsage"] == pytest.approx(0.01)

    failover = await async_client.post(f"/api/groups/{group_id}/failover", json={"failedAccountId": "a1"})
    assert failover.json()["selection"]["accountId"] == "a2"

    stats = (await async_client.get(f"/api/groups/{group_id}/statistics")).json()
    assert stats["totalRequests"] == 1
    reset = (await async_client.post(f"/api/groups/{group_id}/statistics/reset")).json()
    assert reset["totalRequests"] == 0

    overview = (await async_client.get("/api/groups/overview")).json()["groups"]
    assert overview[0]["group"]["name"] == "core"
    assert overview[0]["canAcceptRequests"] is True

    toggled = await async_client.post(f"/api/groups/{group_id}/toggle")
    assert toggled.json()["isEnabled"] is False

    removed = await async_client.delete(f"/api/groups/{group_id}/accounts/a2")
    assert removed.json() == {"status": "deleted"}
    accounts = (await async_client.get(f"/api/groups/{group_id}/accounts")).json()["accounts"]
    assert [entry["accountId"] for entry in accounts] == ["a1"]

    deleted = await async_client.delete(f"/api/groups/{group_id}")
    assert deleted.json() == {"status": "deleted"}
    missing = await async_client.get(f"/api/groups/{group_id}")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "group_not_found"


@pytest.mark.asyncio
async def test_request_id_header_is_echoed(async_client):
    response = await async_client.get("/api/accounts", headers={"x-request-id": "req-123"})
    assert response.headers["x-request-id"] == "req-123"


@pytest.mark.asyncio
async def test_metrics_endpoint_exposes_router_counters(async_client):
    await _seed(async_client, ("a1", 1))
    await async_client.post(
        "/api/keys/key-1/permissions",
        json={"poolGroup": "main", "allowedPlatforms": ["claude"]},
    )
    await async_client.post("/api/keys/key-1/select", json={"platform": "claude"})

    response = await async_client.get("/metrics")

    assert response.status_code == 200
    assert "pool_router_selections_total" in response.text
    assert "pool_router_permission_mutations_total" in response.text


@pytest.mark.asyncio
async def test_account_status_drives_availability(async_client):
    await _seed(async_client, ("a1", 1), ("a2", 2))
    await async_client.post(
        "/api/keys/key-1/permissions",
        json={"poolGroup": "main", "allowedPlatforms": ["claude"]},
    )

    paused = await async_client.put("/api/accounts/a1/status", json={"status": "paused"})
    assert paused.json()["status"] == "paused"

    allowed = await async_client.get("/api/keys/key-1/allowed-accounts", params={"platform": "claude"})
    assert [account["id"] for account in allowed.json()["accounts"]] == ["a2"]

    missing = await async_client.put("/api/accounts/ghost/status", json={"status": "active"})
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_mapping_and_key_removal(async_client):
    await _seed(async_client, ("a1", 1))
    await async_client.post("/api/keys/key-1/accounts/a1/failure")

    removed = await async_client.delete("/api/keys/key-1/accounts/a1")
    assert removed.json() == {"status": "deleted"}
    again = await async_client.delete("/api/keys/key-1/accounts/a1")
    assert again.status_code == 404

    deleted = await async_client.delete("/api/keys/key-1")
    assert deleted.json() == {"status": "deleted"}
    assert (await async_client.get("/api/keys")).json() == {"keys": []}


@pytest.mark.asyncio
async def test_deleting_last_account_stops_group_accepting(async_client):
    await _seed(async_client, ("a1", 1))
    group_id = (await async_client.post("/api/groups", json={"name": "core"})).json()["id"]
    await async_client.put(f"/api/groups/{group_id}/accounts/a1", json={})
    await async_client.post(f"/api/groups/{group_id}/health-check")

    deleted = await async_client.delete("/api/accounts/a1")
    assert deleted.json() == {"status": "deleted"}

    accounts = (await async_client.get(f"/api/groups/{group_id}/accounts")).json()["accounts"]
    assert accounts == []
    overview = (await async_client.get("/api/groups/overview")).json()["groups"]
    assert overview[0]["group"]["accountCount"] == 0
    assert overview[0]["canAcceptRequests"] is False
    selection = await async_client.post(f"/api/groups/{group_id}/select")
    assert selection.json() == {"selection": None}
