"""
HTTP API 测试
"""

import pytest
from httpx import AsyncClient

from release_graph.core.activity import ActivityType
from tests.conftest import OTHER_TEAM_ID


async def _create(client: AsyncClient, title: str, status: str = "IN_DEVELOPMENT") -> dict:
    response = await client.post("/api/v1/releases", json={"title": title, "status": status})
    assert response.status_code == 201
    return response.json()


async def _depend(client: AsyncClient, dependent_id: str, blocking_id: str, **extra):
    return await client.post(
        f"/api/v1/releases/{dependent_id}/dependencies",
        json={"blocking_release_id": blocking_id, **extra},
    )


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    """测试健康检查端点"""
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["service"] == "release-graph"

    response = await client.get("/api/health")
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_metrics_endpoint(client: AsyncClient):
    response = await client.get("/metrics")
    assert response.status_code == 200
    assert "release_propagation_runs_total" in response.text


@pytest.mark.asyncio
async def test_team_header_required(client: AsyncClient):
    """缺少 X-Team-ID"""
    response = await client.post(
        "/api/v1/releases",
        json={"title": "Payments API"},
        headers={"X-Team-ID": ""},
    )
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "team_required"


@pytest.mark.asyncio
async def test_create_and_get_release(client: AsyncClient):
    """创建并读取 release"""
    created = await _create(client, "Payments API")
    assert created["status"] == "IN_DEVELOPMENT"
    assert created["is_blocked"] is False
    assert created["block_source"] == "none"

    response = await client.get(f"/api/v1/releases/{created['id']}")
    assert response.status_code == 200
    assert response.json()["title"] == "Payments API"

    response = await client.get(
        f"/api/v1/releases/{created['id']}",
        headers={"X-Team-ID": OTHER_TEAM_ID},
    )
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "not_found"


@pytest.mark.asyncio
async def test_dependency_blocks_until_deployed(client: AsyncClient, sink):
    """新增依赖后 dependent 被阻塞，blocking 部署后解除"""
    api = await _create(client, "Payments API")
    web = await _create(client, "Checkout Web")

    response = await _depend(client, web["id"], api["id"], description="needs refunds endpoint")
    assert response.status_code == 201
    dependency = response.json()
    assert dependency["type"] == "BLOCKS"
    assert dependency["description"] == "needs refunds endpoint"

    response = await client.get(f"/api/v1/releases/{web['id']}")
    data = response.json()
    assert data["is_blocked"] is True
    assert data["blocked_reason"] == "Blocked by: Payments API (IN_DEVELOPMENT)"
    assert data["block_source"] == "dependency"

    response = await client.patch(
        f"/api/v1/releases/{api['id']}/status",
        json={"status": "DEPLOYED", "actor": "alice"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["changed"] is True
    assert data["old_status"] == "IN_DEVELOPMENT"
    assert data["release"]["deployed_at"] is not None
    assert data["propagation"]["outcome"] == "complete"
    assert data["propagation"]["changed"] == [web["id"]]

    response = await client.get(f"/api/v1/releases/{web['id']}")
    assert response.json()["is_blocked"] is False

    assert ActivityType.RELEASE_UNBLOCKED in sink.types()


@pytest.mark.asyncio
async def test_invalid_dependencies_rejected(client: AsyncClient):
    """自依赖 400，重复 409，成环 400"""
    api = await _create(client, "Payments API")
    web = await _create(client, "Checkout Web")

    response = await _depend(client, api["id"], api["id"])
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "self_dependency"

    assert (await _depend(client, web["id"], api["id"])).status_code == 201

    response = await _depend(client, web["id"], api["id"])
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "duplicate_dependency"

    response = await _depend(client, api["id"], web["id"])
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "circular_dependency"

    response = await _depend(client, web["id"], "missing-release")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_list_dependencies(client: AsyncClient):
    """依赖与被依赖列表"""
    api = await _create(client, "Payments API")
    web = await _create(client, "Checkout Web")
    mobile = await _create(client, "Mobile App")
    await _depend(client, web["id"], api["id"])
    await _depend(client, mobile["id"], web["id"], type="SOFT_DEPENDENCY")

    response = await client.get(f"/api/v1/releases/{web['id']}/dependencies")
    assert response.status_code == 200
    data = response.json()

    assert [d["release"]["id"] for d in data["depends_on"]] == [api["id"]]
    assert [d["release"]["id"] for d in data["dependents"]] == [mobile["id"]]
    assert data["dependents"][0]["type"] == "SOFT_DEPENDENCY"


@pytest.mark.asyncio
async def test_update_and_remove_dependency(client: AsyncClient):
    """修改、删除依赖"""
    api = await _create(client, "Payments API")
    web = await _create(client, "Checkout Web")
    dependency = (await _depend(client, web["id"], api["id"])).json()
    url = f"/api/v1/releases/{web['id']}/dependencies/{dependency['id']}"

    response = await client.patch(url, json={"is_resolved": True})
    assert response.status_code == 200
    assert response.json()["is_resolved"] is True
    assert response.json()["resolved_at"] is not None
    assert (await client.get(f"/api/v1/releases/{web['id']}")).json()["is_blocked"] is False

    response = await client.patch(url, json={"is_resolved": False, "description": "reopened"})
    assert response.status_code == 200
    assert response.json()["description"] == "reopened"
    assert (await client.get(f"/api/v1/releases/{web['id']}")).json()["is_blocked"] is True

    # 依赖必须属于路径中的 release
    response = await client.delete(f"/api/v1/releases/{api['id']}/dependencies/{dependency['id']}")
    assert response.status_code == 404

    response = await client.delete(url)
    assert response.status_code == 200
    assert response.json()["success"] is True
    assert (await client.get(f"/api/v1/releases/{web['id']}")).json()["is_blocked"] is False

    response = await client.delete(url)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_manual_block_endpoints(client: AsyncClient):
    """人工阻塞与解除"""
    release = await _create(client, "Payments API")
    url = f"/api/v1/releases/{release['id']}/block"

    response = await client.put(url, json={"reason": "Change freeze"})
    assert response.status_code == 200
    data = response.json()
    assert data["is_blocked"] is True
    assert data["blocked_reason"] == "Change freeze"
    assert data["block_source"] == "manual"

    response = await client.put(url, json={"reason": ""})
    assert response.status_code == 422

    response = await client.delete(url)
    assert response.status_code == 200
    assert response.json()["is_blocked"] is False


@pytest.mark.asyncio
async def test_delete_release(client: AsyncClient):
    """删除 blocking release 后 dependent 解除阻塞"""
    api = await _create(client, "Payments API")
    web = await _create(client, "Checkout Web")
    await _depend(client, web["id"], api["id"])

    response = await client.delete(f"/api/v1/releases/{api['id']}")
    assert response.status_code == 200
    assert response.json()["propagation"]["changed"] == [web["id"]]

    assert (await client.get(f"/api/v1/releases/{api['id']}")).status_code == 404
    assert (await client.get(f"/api/v1/releases/{web['id']}")).json()["is_blocked"] is False


@pytest.mark.asyncio
async def test_cycles_and_recompute(client: AsyncClient):
    """环检测与全量重算"""
    api = await _create(client, "Payments API")
    web = await _create(client, "Checkout Web")
    await _depend(client, web["id"], api["id"])

    response = await client.get("/api/v1/dependencies/cycles")
    assert response.status_code == 200
    assert response.json() == {"has_cycles": False, "cycles": []}

    response = await client.post("/api/v1/dependencies/recompute")
    assert response.status_code == 200
    data = response.json()
    assert data["outcome"] == "complete"
    assert data["total"] == 2
    assert data["changed"] == []
    assert data["failures"] == []


@pytest.mark.asyncio
async def test_recompute_scoped_to_team(client: AsyncClient):
    """全量重算只覆盖请求方团队"""
    api = await _create(client, "Payments API")
    web = await _create(client, "Checkout Web")
    await _depend(client, web["id"], api["id"])

    response = await client.post(
        "/api/v1/releases",
        json={"title": "Ledger Service"},
        headers={"X-Team-ID": OTHER_TEAM_ID},
    )
    other = response.json()

    response = await client.post("/api/v1/dependencies/recompute", params={"all_teams": "true"})
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2
    assert other["id"] not in data["changed"]

    response = await client.post(
        "/api/v1/dependencies/recompute",
        headers={"X-Team-ID": OTHER_TEAM_ID},
    )
    assert response.json()["total"] == 1
