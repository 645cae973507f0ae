"""HTTP tests for /api/rbac endpoints."""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
import pytest_asyncio
from fastapi import Depends, Request
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from config.database import DatabaseSettings
from config.settings import RBACSettings, Settings
from core.rbac import AccessContext, QueryScope, get_query_scope, require_any_permission, require_permissions
from database.async_engine import get_session_factory
from web.app import create_app


@pytest_asyncio.fixture
async def app(engine, service, catalog):
    """App wired to the test engine; state is set directly instead of via lifespan."""
    app = create_app(settings=Settings(log_level="WARNING"), engine=engine)
    app.state.session_factory = get_session_factory(engine)
    app.state.access_control = service
    return app


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest_asyncio.fixture
async def people(session, service, make_user, make_role, tenancy):
    """An org admin, a lab permission manager, department users and an outsider."""
    manager_role = await make_role(
        "permission-manager",
        ["permission.read", "permission.manage", "organization.manage", "device.delete", "alert.read", "alert.manage"],
        organization_id=tenancy.acme.id,
    )
    delegate_role = await make_role(
        "lab-permission-manager", ["permission.read", "permission.manage"], organization_id=tenancy.acme.id,
    )
    viewer_role = await make_role("viewer", ["device.read"], organization_id=tenancy.acme.id)

    admin = await make_user("admin", tenancy.acme.id)
    operator = await make_user("operator", tenancy.acme.id, tenancy.field_ops.id)
    lab_tech = await make_user("labtech", tenancy.acme.id, tenancy.lab.id)
    lab_manager = await make_user("labmanager", tenancy.acme.id, tenancy.lab.id)
    outsider = await make_user("outsider", tenancy.globex.id, tenancy.globex_ops.id)

    await service.assign_role(session, None, admin.id, manager_role.id, organization_id=tenancy.acme.id)
    await service.assign_role(session, None, lab_manager.id, delegate_role.id, organization_id=tenancy.acme.id)
    for user in (operator, lab_tech, outsider):
        await service.assign_role(session, None, user.id, viewer_role.id, organization_id=tenancy.acme.id)

    return {
        "admin": admin.id,
        "operator": operator.id,
        "lab_tech": lab_tech.id,
        "lab_manager": lab_manager.id,
        "outsider": outsider.id,
    }


def _as(user_id):
    return {"X-User-Id": str(user_id)}


class TestAuthentication:

    @pytest.mark.asyncio
    async def test_missing_identity_is_401(self, client):
        response = await client.get("/api/rbac/me/permissions")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_malformed_identity_is_401(self, client):
        response = await client.get("/api/rbac/me/permissions", headers={"X-User-Id": "not-a-uuid"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_user_is_401(self, client, catalog):
        response = await client.get("/api/rbac/me/permissions", headers=_as(uuid4()))
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_health_is_public(self, client):
        response = await client.get("/health")
        assert response.status_code == 200


class TestReadEndpoints:

    @pytest.mark.asyncio
    async def test_my_permissions(self, client, people, tenancy):
        response = await client.get("/api/rbac/me/permissions", headers=_as(people["operator"]))

        assert response.status_code == 200
        data = response.json()
        assert data["permissions"] == ["device.read"]
        assert data["scope"]["organization_id"] == str(tenancy.acme.id)
        assert data["scope"]["department_id"] == str(tenancy.field_ops.id)

    @pytest.mark.asyncio
    async def test_user_permissions_requires_permission_read(self, client, people):
        response = await client.get(
            f"/api/rbac/users/{people['lab_tech']}/permissions", headers=_as(people["operator"])
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_user_permissions_detailed(self, client, people):
        response = await client.get(
            f"/api/rbac/users/{people['operator']}/permissions",
            params={"detailed": "true"},
            headers=_as(people["admin"]),
        )

        assert response.status_code == 200
        permissions = response.json()["permissions"]
        assert permissions == [{"code": "device.read", "source": "role", "roles": ["viewer"]}]

    @pytest.mark.asyncio
    async def test_cross_organization_target_is_403(self, client, people):
        response = await client.get(
            f"/api/rbac/users/{people['outsider']}/permissions", headers=_as(people["admin"])
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_target_is_404(self, client, people):
        response = await client.get(f"/api/rbac/users/{uuid4()}/overrides", headers=_as(people["admin"]))
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_overrides_listing(self, client, people):
        until = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()
        await client.post(
            f"/api/rbac/users/{people['operator']}/permissions/grant",
            json={"permission": "device.delete", "valid_until": until, "notes": "cleanup"},
            headers=_as(people["admin"]),
        )

        response = await client.get(f"/api/rbac/users/{people['operator']}/overrides", headers=_as(people["admin"]))

        assert response.status_code == 200
        overrides = response.json()["overrides"]
        assert len(overrides) == 1
        assert overrides[0]["permission"] == "device.delete"
        assert overrides[0]["action"] == "grant"
        assert overrides[0]["is_current"] is True
        assert overrides[0]["notes"] == "cleanup"


class TestMutationEndpoints:

    @pytest.mark.asyncio
    async def test_grant_then_visible(self, client, people):
        response = await client.post(
            f"/api/rbac/users/{people['operator']}/permissions/grant",
            json={"permission": "alert.manage"},
            headers=_as(people["admin"]),
        )
        assert response.status_code == 200
        assert response.json()["success"] is True

        me = await client.get("/api/rbac/me/permissions", headers=_as(people["operator"]))
        assert "alert.manage" in me.json()["permissions"]

    @pytest.mark.asyncio
    async def test_grant_unknown_code_is_404(self, client, people):
        response = await client.post(
            f"/api/rbac/users/{people['operator']}/permissions/grant",
            json={"permission": "device.teleport"},
            headers=_as(people["admin"]),
        )
        assert response.status_code == 404
        assert response.json()["detail"]["permission"] == "device.teleport"

    @pytest.mark.asyncio
    async def test_grant_requires_permission_manage(self, client, people):
        response = await client.post(
            f"/api/rbac/users/{people['lab_tech']}/permissions/grant",
            json={"permission": "device.read"},
            headers=_as(people["operator"]),
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_revoke_not_held_is_400(self, client, people):
        response = await client.post(
            f"/api/rbac/users/{people['operator']}/permissions/revoke",
            json={"permission": "report.export"},
            headers=_as(people["admin"]),
        )
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "conflict"

    @pytest.mark.asyncio
    async def test_revoke_removes_role_permission(self, client, people):
        response = await client.post(
            f"/api/rbac/users/{people['operator']}/permissions/revoke",
            json={"permission": "device.read"},
            headers=_as(people["admin"]),
        )
        assert response.status_code == 200

        me = await client.get("/api/rbac/me/permissions", headers=_as(people["operator"]))
        assert me.json()["permissions"] == []

    @pytest.mark.asyncio
    async def test_bulk_partial_success_is_207(self, client, people):
        response = await client.post(
            f"/api/rbac/users/{people['operator']}/permissions/bulk",
            json={"grants": ["alert.read", "device.teleport"], "revokes": ["device.read"]},
            headers=_as(people["admin"]),
        )

        assert response.status_code == 207
        data = response.json()
        assert data["succeeded"] == 2
        assert data["failed"] == 1
        assert [r["permission"] for r in data["results"] if not r["success"]] == ["device.teleport"]

    @pytest.mark.asyncio
    async def test_bulk_all_success_is_200(self, client, people):
        response = await client.post(
            f"/api/rbac/users/{people['operator']}/permissions/bulk",
            json={"grants": ["alert.read"]},
            headers=_as(people["admin"]),
        )
        assert response.status_code == 200
        assert response.json()["success"] is True

    @pytest.mark.asyncio
    async def test_bulk_all_failed_is_400(self, client, people):
        response = await client.post(
            f"/api/rbac/users/{people['operator']}/permissions/bulk",
            json={"grants": ["device.teleport"], "revokes": ["report.export"]},
            headers=_as(people["admin"]),
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_bulk_empty_is_400(self, client, people):
        response = await client.post(
            f"/api/rbac/users/{people['operator']}/permissions/bulk",
            json={},
            headers=_as(people["admin"]),
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_mutation_outside_organization_is_403(self, client, people):
        response = await client.post(
            f"/api/rbac/users/{people['outsider']}/permissions/grant",
            json={"permission": "device.read"},
            headers=_as(people["admin"]),
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_self_grant_of_system_admin_is_403(self, client, people):
        response = await client.post(
            f"/api/rbac/users/{people['lab_manager']}/permissions/grant",
            json={"permission": "system.admin"},
            headers=_as(people["lab_manager"]),
        )
        assert response.status_code == 403

        me = await client.get("/api/rbac/me/permissions", headers=_as(people["lab_manager"]))
        assert "system.admin" not in me.json()["permissions"]

    @pytest.mark.asyncio
    async def test_org_admin_cannot_grant_system_admin(self, client, people):
        response = await client.post(
            f"/api/rbac/users/{people['operator']}/permissions/grant",
            json={"permission": "system.admin"},
            headers=_as(people["admin"]),
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_grant_of_code_not_held_is_403(self, client, people):
        response = await client.post(
            f"/api/rbac/users/{people['lab_tech']}/permissions/grant",
            json={"permission": "device.delete"},
            headers=_as(people["lab_manager"]),
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_grant_of_code_held_within_department(self, client, people):
        response = await client.post(
            f"/api/rbac/users/{people['lab_tech']}/permissions/grant",
            json={"permission": "permission.read"},
            headers=_as(people["lab_manager"]),
        )
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_bulk_grant_of_code_not_held_fails_that_item(self, client, people):
        response = await client.post(
            f"/api/rbac/users/{people['lab_tech']}/permissions/bulk",
            json={"grants": ["permission.read", "system.admin"]},
            headers=_as(people["lab_manager"]),
        )

        assert response.status_code == 207
        failed = [r for r in response.json()["results"] if not r["success"]]
        assert [(r["permission"], r["error"]) for r in failed] == [("system.admin", "forbidden")]

    @pytest.mark.asyncio
    async def test_department_manager_cannot_touch_organization_level_user(self, client, people):
        response = await client.post(
            f"/api/rbac/users/{people['admin']}/permissions/revoke",
            json={"permission": "organization.manage"},
            headers=_as(people["lab_manager"]),
        )
        assert response.status_code == 403

        me = await client.get("/api/rbac/me/permissions", headers=_as(people["admin"]))
        assert "organization.manage" in me.json()["permissions"]

    @pytest.mark.asyncio
    async def test_department_manager_cannot_reach_other_organization(self, client, people):
        response = await client.get(
            f"/api/rbac/users/{people['outsider']}/permissions", headers=_as(people["lab_manager"])
        )
        assert response.status_code == 403


class TestDependencies:

    @pytest_asyncio.fixture
    async def client(self, app):
        @app.get("/scoped/devices")
        async def list_devices(
            ctx: AccessContext = Depends(require_permissions(["device.read"])),
            scope: QueryScope = Depends(get_query_scope),
        ):
            return {
                "organization_id": str(scope.organization_id) if scope.organization_id else None,
                "department_id": str(scope.department_id) if scope.department_id else None,
            }

        @app.get("/scoped/alerts")
        async def list_alerts(ctx: AccessContext = Depends(require_any_permission(["alert.read", "alert.manage"]))):
            return {"user_id": str(ctx.user_id)}

        @app.get("/scoped/request-id")
        async def request_id(request: Request):
            return {"request_id": request.state.request_id}

        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://testserver") as client:
            yield client

    @pytest.mark.asyncio
    async def test_query_scope_defaults_to_own_department(self, client, people, tenancy):
        response = await client.get("/scoped/devices", headers=_as(people["operator"]))

        assert response.status_code == 200
        assert response.json() == {
            "organization_id": str(tenancy.acme.id),
            "department_id": str(tenancy.field_ops.id),
        }

    @pytest.mark.asyncio
    async def test_query_scope_cross_department_is_403(self, client, people, tenancy):
        response = await client.get(
            "/scoped/devices",
            params={"department_id": str(tenancy.lab.id)},
            headers=_as(people["operator"]),
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_require_permissions_missing(self, client, people):
        response = await client.get("/scoped/devices", headers=_as(people["admin"]))
        assert response.status_code == 403
        assert "device.read" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_require_any_permission(self, client, people, service, session):
        assert (await client.get("/scoped/alerts", headers=_as(people["operator"]))).status_code == 403

        await service.grant(session, None, people["operator"], "alert.read")

        response = await client.get("/scoped/alerts", headers=_as(people["operator"]))
        assert response.status_code == 200
        assert response.json()["user_id"] == str(people["operator"])

    @pytest.mark.asyncio
    async def test_request_id_is_propagated(self, client, people):
        response = await client.get(
            "/scoped/request-id", headers={**_as(people["operator"]), "X-Request-ID": "req-42"}
        )
        assert response.json() == {"request_id": "req-42"}


class TestLifespan:

    def test_lifespan_starts_and_stops_service(self):
        app = create_app(
            settings=Settings(log_level="WARNING"),
            db_settings=DatabaseSettings(driver="sqlite+aiosqlite", sqlite_path=":memory:"),
            rbac_settings=RBACSettings(cache_cleanup_interval_seconds=60),
        )

        with TestClient(app) as client:
            service = app.state.access_control
            assert service.cache.running
            response = client.get("/api/health/cache")
            assert response.status_code == 200
            assert response.json()["ttl_seconds"] == 300

        assert not service.cache.running
