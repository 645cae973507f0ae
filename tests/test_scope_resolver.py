"""Tests for organization/department scope derivation and request authorization."""

from uuid import uuid4

import pytest

from core.rbac.context import AccessContext
from core.rbac.errors import ForbiddenError
from core.rbac.scope import Principal, QueryScope, ScopeResolver

ORG_A = uuid4()
ORG_B = uuid4()
DEPT_A1 = uuid4()
DEPT_A2 = uuid4()


@pytest.fixture
def resolver():
    return ScopeResolver()


def _principal(org=ORG_A, dept=DEPT_A1):
    return Principal(user_id=uuid4(), organization_id=org, department_id=dept)


class TestComputeScope:

    def test_system_admin_is_unrestricted(self, resolver):
        scope = resolver.compute_scope(_principal(), {"system.admin"})

        assert scope.is_system_admin
        assert scope.organization_id is None
        assert scope.department_id is None
        assert scope.home_organization_id == ORG_A

    def test_org_admin_spans_departments(self, resolver):
        scope = resolver.compute_scope(_principal(), {"organization.manage"})

        assert scope.is_org_admin
        assert scope.organization_id == ORG_A
        assert scope.department_id is None

    def test_department_user_pinned_to_own_department(self, resolver):
        scope = resolver.compute_scope(_principal(), {"device.read"})

        assert scope.organization_id == ORG_A
        assert scope.department_id == DEPT_A1
        assert not scope.is_system_admin and not scope.is_org_admin

    def test_dept_admin_flag(self, resolver):
        scope = resolver.compute_scope(_principal(), {"department.manage"})

        assert scope.is_dept_admin
        assert scope.department_id == DEPT_A1

    def test_user_without_department(self, resolver):
        scope = resolver.compute_scope(_principal(dept=None), {"device.read"})

        assert scope.organization_id == ORG_A
        assert scope.department_id is None

    def test_no_org_no_dept_is_not_admin(self, resolver):
        scope = resolver.compute_scope(_principal(org=None, dept=None), set())

        assert not scope.is_system_admin
        with pytest.raises(ForbiddenError):
            resolver.authorize(scope)


class TestAuthorize:

    def test_defaults_to_own_scope(self, resolver):
        scope = resolver.compute_scope(_principal(), set())

        assert resolver.authorize(scope) == QueryScope(organization_id=ORG_A, department_id=DEPT_A1)

    def test_cross_organization_denied_not_coerced(self, resolver):
        scope = resolver.compute_scope(_principal(), {"organization.manage", "view_all_departments"})

        with pytest.raises(ForbiddenError) as exc_info:
            resolver.authorize(scope, organization_id=ORG_B)

        assert exc_info.value.status_code == 403
        assert exc_info.value.required_permission == "system.admin"

    def test_same_organization_explicitly_requested(self, resolver):
        scope = resolver.compute_scope(_principal(), set())

        assert resolver.authorize(scope, organization_id=ORG_A).organization_id == ORG_A

    def test_system_admin_may_target_any_organization(self, resolver):
        scope = resolver.compute_scope(_principal(), {"system.admin"})

        assert resolver.authorize(scope, ORG_B, DEPT_A2) == QueryScope(ORG_B, DEPT_A2)
        assert resolver.authorize(scope) == QueryScope(None, None)

    def test_cross_department_denied_for_plain_user(self, resolver):
        scope = resolver.compute_scope(_principal(), {"device.read", "department.manage"})

        with pytest.raises(ForbiddenError):
            resolver.authorize(scope, department_id=DEPT_A2)

    @pytest.mark.parametrize("permission", ["organization.manage", "view_all_departments"])
    def test_cross_department_allowed_with_elevation(self, resolver, permission):
        scope = resolver.compute_scope(_principal(), {permission})

        assert resolver.authorize(scope, department_id=DEPT_A2) == QueryScope(ORG_A, DEPT_A2)

    def test_view_all_departments_defaults_to_own_department(self, resolver):
        scope = resolver.compute_scope(_principal(), {"view_all_departments"})

        assert resolver.authorize(scope).department_id == DEPT_A1

    def test_user_without_department_may_narrow(self, resolver):
        scope = resolver.compute_scope(_principal(dept=None), set())

        assert resolver.authorize(scope, department_id=DEPT_A2) == QueryScope(ORG_A, DEPT_A2)

    def test_own_department_explicitly_requested(self, resolver):
        scope = resolver.compute_scope(_principal(), set())

        assert resolver.authorize(scope, ORG_A, DEPT_A1) == QueryScope(ORG_A, DEPT_A1)


class TestAccessContext:

    def _context(self, permissions):
        principal = _principal()
        scope = ScopeResolver().compute_scope(principal, permissions)
        return AccessContext(principal=principal, permissions=frozenset(permissions), scope=scope)

    def test_system_admin_short_circuits(self):
        ctx = self._context({"system.admin"})

        assert ctx.has_permission("device.delete")
        assert ctx.has_all_permissions(["device.delete", "report.export"])

    def test_require_permission_raises(self):
        ctx = self._context({"device.read"})

        ctx.require_permission("device.read")
        with pytest.raises(ForbiddenError) as exc_info:
            ctx.require_permission("device.delete")
        assert exc_info.value.required_permission == "device.delete"

    def test_require_any_permission(self):
        ctx = self._context({"alert.read"})

        ctx.require_any_permission(["device.read", "alert.read"])
        with pytest.raises(ForbiddenError):
            ctx.require_any_permission(["device.read", "report.read"])

    def test_context_is_immutable(self):
        ctx = self._context({"device.read"})

        with pytest.raises(AttributeError):
            ctx.permissions = frozenset({"system.admin"})

    def test_authorize_uses_scope(self):
        ctx = self._context({"device.read"})

        with pytest.raises(ForbiddenError):
            ctx.authorize(organization_id=ORG_B)

    def test_to_dict(self):
        ctx = self._context({"device.read", "alert.read"})

        data = ctx.to_dict()
        assert data["permissions"] == ["alert.read", "device.read"]
        assert data["scope"]["department_id"] == str(DEPT_A1)

    def test_to_dict_reports_home_for_org_admin(self):
        ctx = self._context({"organization.manage"})

        scope = ctx.to_dict()["scope"]
        assert scope["department_id"] is None
        assert scope["home_organization_id"] == str(ORG_A)
        assert scope["home_department_id"] == str(DEPT_A1)
