"""
Tests for role-based access control
"""

import pytest

from lending_core.storage import InMemoryStorage
from lending_core.audit import AuditTrail, AuditEventType
from lending_core.exceptions import LoanValidationError, PaymentAuthorizationError
from lending_core.rbac import RBACManager, Permission


class TestRBACManager:
    """Test system roles, users and permission checks"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.rbac = RBACManager(self.storage, self.audit)

    def test_system_roles_created_once(self):
        """Constructing a second manager on the same storage adds no roles"""
        assert self.storage.count("roles") == 3
        RBACManager(self.storage, self.audit)
        assert self.storage.count("roles") == 3

        owner = self.rbac.get_role_by_name("OWNER")
        assert owner.is_system_role
        assert owner.permissions == set(Permission)

    def test_staff_cannot_reverse_manual_payments(self):
        staff = self.rbac.create_user("ana", "Ana Souza", ["STAFF"])

        assert self.rbac.check_permission(staff.id, Permission.RECORD_PAYMENT)
        assert self.rbac.check_permission(staff.id, Permission.REVERSE_PAYMENT)
        assert not self.rbac.check_permission(staff.id, Permission.REVERSE_MANUAL_PAYMENT)
        assert not self.rbac.check_permission(staff.id, Permission.EDIT_PAYMENT_DATE)

    def test_admin_permissions(self):
        admin = self.rbac.create_user("bruno", "Bruno Lima", ["ADMIN"])

        assert self.rbac.check_permission(admin.id, Permission.REVERSE_MANUAL_PAYMENT)
        assert not self.rbac.check_permission(admin.id, Permission.MANAGE_USERS)

    def test_permissions_union_across_roles(self):
        user = self.rbac.create_user("carla", "Carla Dias", ["STAFF", "ADMIN"])
        assert self.rbac.get_user_permissions(user.id) == set(Permission) - {Permission.MANAGE_USERS}

    def test_require_permission_raises(self):
        staff = self.rbac.create_user("ana", "Ana Souza", ["STAFF"])

        self.rbac.require_permission(staff.id, Permission.APPLY_PENALTY)
        with pytest.raises(PaymentAuthorizationError) as exc_info:
            self.rbac.require_permission(staff.id, Permission.REVERSE_MANUAL_PAYMENT)
        assert exc_info.value.permission == "reverse_manual_payment"
        assert isinstance(exc_info.value, PermissionError)

    def test_unknown_user_has_no_permissions(self):
        assert self.rbac.get_user_permissions("missing") == set()
        assert not self.rbac.check_permission("missing", Permission.RECORD_PAYMENT)

    def test_deactivated_user_loses_permissions(self):
        owner = self.rbac.create_user("dono", "Dono", ["OWNER"])
        self.rbac.deactivate_user(owner.id)

        assert self.rbac.get_user_permissions(owner.id) == set()
        with pytest.raises(LoanValidationError):
            self.rbac.deactivate_user("missing")

    def test_unknown_role_rejected(self):
        with pytest.raises(LoanValidationError, match="Unknown role"):
            self.rbac.create_user("x", "X", ["AUDITOR"])
        assert self.storage.count("users") == 0

    def test_user_creation_is_audited(self):
        user = self.rbac.create_user("ana", "Ana Souza", ["STAFF"], created_by="admin")

        events = self.audit.get_events_for_entity("user", user.id)
        assert len(events) == 1
        assert events[0].event_type == AuditEventType.USER_CREATED
        assert events[0].user_id == "admin"
        assert events[0].metadata["roles"] == ["STAFF"]

    def test_assign_role_grants_permissions(self):
        owner = self.rbac.create_user("dono", "Dono", ["OWNER"])
        staff = self.rbac.create_user("ana", "Ana Souza", ["STAFF"])

        updated = self.rbac.assign_role(staff.id, "ADMIN", assigned_by=owner.id)

        assert len(updated.roles) == 2
        assert self.rbac.check_permission(staff.id, Permission.REVERSE_MANUAL_PAYMENT)
        events = self.audit.get_events_by_type(AuditEventType.ROLE_ASSIGNED)
        assert len(events) == 1
        assert events[0].entity_id == staff.id
        assert events[0].user_id == owner.id
        assert events[0].metadata == {"role": "ADMIN"}

    def test_assigning_held_role_changes_nothing(self):
        staff = self.rbac.create_user("ana", "Ana Souza", ["STAFF"])
        self.rbac.assign_role(staff.id, "STAFF")

        assert len(self.rbac.get_user(staff.id).roles) == 1
        assert self.audit.get_events_by_type(AuditEventType.ROLE_ASSIGNED) == []

    def test_assign_role_requires_manage_users(self):
        admin = self.rbac.create_user("bruno", "Bruno Lima", ["ADMIN"])
        staff = self.rbac.create_user("ana", "Ana Souza", ["STAFF"])

        with pytest.raises(PaymentAuthorizationError):
            self.rbac.assign_role(staff.id, "OWNER", assigned_by=admin.id)
        assert not self.rbac.check_permission(staff.id, Permission.MANAGE_USERS)
        assert self.audit.get_events_by_type(AuditEventType.ROLE_ASSIGNED) == []

    def test_assign_role_rejects_unknown_user_or_role(self):
        staff = self.rbac.create_user("ana", "Ana Souza", ["STAFF"])
        with pytest.raises(LoanValidationError, match="Unknown role"):
            self.rbac.assign_role(staff.id, "AUDITOR")
        with pytest.raises(LoanValidationError, match="not found"):
            self.rbac.assign_role("missing", "STAFF")
