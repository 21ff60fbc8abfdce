"""
Role-Based Access Control Module

Staff users, roles and permissions as far as the lending engine needs them:
who may record payments, apply penalties, manage contracts and, in particular,
who may reverse role-gated payment types.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Set

from .audit import AuditEventType, AuditTrail
from .exceptions import LoanValidationError, PaymentAuthorizationError
from .storage import StorageInterface, StorageRecord


class Permission(Enum):
    """System permissions"""
    # Loan permissions
    CREATE_LOAN = "create_loan"
    MANAGE_LOAN = "manage_loan"

    # Payment permissions
    RECORD_PAYMENT = "record_payment"
    REVERSE_PAYMENT = "reverse_payment"
    REVERSE_MANUAL_PAYMENT = "reverse_manual_payment"
    EDIT_PAYMENT_DATE = "edit_payment_date"

    # Collection permissions
    APPLY_PENALTY = "apply_penalty"
    CONFIGURE_LATE_INTEREST = "configure_late_interest"

    # Reporting
    RECORD_SCORE = "record_score"

    # Admin permissions
    MANAGE_USERS = "manage_users"


@dataclass
class Role(StorageRecord):
    """Role with permissions"""
    name: str
    description: str
    permissions: Set[Permission] = field(default_factory=set)
    is_system_role: bool = False

    def has_permission(self, permission: Permission) -> bool:
        """Check if role has a specific permission"""
        return permission in self.permissions


@dataclass
class User(StorageRecord):
    """Staff member acting on loans"""
    username: str
    full_name: str
    roles: List[str] = field(default_factory=list)  # role IDs
    is_active: bool = True


SYSTEM_ROLES: Dict[str, Dict] = {
    "OWNER": {
        "permissions": set(Permission),
        "description": "Business owner with full access"
    },
    "ADMIN": {
        "permissions": set(Permission) - {Permission.MANAGE_USERS},
        "description": "Administrator, may reverse manual and advance payments"
    },
    "STAFF": {
        "permissions": {
            Permission.CREATE_LOAN,
            Permission.RECORD_PAYMENT, Permission.REVERSE_PAYMENT,
            Permission.APPLY_PENALTY, Permission.RECORD_SCORE
        },
        "description": "Collector recording payments and charges"
    },
}


class RBACManager:
    """Role-Based Access Control manager"""

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit = audit_trail or AuditTrail(storage)
        self.roles_table = "roles"
        self.users_table = "users"
        self._create_system_roles()

    def get_role(self, role_id: str) -> Optional[Role]:
        """Get role by ID"""
        data = self.storage.load(self.roles_table, role_id)
        if not data:
            return None
        data['permissions'] = {Permission(p) for p in data.get('permissions', [])}
        return Role.from_dict(data)

    def get_role_by_name(self, name: str) -> Optional[Role]:
        """Get role by its unique name"""
        rows = self.storage.find(self.roles_table, {'name': name})
        if not rows:
            return None
        return self.get_role(rows[0]['id'])

    def create_user(self, username: str, full_name: str, role_names: List[str],
                    created_by: Optional[str] = None) -> User:
        """Create a staff user holding the named roles"""
        role_ids = []
        for name in role_names:
            role = self.get_role_by_name(name)
            if not role:
                raise LoanValidationError(f"Unknown role {name}")
            role_ids.append(role.id)

        now = datetime.now(timezone.utc)
        user = User(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            username=username,
            full_name=full_name,
            roles=role_ids
        )

        with self.storage.atomic():
            self.storage.save(self.users_table, user.id, user.to_dict())
            self.audit.log_event(
                AuditEventType.USER_CREATED,
                'user',
                user.id,
                {'username': username, 'roles': role_names},
                user_id=created_by
            )

        return user

    def get_user(self, user_id: str) -> Optional[User]:
        """Get user by ID"""
        data = self.storage.load(self.users_table, user_id)
        if not data:
            return None
        return User.from_dict(data)

    def assign_role(self, user_id: str, role_name: str, assigned_by: Optional[str] = None) -> User:
        """
        Give a user one more role

        Raises:
            PaymentAuthorizationError: assigned_by lacks MANAGE_USERS
            LoanValidationError: unknown user or role
        """
        if assigned_by is not None:
            self.require_permission(assigned_by, Permission.MANAGE_USERS)

        role = self.get_role_by_name(role_name)
        if not role:
            raise LoanValidationError(f"Unknown role {role_name}")

        with self.storage.atomic():
            user = self.get_user(user_id)
            if not user:
                raise LoanValidationError(f"User {user_id} not found")
            if role.id in user.roles:
                return user

            user.roles.append(role.id)
            user.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.users_table, user.id, user.to_dict())
            self.audit.log_event(
                AuditEventType.ROLE_ASSIGNED,
                'user',
                user.id,
                {'role': role_name},
                user_id=assigned_by
            )

        return user

    def deactivate_user(self, user_id: str) -> None:
        """Stop a user from acting without deleting them"""
        user = self.get_user(user_id)
        if not user:
            raise LoanValidationError(f"User {user_id} not found")
        user.is_active = False
        user.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.users_table, user.id, user.to_dict())

    def get_user_permissions(self, user_id: str) -> Set[Permission]:
        """Get all permissions for user from all their roles"""
        user = self.get_user(user_id)
        if not user or not user.is_active:
            return set()

        permissions: Set[Permission] = set()
        for role_id in user.roles:
            role = self.get_role(role_id)
            if role:
                permissions.update(role.permissions)
        return permissions

    def check_permission(self, user_id: str, permission: Permission) -> bool:
        """Check if user has specific permission"""
        return permission in self.get_user_permissions(user_id)

    def require_permission(self, user_id: str, permission: Permission) -> None:
        """Raise PaymentAuthorizationError unless the user holds permission"""
        if not self.check_permission(user_id, permission):
            raise PaymentAuthorizationError(user_id, permission.value)

    def _create_system_roles(self) -> None:
        """Create built-in system roles"""
        for role_name, role_config in SYSTEM_ROLES.items():
            if self.storage.find(self.roles_table, {'name': role_name}):
                continue

            now = datetime.now(timezone.utc)
            role = Role(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                name=role_name,
                description=role_config["description"],
                permissions=role_config["permissions"],
                is_system_role=True
            )

            data = role.to_dict()
            data['permissions'] = sorted(p.value for p in role.permissions)
            self.storage.save(self.roles_table, role.id, data)
