from __future__ import annotations

import threading
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    Permission,
    PrincipalStatus,
    RefreshSession,
    Role,
    User,
    UserCredential,
    utcnow,
)


class MemoryStore:
    """In-process backing store for tests and single-node development.

    Every operation runs under one re-entrant lock, so the compound session
    operations (issue, rotate, deactivate) are atomic with respect to each
    other and to the primitives.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserCredential] = {}
        # Keyed by token value; dict order is creation order
        self.sessions: Dict[str, RefreshSession] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.role_permissions: Dict[str, Set[str]] = {}
        self.user_roles: Dict[str, Set[str]] = {}
        self._data_lock = threading.RLock()

    @staticmethod
    def _active_only(user: Optional[User]) -> Optional[User]:
        """The single filter hiding deactivated principals from lookups."""
        if user is None or not user.is_active:
            return None
        return user

    def _require_active(self, user_id: str) -> User:
        user = self._active_only(self.users.get(user_id))
        if user is None:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return user

    # -- principals -------------------------------------------------------

    def create_user(self, email: str, name: str, password_hash: str, password_algo: str = "argon2id") -> User:
        with self._data_lock:
            normalized = email.strip().lower()
            if any(
                existing.email == normalized and existing.is_active
                for existing in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), email=normalized, name=name)
            self.users[user.id] = user
            self.credentials[user.id] = UserCredential(
                user_id=user.id, password_hash=password_hash, password_algo=password_algo
            )
            return user

    def get_user(self, user_id: str, *, include_deactivated: bool = False) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return user if include_deactivated else self._active_only(user)

    def _find_active_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        return next(
            (
                u
                for u in self.users.values()
                if u.email == normalized and self._active_only(u) is not None
            ),
            None,
        )

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return self._find_active_by_email(email)

    def get_login_record(self, email: str) -> Optional[Tuple[User, str]]:
        """Active principal for ``email`` together with its password hash."""
        with self._data_lock:
            user = self._find_active_by_email(email)
            record = self.credentials.get(user.id) if user else None
            if user is None or record is None:
                return None
            return user, record.password_hash

    def list_users(self) -> List[User]:
        with self._data_lock:
            active = [u for u in self.users.values() if self._active_only(u) is not None]
            return sorted(active, key=lambda u: u.created_at)

    def update_user(
        self, user_id: str, *, name: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self._active_only(self.users.get(user_id))
            if user is None:
                return None
            if email is not None:
                normalized = email.strip().lower()
                if any(
                    other.email == normalized and other.is_active and other.id != user_id
                    for other in self.users.values()
                ):
                    raise ConstraintViolation("email already exists", {"field": "email"})
                user.email = normalized
            if name is not None:
                user.name = name
            user.updated_at = utcnow()
            return user

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            record = self.credentials.get(user_id)
            return record.password_hash if record else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str = "argon2id") -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = UserCredential(
                user_id=user_id,
                password_hash=password_hash,
                password_algo=password_algo,
                last_updated_at=utcnow(),
            )

    def deactivate_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self._active_only(self.users.get(user_id))
            if user is None:
                return None
            now = utcnow()
            user.status = PrincipalStatus.DEACTIVATED
            user.deleted_at = now
            user.updated_at = now
            self.delete_user_sessions(user_id)
            return user

    # -- refresh sessions ---------------------------------------------------

    def create_session(self, user_id: str, token: str, expires_at: datetime) -> RefreshSession:
        with self._data_lock:
            self._require_active(user_id)
            if token in self.sessions:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            session = RefreshSession.new(user_id, token, expires_at)
            self.sessions[token] = session
            return session

    def get_session_by_token(self, token: str) -> Optional[RefreshSession]:
        with self._data_lock:
            return self.sessions.get(token)

    def delete_session(self, token: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(token, None) is not None

    def count_sessions(self, user_id: str) -> int:
        with self._data_lock:
            return sum(1 for s in self.sessions.values() if s.user_id == user_id)

    def list_sessions(self, user_id: str) -> List[RefreshSession]:
        with self._data_lock:
            owned = [s for s in self.sessions.values() if s.user_id == user_id]
            return sorted(owned, key=lambda s: s.created_at)

    def delete_oldest_sessions(self, user_id: str, keep_count: int) -> int:
        with self._data_lock:
            owned = self.list_sessions(user_id)
            overflow = len(owned) - max(keep_count, 0)
            if overflow <= 0:
                return 0
            for session in owned[:overflow]:
                self.sessions.pop(session.token, None)
            return overflow

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [tok for tok, s in self.sessions.items() if s.user_id == user_id]
            for tok in stale:
                self.sessions.pop(tok, None)
            return len(stale)

    def issue_session(
        self, user_id: str, token: str, expires_at: datetime, max_devices: int
    ) -> Tuple[RefreshSession, int]:
        with self._data_lock:
            # Checked before eviction so a refused issuance changes nothing
            self._require_active(user_id)
            evicted = 0
            if self.count_sessions(user_id) >= max_devices:
                evicted = self.delete_oldest_sessions(user_id, max_devices - 1)
            return self.create_session(user_id, token, expires_at), evicted

    def rotate_session(
        self, old_token: str, new_token: str, expires_at: datetime, max_devices: int
    ) -> Optional[Tuple[RefreshSession, int]]:
        with self._data_lock:
            current = self.sessions.get(old_token)
            if current is None:
                return None
            # Validate before mutating so a failed insert leaves the old session
            self._require_active(current.user_id)
            if new_token in self.sessions:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            del self.sessions[old_token]
            return self.issue_session(current.user_id, new_token, expires_at, max_devices)

    # -- roles and permissions ----------------------------------------------

    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        with self._data_lock:
            if any(r.name == name for r in self.roles.values()):
                raise ConstraintViolation("role already exists", {"field": "name"})
            role = Role(id=str(uuid.uuid4()), name=name, description=description)
            self.roles[role.id] = role
            self.role_permissions[role.id] = set()
            return role

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            return self.roles.get(role_id)

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            return next((r for r in self.roles.values() if r.name == name), None)

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return sorted(self.roles.values(), key=lambda r: r.name)

    def update_role(
        self, role_id: str, *, name: Optional[str] = None, description: Optional[str] = None
    ) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if role is None:
                return None
            if name is not None and any(
                r.name == name and r.id != role_id for r in self.roles.values()
            ):
                raise ConstraintViolation("role already exists", {"field": "name"})
            if name is not None:
                role.name = name
            if description is not None:
                role.description = description
            return role

    def delete_roles(self, role_ids: List[str]) -> int:
        """Delete roles with their grants and assignments; returns how many existed."""
        with self._data_lock:
            removed = 0
            for role_id in set(role_ids):
                if self.roles.pop(role_id, None) is None:
                    continue
                removed += 1
                self.role_permissions.pop(role_id, None)
                for assigned in self.user_roles.values():
                    assigned.discard(role_id)
            return removed

    def delete_role(self, role_id: str) -> bool:
        return self.delete_roles([role_id]) == 1

    def sync_role_permissions(self, role_id: str, permission_ids: List[str]) -> None:
        """Replace the role's grants with exactly ``permission_ids``."""
        with self._data_lock:
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            unknown = sorted(set(permission_ids) - set(self.permissions))
            if unknown:
                raise ConstraintViolation(
                    "permission does not exist", {"permission_ids": unknown}
                )
            self.role_permissions[role_id] = set(permission_ids)

    def create_permission(self, name: str, description: Optional[str] = None) -> Permission:
        with self._data_lock:
            if any(p.name == name for p in self.permissions.values()):
                raise ConstraintViolation("permission already exists", {"field": "name"})
            permission = Permission(id=str(uuid.uuid4()), name=name, description=description)
            self.permissions[permission.id] = permission
            return permission

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._data_lock:
            return self.permissions.get(permission_id)

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._data_lock:
            return next((p for p in self.permissions.values() if p.name == name), None)

    def update_permission(
        self, permission_id: str, *, name: Optional[str] = None, description: Optional[str] = None
    ) -> Optional[Permission]:
        with self._data_lock:
            permission = self.permissions.get(permission_id)
            if permission is None:
                return None
            if name is not None and any(
                p.name == name and p.id != permission_id for p in self.permissions.values()
            ):
                raise ConstraintViolation("permission already exists", {"field": "name"})
            if name is not None:
                permission.name = name
            if description is not None:
                permission.description = description
            return permission

    def delete_permission(self, permission_id: str) -> bool:
        with self._data_lock:
            if self.permissions.pop(permission_id, None) is None:
                return False
            for granted in self.role_permissions.values():
                granted.discard(permission_id)
            return True

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            return sorted(self.permissions.values(), key=lambda p: p.name)

    def list_role_permissions(self, role_id: str) -> List[Permission]:
        with self._data_lock:
            ids = self.role_permissions.get(role_id, set())
            return sorted((self.permissions[pid] for pid in ids), key=lambda p: p.name)

    def grant_permission(self, role_id: str, permission_id: str) -> None:
        with self._data_lock:
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            if permission_id not in self.permissions:
                raise ConstraintViolation(
                    "permission does not exist", {"permission_id": permission_id}
                )
            self.role_permissions.setdefault(role_id, set()).add(permission_id)

    def assign_role(self, user_id: str, role_id: str) -> None:
        with self._data_lock:
            self._require_active(user_id)
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            self.user_roles.setdefault(user_id, set()).add(role_id)

    def sync_user_roles(self, user_id: str, role_ids: List[str]) -> None:
        """Replace the principal's role assignments with exactly ``role_ids``."""
        with self._data_lock:
            self._require_active(user_id)
            unknown = sorted(set(role_ids) - set(self.roles))
            if unknown:
                raise ConstraintViolation("role does not exist", {"role_ids": unknown})
            self.user_roles[user_id] = set(role_ids)

    def revoke_role(self, user_id: str, role_id: str) -> bool:
        with self._data_lock:
            assigned = self.user_roles.get(user_id)
            if not assigned or role_id not in assigned:
                return False
            assigned.discard(role_id)
            return True

    def list_user_roles(self, user_id: str) -> List[Role]:
        with self._data_lock:
            ids = self.user_roles.get(user_id, set())
            return sorted((self.roles[rid] for rid in ids if rid in self.roles), key=lambda r: r.name)

    def list_user_permissions(self, user_id: str) -> Set[str]:
        with self._data_lock:
            names: Set[str] = set()
            for role_id in self.user_roles.get(user_id, set()):
                for permission_id in self.role_permissions.get(role_id, set()):
                    permission = self.permissions.get(permission_id)
                    if permission is not None:
                        names.add(permission.name)
            return names
