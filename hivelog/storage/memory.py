from __future__ import annotations

import threading
import time
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from hivelog.logging import get_logger
from hivelog.storage.common import OWNER_COLUMN, ROOT_TABLE, OwnershipChain
from hivelog.storage.errors import ConstraintViolation, RowCountMismatch
from hivelog.storage.models import RECORD_TYPES, MUTABLE_FIELDS, Role, User

DEFAULT_ROLES = ("admin", "vet", "spectator", "user")


class MemoryCache:
    """In-process TTL map standing in for Redis revocation markers.

    Entries expire passively on read; writes also sweep expired entries
    at most once per ``sweep_interval`` seconds so the map stays bounded
    by the number of live revocations.
    """

    def __init__(
        self,
        *,
        clock: Optional[Callable[[], float]] = None,
        sweep_interval: float = 30.0,
    ) -> None:
        self._clock = clock or time.monotonic
        self._entries: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._sweep_interval = sweep_interval
        self._last_sweep = self._clock()

    def verify_connection(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def revoke(self, token_key: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            now = self._clock()
            if now - self._last_sweep >= self._sweep_interval:
                self._sweep(now)
            self._entries[token_key] = now + ttl_seconds

    async def is_revoked(self, token_key: str) -> bool:
        with self._lock:
            expires_at = self._entries.get(token_key)
            if expires_at is None:
                return False
            if expires_at <= self._clock():
                self._entries.pop(token_key, None)
                return False
            return True

    def _sweep(self, now: float) -> int:
        expired = [key for key, exp in self._entries.items() if exp <= now]
        for key in expired:
            del self._entries[key]
        self._last_sweep = now
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()


class MemoryStore:
    """In-memory backing store used in tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.roles: Dict[str, Role] = {}
        self.user_roles: Dict[str, List[int]] = {}
        self.tables: Dict[str, Dict[str, Any]] = {name: {} for name in RECORD_TYPES}
        self._role_seq = 1
        # RLock so helpers can be called while a public method holds it
        self._data_lock = threading.RLock()
        for name in DEFAULT_ROLES:
            self.ensure_role(name)

    # users
    def create_user(
        self, username: str, email: str, *, roles: Sequence[str] = ("user",)
    ) -> User:
        with self._data_lock:
            if self._find_user_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), username=username, email=email)
            self.users[user.id] = user
            self.user_roles[user.id] = []
            for role_name in roles:
                self._attach_role(user.id, self.ensure_role(role_name))
            return self._with_roles(user)

    def _find_user_by_email(self, email: str) -> Optional[User]:
        lowered = email.lower()
        return next(
            (u for u in self.users.values() if u.email.lower() == lowered), None
        )

    def _with_roles(self, user: User) -> User:
        roles_by_id = {role.id: role.name for role in self.roles.values()}
        names = [roles_by_id[rid] for rid in self.user_roles.get(user.id, [])]
        return replace(user, roles=names)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._with_roles(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_user_by_email(email)
            return self._with_roles(user) if user else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            users = sorted(self.users.values(), key=lambda u: u.created_at)
            return [self._with_roles(u) for u in users[:limit]]

    def update_user(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if email is not None:
                existing = self._find_user_by_email(email)
                if existing and existing.id != user_id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                user.email = email
            if username is not None:
                user.username = username
            return self._with_roles(user)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # roles
    def ensure_role(self, name: str) -> Role:
        with self._data_lock:
            role = self.roles.get(name)
            if role is None:
                role = Role(id=self._role_seq, name=name)
                self._role_seq += 1
                self.roles[name] = role
            return role

    def get_role(self, name: str) -> Optional[Role]:
        with self._data_lock:
            return self.roles.get(name)

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return sorted(self.roles.values(), key=lambda r: r.id)

    def _attach_role(self, user_id: str, role: Role) -> None:
        assigned = self.user_roles.setdefault(user_id, [])
        if role.id not in assigned:
            assigned.append(role.id)

    def assign_role(self, user_id: str, role_name: str) -> Optional[User]:
        with self._data_lock:
            role = self.roles.get(role_name)
            user = self.users.get(user_id)
            if not role or not user:
                return None
            self._attach_role(user_id, role)
            return self._with_roles(user)

    def remove_role(self, user_id: str, role_name: str) -> Optional[User]:
        with self._data_lock:
            role = self.roles.get(role_name)
            user = self.users.get(user_id)
            if not role or not user:
                return None
            assigned = self.user_roles.get(user_id, [])
            if role.id in assigned:
                assigned.remove(role.id)
            return self._with_roles(user)

    # records
    def create_record(self, table: str, **fields: Any) -> Any:
        record_cls = RECORD_TYPES[table]
        with self._data_lock:
            record = record_cls(id=str(uuid.uuid4()), **fields)
            self.tables[table][record.id] = record
            return replace(record)

    def list_records(self, table: str, parent_key: str, parent_id: str) -> List[Any]:
        with self._data_lock:
            rows = [
                replace(rec)
                for rec in self.tables[table].values()
                if rec.deleted_at is None and getattr(rec, parent_key) == parent_id
            ]
        return sorted(rows, key=lambda rec: rec.created_at)

    def find_owned(
        self, chain: OwnershipChain, ids: Sequence[str], principal_id: str
    ) -> Optional[Any]:
        """Return the leaf record if every link of ``chain`` holds, else None."""
        chain.check_ids(ids)
        with self._data_lock:
            records = []
            for table, record_id in zip(chain.tables, ids):
                rec = self.tables[table].get(record_id)
                if rec is None or rec.deleted_at is not None:
                    return None
                records.append(rec)
            for link, child, parent in zip(chain.links, records, records[1:]):
                if getattr(child, link.foreign_key) != parent.id:
                    return None
            if getattr(records[-1], OWNER_COLUMN) != principal_id:
                return None
            return replace(records[0])

    def _scoped_rows(
        self, table: str, record_id: str, scope_key: str, scope_value: str
    ) -> List[Any]:
        return [
            rec
            for rec in self.tables[table].values()
            if rec.id == record_id
            and getattr(rec, scope_key) == scope_value
            and rec.deleted_at is None
        ]

    def update_scoped(
        self,
        table: str,
        record_id: str,
        scope_key: str,
        scope_value: str,
        changes: Dict[str, Any],
    ) -> Optional[Any]:
        allowed = set(MUTABLE_FIELDS[table])
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"immutable fields for {table}: {sorted(unknown)}")
        with self._data_lock:
            rows = self._scoped_rows(table, record_id, scope_key, scope_value)
            if len(rows) > 1:
                raise RowCountMismatch(table, len(rows))
            if not rows:
                return None
            updated = replace(rows[0], **changes, updated_at=datetime.utcnow())
            self.tables[table][record_id] = updated
            return replace(updated)

    def delete_scoped(
        self, table: str, record_id: str, scope_key: str, scope_value: str
    ) -> bool:
        with self._data_lock:
            rows = self._scoped_rows(table, record_id, scope_key, scope_value)
            if len(rows) > 1:
                raise RowCountMismatch(table, len(rows))
            if not rows:
                return False
            now = datetime.utcnow()
            rows[0].deleted_at = now
            rows[0].updated_at = now
            self.logger.info("record_soft_deleted", table=table, record_id=record_id)
            return True

    def list_locations(self, user_id: str) -> List[Any]:
        return self.list_records(ROOT_TABLE, OWNER_COLUMN, user_id)

    def ping(self) -> bool:
        return True
