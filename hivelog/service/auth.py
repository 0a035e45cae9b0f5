from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Protocol, Sequence, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from hivelog.config import Settings
from hivelog.logging import get_logger
from hivelog.service.errors import (
    AuthenticationRequiredError,
    ConflictError,
    ForbiddenError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from hivelog.service.revocation import RevocationService
from hivelog.service.tokens import (
    ACCESS,
    REFRESH,
    PrincipalClaims,
    TokenClaims,
    TokenService,
)
from hivelog.storage.errors import ConstraintViolation
from hivelog.storage.models import Role, User

logger = get_logger(__name__)

MISSING_TOKEN_MESSAGE = "No token provided or invalid token format."
REVOKED_TOKEN_MESSAGE = "This session has expired. Please log in again."
INVALID_CREDENTIALS_MESSAGE = "Invalid credentials."
FORBIDDEN_MESSAGE = "Forbidden: insufficient permissions to access this resource."
AUTH_REQUIRED_MESSAGE = "Authentication required."

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8


class AuthStore(Protocol):
    def create_user(
        self, username: str, email: str, *, roles: Sequence[str] = ("user",)
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def update_user(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def get_role(self, name: str) -> Optional[Role]: ...

    def list_roles(self) -> List[Role]: ...

    def assign_role(self, user_id: str, role_name: str) -> Optional[User]: ...

    def remove_role(self, user_id: str, role_name: str) -> Optional[User]: ...


def normalize_roles(raw: Any) -> List[str]:
    """Roles from a list or a comma-joined string as stripped, unique names in order."""
    if raw is None:
        return []
    if isinstance(raw, str):
        items: Iterable[Any] = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        items = raw
    else:
        return []
    roles: List[str] = []
    for item in items:
        if not isinstance(item, str):
            continue
        name = item.strip()
        if name and name not in roles:
            roles.append(name)
    return roles


@dataclass(frozen=True)
class Principal:
    id: str
    display_name: str
    roles: Tuple[str, ...]

    @classmethod
    def from_claims(cls, claims: TokenClaims) -> "Principal":
        roles = normalize_roles(claims.roles)
        if not roles:
            logger.info("principal_rejected", reason="no_roles", user_id=claims.principal_id)
            raise AuthenticationRequiredError(AUTH_REQUIRED_MESSAGE)
        return cls(id=claims.principal_id, display_name=claims.display_name, roles=tuple(roles))

    def has_any_role(self, allowed: Iterable[str]) -> bool:
        return not set(allowed).isdisjoint(self.roles)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    parts = header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


class PrincipalResolver:
    """Turns an ``Authorization`` header into a Principal.

    Order: bearer extraction, revocation lookup, signature/expiry check,
    role normalization. Performs no writes.
    """

    def __init__(
        self,
        tokens: TokenService,
        revocation: RevocationService,
        access_secret: str,
    ) -> None:
        self.tokens = tokens
        self.revocation = revocation
        self._access_secret = access_secret

    async def resolve(self, authorization: Optional[str]) -> Tuple[Principal, str]:
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationRequiredError(MISSING_TOKEN_MESSAGE)
        if await self.revocation.is_revoked(token):
            logger.info("access_token_revoked_rejected")
            raise AuthenticationRequiredError(REVOKED_TOKEN_MESSAGE)
        claims = self.tokens.verify(token, self._access_secret, token_type=ACCESS)
        return Principal.from_claims(claims), token


class RoleGate:
    """Allow-list check bound at route registration."""

    def __init__(self, allowed: Iterable[str]) -> None:
        self.allowed = frozenset(allowed)
        if not self.allowed:
            raise ValueError("a role gate needs at least one allowed role")

    def check(self, principal: Optional[Principal]) -> Principal:
        if principal is None:
            raise AuthenticationRequiredError(AUTH_REQUIRED_MESSAGE)
        if not principal.has_any_role(self.allowed):
            logger.info(
                "role_gate_denied",
                user_id=principal.id,
                roles=list(principal.roles),
                allowed=sorted(self.allowed),
            )
            raise ForbiddenError(FORBIDDEN_MESSAGE)
        return principal

    def __repr__(self) -> str:
        return f"RoleGate({sorted(self.allowed)!r})"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


class AuthService:
    """Registration, password login, token refresh, logout and role admin."""

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenService,
        revocation: RevocationService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.revocation = revocation
        self.settings = settings
        self.logger = logger
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    # passwords
    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.info("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    @staticmethod
    def _validate_credentials(email: str, password: str) -> None:
        if not _EMAIL_RE.match(email or ""):
            raise ValidationError("A valid email is required.", detail={"field": "email"})
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters.",
                detail={"field": "password"},
            )

    # tokens
    def issue_tokens(self, user: User) -> TokenPair:
        claims = PrincipalClaims(user.id, user.username, tuple(user.roles))
        access = self.tokens.issue(
            claims, self.settings.access_token_ttl, self.settings.jwt_secret, token_type=ACCESS
        )
        refresh = self.tokens.issue(
            claims,
            self.settings.refresh_token_ttl,
            self.settings.jwt_refresh_secret,
            token_type=REFRESH,
        )
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            expires_in=self.settings.access_ttl_seconds,
        )

    # flows
    async def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        roles: Optional[Sequence[str]] = None,
    ) -> User:
        self._validate_credentials(email, password)
        username = (username or "").strip()
        if not username:
            raise ValidationError("Username is required.", detail={"field": "username"})
        assigned = list(roles) if roles else [self.settings.default_role]
        try:
            user = await asyncio.to_thread(
                self.store.create_user, username, email.strip(), roles=assigned
            )
        except ConstraintViolation as exc:
            raise ConflictError("Email already registered.", detail=exc.detail) from exc
        await asyncio.to_thread(self.save_password, user.id, password)
        self.logger.info("user_registered", user_id=user.id, roles=user.roles)
        return user

    async def login(self, email: str, password: str) -> Tuple[User, TokenPair]:
        user = await asyncio.to_thread(self.store.get_user_by_email, (email or "").strip())
        valid = bool(user) and await asyncio.to_thread(
            self.verify_password, user.id, password or ""
        )
        if not valid:
            self.logger.info("login_failed")
            raise AuthenticationRequiredError(INVALID_CREDENTIALS_MESSAGE)
        self.logger.info("login_succeeded", user_id=user.id)
        return user, self.issue_tokens(user)

    async def refresh(self, refresh_token: Optional[str]) -> Tuple[User, str]:
        """Exchange a refresh token for a new access token carrying current roles."""
        if not refresh_token:
            raise AuthenticationRequiredError(MISSING_TOKEN_MESSAGE)
        if await self.revocation.is_revoked(refresh_token):
            raise AuthenticationRequiredError(REVOKED_TOKEN_MESSAGE)
        claims = self.tokens.verify(
            refresh_token, self.settings.jwt_refresh_secret, token_type=REFRESH
        )
        user = await asyncio.to_thread(self.store.get_user, claims.principal_id)
        if not user:
            self.logger.info("refresh_rejected", reason="user_missing")
            raise InvalidTokenError()
        access = self.tokens.issue(
            PrincipalClaims(user.id, user.username, tuple(user.roles)),
            self.settings.access_token_ttl,
            self.settings.jwt_secret,
            token_type=ACCESS,
        )
        return user, access

    async def logout(
        self, access_token: str, refresh_token: Optional[str] = None
    ) -> None:
        await self.revocation.revoke_token(access_token)
        if refresh_token:
            await self.revocation.revoke_token(refresh_token)
        self.logger.info("logout_completed", refresh_revoked=bool(refresh_token))

    # profile
    async def get_user(self, user_id: str) -> User:
        user = await asyncio.to_thread(self.store.get_user, user_id)
        if not user:
            raise NotFoundError("User not found.")
        return user

    async def update_profile(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
    ) -> User:
        if email is not None and not _EMAIL_RE.match(email):
            raise ValidationError("A valid email is required.", detail={"field": "email"})
        if password is not None and len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters.",
                detail={"field": "password"},
            )
        try:
            user = await asyncio.to_thread(
                self.store.update_user, user_id, username=username, email=email
            )
        except ConstraintViolation as exc:
            raise ConflictError("Email already registered.", detail=exc.detail) from exc
        if not user:
            raise NotFoundError("User not found.")
        if password is not None:
            await asyncio.to_thread(self.save_password, user_id, password)
        return user

    # admin
    async def list_users(self, limit: int = 100) -> List[User]:
        return await asyncio.to_thread(self.store.list_users, limit)

    async def list_roles(self) -> List[Role]:
        return await asyncio.to_thread(self.store.list_roles)

    async def _require_role(self, role_name: str) -> None:
        if not await asyncio.to_thread(self.store.get_role, role_name):
            raise NotFoundError("Role not found.")

    async def assign_role(self, user_id: str, role_name: str) -> User:
        await self._require_role(role_name)
        user = await asyncio.to_thread(self.store.assign_role, user_id, role_name)
        if not user:
            raise NotFoundError("User not found.")
        self.logger.info("user_role_assigned", user_id=user_id, role=role_name)
        return user

    async def remove_role(self, user_id: str, role_name: str) -> User:
        await self._require_role(role_name)
        user = await asyncio.to_thread(self.store.remove_role, user_id, role_name)
        if not user:
            raise NotFoundError("User not found.")
        self.logger.info("user_role_removed", user_id=user_id, role=role_name)
        return user
