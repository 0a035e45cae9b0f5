import pytest

from hivelog.service.auth import (
    MISSING_TOKEN_MESSAGE,
    REVOKED_TOKEN_MESSAGE,
    PrincipalResolver,
    extract_bearer,
    normalize_roles,
)
from hivelog.service.errors import AuthenticationRequiredError, InvalidTokenError
from hivelog.service.revocation import RevocationService
from hivelog.service.tokens import REFRESH, PrincipalClaims, TokenService
from hivelog.storage.memory import MemoryCache

ACCESS_SECRET = "access-secret"
REFRESH_SECRET = "refresh-secret"


class CountingCache(MemoryCache):
    def __init__(self):
        super().__init__()
        self.checks = 0

    async def is_revoked(self, token_key):
        self.checks += 1
        return await super().is_revoked(token_key)


@pytest.fixture
def tokens():
    return TokenService()


@pytest.fixture
def cache():
    return CountingCache()


@pytest.fixture
def revocation(cache, tokens):
    return RevocationService(cache, tokens, max_token_lifetime_seconds=86400)


@pytest.fixture
def resolver(tokens, revocation):
    return PrincipalResolver(tokens, revocation, ACCESS_SECRET)


def _bearer(token):
    return f"Bearer {token}"


@pytest.mark.parametrize(
    "header,expected",
    [
        (None, None),
        ("", None),
        ("Bearer", None),
        ("Basic abc", None),
        ("Bearer a b", None),
        ("Bearer abc", "abc"),
        ("bearer abc", "abc"),
    ],
)
def test_extract_bearer(header, expected):
    assert extract_bearer(header) == expected


@pytest.mark.parametrize(
    "raw,expected",
    [
        (["admin", "user"], ["admin", "user"]),
        ("admin,user", ["admin", "user"]),
        (" admin , ,user,", ["admin", "user"]),
        ("admin,admin", ["admin"]),
        (["", "  "], []),
        (None, []),
        (42, []),
    ],
)
def test_normalize_roles(raw, expected):
    assert normalize_roles(raw) == expected


async def test_missing_header_rejected_before_cache(resolver, cache):
    with pytest.raises(AuthenticationRequiredError) as exc_info:
        await resolver.resolve(None)
    assert exc_info.value.message == MISSING_TOKEN_MESSAGE
    assert exc_info.value.status_code == 401
    assert cache.checks == 0


async def test_valid_token_resolves_principal(resolver, tokens):
    token = tokens.issue(PrincipalClaims("u1", "keeper", ("user", "vet")), "1h", ACCESS_SECRET)

    principal, raw = await resolver.resolve(_bearer(token))

    assert principal.id == "u1"
    assert principal.display_name == "keeper"
    assert principal.roles == ("user", "vet")
    assert raw == token


async def test_comma_joined_roles_are_normalized(resolver, tokens):
    token = tokens.issue(PrincipalClaims("u1", "keeper", "admin, user,"), "1h", ACCESS_SECRET)
    principal, _ = await resolver.resolve(_bearer(token))
    assert principal.roles == ("admin", "user")


async def test_empty_role_set_is_unauthenticated(resolver, tokens):
    token = tokens.issue(PrincipalClaims("u1", "keeper", ()), "1h", ACCESS_SECRET)
    with pytest.raises(AuthenticationRequiredError):
        await resolver.resolve(_bearer(token))


async def test_revoked_token_rejected_with_session_expired(resolver, revocation, tokens):
    token = tokens.issue(PrincipalClaims("u1", "keeper", ("user",)), "1h", ACCESS_SECRET)
    await revocation.revoke_token(token)

    with pytest.raises(AuthenticationRequiredError) as exc_info:
        await resolver.resolve(_bearer(token))

    assert exc_info.value.message == REVOKED_TOKEN_MESSAGE


async def test_revocation_checked_before_signature(resolver, cache):
    with pytest.raises(InvalidTokenError):
        await resolver.resolve("Bearer not.a.token")
    assert cache.checks == 1


async def test_refresh_token_cannot_authenticate_requests(resolver, tokens):
    refresh = tokens.issue(
        PrincipalClaims("u1", "keeper", ("user",)), "7d", REFRESH_SECRET, token_type=REFRESH
    )
    with pytest.raises(InvalidTokenError):
        await resolver.resolve(_bearer(refresh))
