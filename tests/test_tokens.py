import base64
import json

import pytest

from hivelog.service.errors import InvalidTokenError, ValidationError
from hivelog.service.tokens import (
    ACCESS,
    REFRESH,
    PrincipalClaims,
    TokenService,
    parse_duration,
)

ACCESS_SECRET = "access-secret"
REFRESH_SECRET = "refresh-secret"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _claims(roles=("user",)):
    return PrincipalClaims("user-1", "keeper", roles)


def _tamper_payload(token: str, **changes) -> str:
    header, payload, sig = token.split(".")
    padded = payload + "=" * (-len(payload) % 4)
    data = json.loads(base64.urlsafe_b64decode(padded))
    data.update(changes)
    encoded = base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")
    return f"{header}.{encoded}.{sig}"


@pytest.mark.parametrize(
    "value,expected",
    [("30s", 30), ("15m", 900), ("1h", 3600), ("7d", 604800), ("2w", 1209600), ("45", 45), (120, 120)],
)
def test_parse_duration_units(value, expected):
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["", "abc", "1y", "-5m", "0h", 0, True])
def test_parse_duration_rejects_bad_values(value):
    with pytest.raises(ValidationError):
        parse_duration(value)


def test_issue_and_verify_round_trip():
    clock = FakeClock()
    service = TokenService(clock=clock)
    token = service.issue(_claims(("admin", "user")), "1h", ACCESS_SECRET)

    claims = service.verify(token, ACCESS_SECRET)

    assert claims.principal_id == "user-1"
    assert claims.display_name == "keeper"
    assert claims.roles == ["admin", "user"]
    assert claims.issued_at == int(clock.now)
    assert claims.expires_at == int(clock.now) + 3600
    assert claims.token_type == ACCESS
    assert claims.token_id


def test_refresh_token_never_validates_against_access_secret():
    service = TokenService()
    refresh = service.issue(_claims(), "7d", REFRESH_SECRET, token_type=REFRESH)
    access = service.issue(_claims(), "1h", ACCESS_SECRET)

    with pytest.raises(InvalidTokenError):
        service.verify(refresh, ACCESS_SECRET)
    with pytest.raises(InvalidTokenError):
        service.verify(access, REFRESH_SECRET)


def test_token_type_mismatch_is_rejected_even_with_right_secret():
    service = TokenService()
    token = service.issue(_claims(), "1h", ACCESS_SECRET, token_type=REFRESH)
    with pytest.raises(InvalidTokenError):
        service.verify(token, ACCESS_SECRET, token_type=ACCESS)


def test_expired_token_is_rejected():
    clock = FakeClock()
    service = TokenService(clock=clock)
    token = service.issue(_claims(), "1m", ACCESS_SECRET)
    clock.now += 61
    with pytest.raises(InvalidTokenError):
        service.verify(token, ACCESS_SECRET)


def test_failures_share_one_error_message():
    clock = FakeClock()
    service = TokenService(clock=clock)
    good = service.issue(_claims(), "1m", ACCESS_SECRET)

    messages = set()
    for bad, secret in [
        ("not-a-token", ACCESS_SECRET),
        (good, "wrong-secret"),
        (_tamper_payload(good, sub="someone-else"), ACCESS_SECRET),
    ]:
        with pytest.raises(InvalidTokenError) as exc_info:
            service.verify(bad, secret)
        messages.add(exc_info.value.message)
    clock.now += 120
    with pytest.raises(InvalidTokenError) as exc_info:
        service.verify(good, ACCESS_SECRET)
    messages.add(exc_info.value.message)

    assert len(messages) == 1


def test_algorithm_none_header_is_rejected():
    service = TokenService()
    token = service.issue(_claims(), "1h", ACCESS_SECRET)
    _, payload, sig = token.split(".")
    header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
    with pytest.raises(InvalidTokenError):
        service.verify(f"{header}.{payload}.{sig}", ACCESS_SECRET)


def test_comma_joined_roles_survive_encoding():
    service = TokenService()
    token = service.issue(_claims("admin,vet"), "1h", ACCESS_SECRET)
    assert service.verify(token, ACCESS_SECRET).roles == "admin,vet"


def test_remaining_seconds_reads_expiry_without_signature():
    clock = FakeClock()
    service = TokenService(clock=clock)
    token = service.issue(_claims(), "1h", ACCESS_SECRET)
    clock.now += 600

    assert service.remaining_seconds(token) == 3000
    # Signature is not checked: a foreign-signed token still reports its expiry
    assert service.remaining_seconds(token.rsplit(".", 1)[0] + ".garbage") == 3000


def test_remaining_seconds_clamps_and_handles_garbage():
    clock = FakeClock()
    service = TokenService(clock=clock)
    token = service.issue(_claims(), "1m", ACCESS_SECRET)
    clock.now += 3600

    assert service.remaining_seconds(token) == 0
    assert service.remaining_seconds("garbage") is None
    assert service.remaining_seconds(_tamper_payload(token, exp="soon")) is None
    assert service.remaining_seconds(None) is None


def test_remaining_seconds_rounds_fractions_up():
    clock = FakeClock()
    service = TokenService(clock=clock)
    token = service.issue(_claims(), "1h", ACCESS_SECRET)
    clock.now += 3599.5

    assert service.remaining_seconds(token) == 1
    clock.now += 0.5
    assert service.remaining_seconds(token) == 0


def test_remaining_seconds_right_after_one_hour_issue():
    service = TokenService()
    token = service.issue(_claims(), "1h", ACCESS_SECRET)
    remaining = service.remaining_seconds(token)
    assert 3595 < remaining <= 3600
