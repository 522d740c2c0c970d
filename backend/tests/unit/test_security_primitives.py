from jose import JWTError
import pytest

from flagledger.models.schema import Role, User
from flagledger.security.flags import constant_time_flag_compare, flags_match
from flagledger.security.jwt import create_access_token, decode_token
from flagledger.services.identity import resolve_caller


def test_constant_time_flag_compare() -> None:
    assert constant_time_flag_compare('flag{abc123}', 'flag{abc123}')
    assert not constant_time_flag_compare('flag{abc123}', 'flag{zzz999}')


def test_flags_match_strips_but_keeps_case() -> None:
    assert flags_match('flag{abc}\n', '  flag{abc}')
    assert not flags_match('flag{abc}', 'FLAG{ABC}')
    assert not flags_match('flag{abc}', 'flag{ab c}')


def test_token_round_trip_and_foreign_secret(services) -> None:
    token = create_access_token('u-1', 'a@example.com', 'alice', Role.admin, settings=services.settings)

    claims = decode_token(token, services.settings)
    assert (claims['sub'], claims['role'], claims['email']) == ('u-1', Role.admin, 'a@example.com')
    with pytest.raises(JWTError):
        decode_token(token, services.settings.model_copy(update={'jwt_secret': 'someone-else'}))


def test_resolve_caller_upserts_and_follows_role_claim(services) -> None:
    caller = resolve_caller(services.session_factory, {'sub': 'ext-1', 'name': 'trinity'})
    assert caller.role == Role.competitor
    assert caller.team_id is None

    promoted = resolve_caller(services.session_factory, {'sub': 'ext-1', 'role': Role.challenge_creator})
    assert promoted.is_staff and not promoted.is_admin
    with services.session_factory() as session:
        user = session.get(User, 'ext-1')
        assert (user.email, user.name, user.role) == ('ext-1@users.invalid', 'trinity', Role.challenge_creator)


def test_resolve_caller_requires_subject(services) -> None:
    with pytest.raises(ValueError):
        resolve_caller(services.session_factory, {'email': 'x@example.com'})


def test_resolve_caller_rejects_malformed_email(services) -> None:
    with pytest.raises(ValueError):
        resolve_caller(services.session_factory, {'sub': 'ext-2', 'email': 'not-an-address'})
    with services.session_factory() as session:
        assert session.get(User, 'ext-2') is None
