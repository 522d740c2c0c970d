from __future__ import annotations

from dataclasses import dataclass
import logging

from pydantic import EmailStr, TypeAdapter
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from flagledger.models.schema import Role, User

logger = logging.getLogger(__name__)

_email = TypeAdapter(EmailStr)


@dataclass(frozen=True)
class Caller:
    user_id: str
    team_id: str | None
    role: str

    @property
    def is_staff(self) -> bool:
        return self.role in Role.staff

    @property
    def is_admin(self) -> bool:
        return self.role == Role.admin


def _user_from_claims(claims: dict) -> User:
    sub = claims['sub']
    # Raises ValidationError, a ValueError, for malformed addresses.
    email = _email.validate_python(claims['email']).lower() if claims.get('email') else f'{sub}@users.invalid'
    name = claims.get('name') or email.split('@')[0]
    role = claims.get('role') if claims.get('role') in Role.all else Role.competitor
    return User(id=sub, email=email, name=name, role=role)


def resolve_caller(session_factory: sessionmaker[Session], claims: dict) -> Caller:
    """Map validated token claims to a caller, creating the user on first sight.

    Token validation happens before this point; the claims are trusted.
    """
    if not claims.get('sub'):
        raise ValueError('Token has no subject')

    try:
        with session_factory() as session, session.begin():
            user = session.get(User, claims['sub'])
            if user is None:
                user = _user_from_claims(claims)
                session.add(user)
                logger.info('Created user %s on first authentication', user.id)
            elif claims.get('role') in Role.all and claims['role'] != user.role:
                user.role = claims['role']
            return Caller(user_id=user.id, team_id=user.team_id, role=user.role)
    except IntegrityError:
        # A concurrent request created the same user.
        with session_factory() as session:
            user = session.get(User, claims['sub'])
            if user is None:
                raise
            return Caller(user_id=user.id, team_id=user.team_id, role=user.role)
