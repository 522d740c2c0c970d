from __future__ import annotations

import logging
import secrets
import string

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from flagledger.models.schema import LeaderboardEntry, Team, User
from flagledger.services.audit import audit
from flagledger.services.errors import NotFound
from flagledger.services.events import FanOut
from flagledger.services.identity import Caller
from flagledger.services.leaderboard import LeaderboardMaterializer

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits


class TeamError(ValueError):
    pass


def generate_code(length: int = 6) -> str:
    return ''.join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def _summary(team: Team, members: list[dict]) -> dict:
    return {'id': team.id, 'name': team.name, 'code': team.code, 'leader_id': team.leader_id, 'points': team.points, 'members': members}


class TeamService:
    """Team roster changes. Points stay with the team when members come and go."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        fanout: FanOut,
        leaderboard: LeaderboardMaterializer,
        code_length: int = 6,
        max_team_size: int = 5,
    ) -> None:
        self.session_factory = session_factory
        self.fanout = fanout
        self.leaderboard = leaderboard
        self.code_length = code_length
        self.max_team_size = max_team_size

    @staticmethod
    def _user(session: Session, caller: Caller) -> User:
        user = session.get(User, caller.user_id)
        if user is None:
            raise NotFound('Unknown user')
        return user

    def create_team(self, caller: Caller, name: str) -> dict:
        name = name.strip()
        try:
            with self.session_factory() as session, session.begin():
                user = self._user(session, caller)
                if user.team_id is not None:
                    raise TeamError('Already in a team')
                team = Team(name=name, code=generate_code(self.code_length), leader_id=user.id, points=0)
                session.add(team)
                session.flush()
                user.team_id = team.id
                entry = self.leaderboard.refresh_members(session, team)
                audit(session, user.id, 'team.created', 'team', team.id, {'name': name})
                result = _summary(team, entry.member_details)
        except IntegrityError:
            raise TeamError('Team name already taken') from None
        logger.info('Team %s created by %s', result['id'], caller.user_id)
        self.fanout.changed('leaderboard')
        return result

    def join_team(self, caller: Caller, code: str) -> dict:
        with self.session_factory() as session, session.begin():
            user = self._user(session, caller)
            if user.team_id is not None:
                raise TeamError('Already in a team')
            team = session.scalar(select(Team).where(Team.code == code.strip().upper()).with_for_update())
            if team is None:
                raise NotFound('Team not found')
            size = session.scalar(select(func.count()).select_from(User).where(User.team_id == team.id))
            if size >= self.max_team_size:
                raise TeamError('Team is full')
            user.team_id = team.id
            entry = self.leaderboard.refresh_members(session, team)
            audit(session, user.id, 'team.joined', 'team', team.id)
            result = _summary(team, entry.member_details)
        self.fanout.changed('leaderboard')
        return result

    def leave_team(self, caller: Caller) -> dict:
        with self.session_factory() as session, session.begin():
            user = self._user(session, caller)
            if user.team_id is None:
                raise TeamError('Not in a team')
            team = session.get(Team, user.team_id)
            user.team_id = None
            session.flush()
            remaining = list(session.scalars(select(User).where(User.team_id == team.id).order_by(User.created_at)))
            if remaining:
                if team.leader_id == user.id:
                    team.leader_id = remaining[0].id
                self.leaderboard.refresh_members(session, team)
            else:
                # Empty teams keep their history but drop off the member list.
                entry = session.scalar(select(LeaderboardEntry).where(LeaderboardEntry.team_id == team.id))
                if entry is not None:
                    entry.member_details = []
            audit(session, user.id, 'team.left', 'team', team.id, {'new_leader_id': team.leader_id})
            result = {'team_id': team.id, 'left': True, 'leader_id': team.leader_id}
        self.fanout.changed('leaderboard')
        return result
