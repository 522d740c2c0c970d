from __future__ import annotations

import logging

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, sessionmaker

from flagledger.models.schema import Challenge, Hint, Submission, User
from flagledger.services.audit import audit
from flagledger.services.cache import CHALLENGES_KEY, Cache, read_through
from flagledger.services.errors import NotFound
from flagledger.services.events import FanOut
from flagledger.services.identity import Caller

logger = logging.getLogger(__name__)

CHALLENGE_FIELDS = ('title', 'description', 'category', 'points', 'initial_points', 'flag', 'visible')


def _public(challenge: Challenge, hint_count: int) -> dict:
    return {
        'id': challenge.id,
        'title': challenge.title,
        'description': challenge.description,
        'category': challenge.category,
        'points': challenge.points,
        'initial_points': challenge.initial_points,
        'hint_count': hint_count,
    }


class ChallengeCatalog:
    """Challenge definitions: the cached public list plus staff edits."""

    def __init__(self, session_factory: sessionmaker[Session], cache: Cache, fanout: FanOut, ttl_seconds: float = 30) -> None:
        self.session_factory = session_factory
        self.cache = cache
        self.fanout = fanout
        self.ttl_seconds = ttl_seconds

    def public_challenges(self) -> list[dict]:
        return read_through(self.cache, CHALLENGES_KEY, self._load_visible, self.ttl_seconds)

    def _load_visible(self) -> list[dict]:
        with self.session_factory() as session:
            challenges = list(session.scalars(select(Challenge).where(Challenge.visible.is_(True)).order_by(Challenge.category, Challenge.points)))
            counts: dict[str, int] = {}
            for challenge_id in session.scalars(select(Hint.challenge_id)):
                counts[challenge_id] = counts.get(challenge_id, 0) + 1
            return [_public(c, counts.get(c.id, 0)) for c in challenges]

    def solved_ids(self, caller: Caller) -> set[str]:
        with self.session_factory() as session:
            user = session.get(User, caller.user_id)
            if user is None:
                return set()
            # Solves made before joining stay credited to the user.
            owner = Submission.user_id == user.id
            if user.team_id:
                owner = or_(owner, Submission.team_id == user.team_id)
            return set(session.scalars(select(Submission.challenge_id).where(owner)))

    def list_challenges(self, caller: Caller | None) -> list[dict]:
        challenges = self.public_challenges()
        solved = self.solved_ids(caller) if caller is not None else set()
        return [{**c, 'solved': c['id'] in solved} for c in challenges]

    def create_challenge(self, caller: Caller, data: dict) -> dict:
        initial = data.get('initial_points') or data['points']
        with self.session_factory() as session, session.begin():
            challenge = Challenge(
                title=data['title'],
                description=data.get('description', ''),
                category=data.get('category') or 'misc',
                points=data['points'],
                initial_points=initial,
                flag=data['flag'],
                visible=data.get('visible', True),
            )
            session.add(challenge)
            session.flush()
            audit(session, caller.user_id, 'challenge.created', 'challenge', challenge.id, {'title': challenge.title})
            result = _public(challenge, 0)
        logger.info('Challenge %s created by %s', result['id'], caller.user_id)
        self.fanout.changed('challenges')
        return result

    def update_challenge(self, caller: Caller, challenge_id: str, changes: dict) -> dict:
        changes = {k: v for k, v in changes.items() if k in CHALLENGE_FIELDS and v is not None}
        with self.session_factory() as session, session.begin():
            challenge = session.get(Challenge, challenge_id)
            if challenge is None:
                raise NotFound('Challenge not found')
            for field, value in changes.items():
                setattr(challenge, field, value)
            hint_count = len(list(session.scalars(select(Hint.id).where(Hint.challenge_id == challenge_id))))
            # Never log the flag itself.
            audit(session, caller.user_id, 'challenge.updated', 'challenge', challenge_id, {'fields': sorted(changes)})
            result = _public(challenge, hint_count)
            result['visible'] = challenge.visible
        self.fanout.changed('challenges')
        return result

    def add_hint(self, caller: Caller, challenge_id: str, content: str, cost: int) -> dict:
        with self.session_factory() as session, session.begin():
            if session.get(Challenge, challenge_id) is None:
                raise NotFound('Challenge not found')
            hint = Hint(challenge_id=challenge_id, content=content, cost=cost)
            session.add(hint)
            session.flush()
            audit(session, caller.user_id, 'hint.created', 'hint', hint.id, {'challenge_id': challenge_id, 'cost': cost})
            result = {'id': hint.id, 'challenge_id': challenge_id, 'cost': hint.cost}
        self.fanout.changed('challenges')
        return result

    def update_hint(self, caller: Caller, hint_id: str, content: str | None = None, cost: int | None = None) -> dict:
        with self.session_factory() as session, session.begin():
            hint = session.get(Hint, hint_id)
            if hint is None:
                raise NotFound('Hint not found')
            if content is not None:
                hint.content = content
            if cost is not None:
                # Past purchases keep cost_at_purchase.
                hint.cost = cost
            audit(session, caller.user_id, 'hint.updated', 'hint', hint_id, {'cost': hint.cost})
            result = {'id': hint.id, 'challenge_id': hint.challenge_id, 'cost': hint.cost}
        self.fanout.changed('challenges')
        return result
