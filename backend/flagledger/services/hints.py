from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from flagledger.db.types import utcnow
from flagledger.models.schema import Challenge, Hint, HintPurchase, Team, User
from flagledger.services.audit import audit
from flagledger.services.errors import InsufficientPoints, Internal, NoTeam, NotFound
from flagledger.services.events import FanOut
from flagledger.services.identity import Caller
from flagledger.services.leaderboard import LeaderboardMaterializer

logger = logging.getLogger(__name__)


@dataclass
class HintReceipt:
    hint_id: str
    content: str
    cost: int
    team_points: int
    already_owned: bool = False


class HintVendor:
    """Sells hint content to teams, debiting each team at most once per hint."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        fanout: FanOut,
        leaderboard: LeaderboardMaterializer,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.fanout = fanout
        self.leaderboard = leaderboard
        self.clock = clock

    def _visible_hint(self, session: Session, caller: Caller, hint_id: str) -> Hint:
        hint = session.get(Hint, hint_id)
        if hint is None:
            raise NotFound('Hint not found')
        challenge = session.get(Challenge, hint.challenge_id)
        if challenge is None or not (challenge.visible or caller.is_staff):
            raise NotFound('Hint not found')
        return hint

    @staticmethod
    def _team_of(session: Session, caller: Caller) -> Team:
        user = session.get(User, caller.user_id)
        if user is None or user.team_id is None:
            raise NoTeam()
        return session.get(Team, user.team_id)

    def _owned_receipt(self, hint_id: str, team_id: str) -> HintReceipt | None:
        with self.session_factory() as session:
            purchase = session.scalar(
                select(HintPurchase).where(HintPurchase.team_id == team_id, HintPurchase.hint_id == hint_id)
            )
            if purchase is None:
                return None
            hint = session.get(Hint, hint_id)
            team = session.get(Team, team_id)
            return HintReceipt(
                hint_id=hint.id,
                content=hint.content,
                cost=purchase.cost_at_purchase,
                team_points=team.points,
                already_owned=True,
            )

    def purchase_hint(self, caller: Caller, hint_id: str) -> HintReceipt:
        with self.session_factory() as session:
            team = self._team_of(session, caller)
            hint = self._visible_hint(session, caller, hint_id)
            team_id, team_points, cost = team.id, team.points, hint.cost

        owned = self._owned_receipt(hint_id, team_id)
        if owned is not None:
            return owned
        if team_points < cost:
            raise InsufficientPoints(f'Hint costs {cost} points, team has {team_points}')

        try:
            receipt = self._debit(caller.user_id, team_id, hint_id)
        except IntegrityError:
            # A teammate bought it concurrently; their purchase stands.
            owned = self._owned_receipt(hint_id, team_id)
            if owned is None:
                raise Internal() from None
            return owned
        except SQLAlchemyError as exc:
            logger.exception('Hint purchase of %s by team %s failed', hint_id, team_id)
            raise Internal() from exc

        self.fanout.changed('leaderboard')
        return receipt

    def _debit(self, user_id: str, team_id: str, hint_id: str) -> HintReceipt:
        with self.session_factory() as session, session.begin():
            hint = session.get(Hint, hint_id)
            debited = session.execute(
                update(Team)
                .where(Team.id == team_id, Team.points >= hint.cost)
                .values(points=Team.points - hint.cost)
                .execution_options(synchronize_session=False)
            )
            if debited.rowcount == 0:
                raise InsufficientPoints(f'Hint costs {hint.cost} points')
            session.add(
                HintPurchase(
                    team_id=team_id,
                    user_id=user_id,
                    hint_id=hint_id,
                    cost_at_purchase=hint.cost,
                    created_at=self.clock(),
                )
            )
            session.flush()
            team = session.get(Team, team_id, populate_existing=True)
            self.leaderboard.upsert_entry(session, team)
            audit(session, user_id, 'hint.purchase', 'hint', hint_id, {'team_id': team_id, 'cost': hint.cost})

        logger.info('Team %s bought hint %s for %s points', team_id, hint_id, hint.cost)
        return HintReceipt(hint_id=hint_id, content=hint.content, cost=hint.cost, team_points=team.points)

    def list_hints(self, caller: Caller, challenge_id: str) -> list[dict]:
        with self.session_factory() as session:
            challenge = session.get(Challenge, challenge_id)
            if challenge is None or not (challenge.visible or caller.is_staff):
                raise NotFound('Challenge not found')
            hints = list(session.scalars(select(Hint).where(Hint.challenge_id == challenge_id).order_by(Hint.cost, Hint.created_at)))
            user = session.get(User, caller.user_id)
            owned = set()
            if user is not None and user.team_id is not None:
                owned = set(
                    session.scalars(
                        select(HintPurchase.hint_id).where(
                            HintPurchase.team_id == user.team_id,
                            HintPurchase.hint_id.in_([h.id for h in hints]),
                        )
                    )
                )
        return [
            {
                'id': h.id,
                'cost': h.cost,
                'owned': h.id in owned,
                'content': h.content if h.id in owned or caller.is_staff else None,
            }
            for h in hints
        ]
