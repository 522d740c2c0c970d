from __future__ import annotations

import logging

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session, sessionmaker

from flagledger.models.schema import Challenge, FlagAttempt, HintPurchase, LeaderboardEntry, Role, Submission, Team, User
from flagledger.services.audit import audit
from flagledger.services.cache import STATUS_KEY, Cache, read_through
from flagledger.services.config_store import ConfigProvider, GameConfig
from flagledger.services.events import CATEGORIES, FanOut
from flagledger.services.identity import Caller

logger = logging.getLogger(__name__)


class CompetitionAdmin:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config_provider: ConfigProvider,
        cache: Cache,
        fanout: FanOut,
        status_ttl_seconds: float = 10,
    ) -> None:
        self.session_factory = session_factory
        self.config_provider = config_provider
        self.cache = cache
        self.fanout = fanout
        self.status_ttl_seconds = status_ttl_seconds

    def status(self) -> dict:
        return read_through(self.cache, STATUS_KEY, self._compute_status, self.status_ttl_seconds)

    def _compute_status(self) -> dict:
        config = self.config_provider.get_config()
        return {
            'event_state': config.event_state.value,
            'dynamic_scoring': config.dynamic_scoring,
            'public_challenges': config.public_challenges,
            'public_leaderboard': config.public_leaderboard,
        }

    def update_config(self, caller: Caller, patch: dict) -> GameConfig:
        updated = self.config_provider.update_config(patch)
        with self.session_factory() as session, session.begin():
            audit(session, caller.user_id, 'config.updated', 'system_setting', 'game_config', {'patch': patch})
        self.fanout.changed('status')
        return updated

    def stats(self) -> dict:
        with self.session_factory() as session:
            solves = func.count(Submission.id)
            per_challenge = [
                {'id': challenge_id, 'title': title, 'solves': count}
                for challenge_id, title, count in session.execute(
                    select(Challenge.id, Challenge.title, solves)
                    .outerjoin(Submission, Submission.challenge_id == Challenge.id)
                    .group_by(Challenge.id, Challenge.title)
                    .order_by(solves.desc(), Challenge.title)
                )
            ]
            totals = {
                'total_teams': session.scalar(select(func.count()).select_from(Team)),
                'total_users': session.scalar(select(func.count()).select_from(User)),
                'total_solves': session.scalar(select(func.count()).select_from(Submission)),
            }
        solved = [row for row in per_challenge if row['solves']]
        return {
            **totals,
            'total_challenges': len(per_challenge),
            'challenges_solved': len(solved),
            'solve_rate': round(100 * len(solved) / len(per_challenge)) if per_challenge else 0,
            'most_solved': solved[0]['title'] if solved else None,
            'per_challenge': per_challenge,
        }

    def reset_competition(self, caller: Caller) -> dict:
        """Wipe competitor progress: solves, purchases, attempts, teams and competitor accounts.

        Staff accounts survive with zero points; challenge values return to
        their initial points.
        """
        with self.session_factory() as session, session.begin():
            counts = {
                'submissions': session.execute(delete(Submission)).rowcount,
                'hint_purchases': session.execute(delete(HintPurchase)).rowcount,
                'flag_attempts': session.execute(delete(FlagAttempt)).rowcount,
                'leaderboard_entries': session.execute(delete(LeaderboardEntry)).rowcount,
            }
            session.execute(update(User).values(team_id=None))
            counts['teams'] = session.execute(delete(Team)).rowcount
            counts['users'] = session.execute(delete(User).where(User.role == Role.competitor)).rowcount
            session.execute(update(User).values(points=0))
            session.execute(update(Challenge).values(points=Challenge.initial_points))
            audit(session, caller.user_id, 'competition.reset', 'competition', 'global', counts)

        logger.info('Competition reset by %s: %s', caller.user_id, counts)
        self.flush_caches()
        return counts

    def flush_caches(self) -> None:
        self.fanout.changed(*CATEGORIES)
