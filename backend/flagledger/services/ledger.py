from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import math

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from flagledger.db.types import utcnow
from flagledger.models.schema import Challenge, FlagAttempt, Submission, Team, User
from flagledger.security.flags import flags_match
from flagledger.services.audit import audit
from flagledger.services.config_store import ConfigProvider, EventState, GameConfig, RateLimitPolicy
from flagledger.services.errors import AlreadySolved, EventNotActive, IncorrectFlag, Internal, NotFound, RateLimited
from flagledger.services.events import FanOut
from flagledger.services.identity import Caller
from flagledger.services.leaderboard import LeaderboardMaterializer

logger = logging.getLogger(__name__)


@dataclass
class SolveResult:
    challenge_id: str
    points_awarded: int
    user_points: int
    team_points: int | None
    challenge_points: int
    solved_at: datetime


def fingerprint(challenge_id: str, owner_id: str) -> str:
    return f'{challenge_id}:{owner_id}'


def decayed_points(initial: int, solves: int, rate: float, max_decay: float) -> int:
    """Value of a challenge after ``solves`` correct submissions.

    Linear decay of ``rate`` per solve, capped at ``max_decay`` of the initial
    value. Never below ``ceil(initial * (1 - max_decay))``.
    """
    # Rounded first so float noise cannot move a whole point.
    floor = math.ceil(round(initial * (1 - max_decay), 6))
    value = math.floor(round(initial * (1 - min(max_decay, solves * rate)), 6))
    return max(floor, value)


def rate_limit_retry_after(attempts: list[datetime], now: datetime, policy: RateLimitPolicy) -> int:
    """Seconds until another attempt is allowed, 0 when not limited.

    Any ``max_attempts`` attempts inside one window lock the caller out for
    ``cooldown_seconds`` after the last of them, and at least until the first
    of them leaves the window.
    """
    limit = policy.max_attempts
    window = timedelta(seconds=policy.window_seconds)
    cooldown = timedelta(seconds=policy.cooldown_seconds)
    attempts = sorted(attempts)

    blocked_until = None
    for i in range(limit - 1, len(attempts)):
        first = attempts[i - limit + 1]
        if attempts[i] - first <= window:
            until = max(attempts[i] + cooldown, first + window)
            if blocked_until is None or until > blocked_until:
                blocked_until = until

    if blocked_until is None or blocked_until <= now:
        return 0
    return max(1, math.ceil((blocked_until - now).total_seconds()))


def _find_solve(session: Session, challenge_id: str, user_id: str, team_id: str | None) -> Submission | None:
    owners = [Submission.user_id == user_id]
    if team_id is not None:
        owners.append(Submission.team_id == team_id)
    return session.scalar(select(Submission).where(Submission.challenge_id == challenge_id, or_(*owners)).limit(1))


class ScoringLedger:
    """Validates flag submissions and records each solve exactly once."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config_provider: ConfigProvider,
        fanout: FanOut,
        leaderboard: LeaderboardMaterializer,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.config_provider = config_provider
        self.fanout = fanout
        self.leaderboard = leaderboard
        self.clock = clock

    def submit_flag(self, caller: Caller, challenge_id: str, candidate_flag: str) -> SolveResult:
        config = self.config_provider.get_config()
        now = self.clock()

        with self.session_factory() as session:
            user = session.get(User, caller.user_id)
            if user is None:
                raise NotFound('Unknown user')
            # Stored membership wins over whatever the token claimed.
            team_id = user.team_id

        if config.event_state != EventState.running:
            raise EventNotActive()

        attempt_id = self._admit_attempt(caller.user_id, challenge_id, config.rate_limit, now)

        with self.session_factory() as session:
            existing = _find_solve(session, challenge_id, caller.user_id, team_id)
            if existing is not None:
                raise AlreadySolved(existing.points_awarded)
            challenge = session.get(Challenge, challenge_id)
            if challenge is None or not (challenge.visible or caller.is_staff):
                raise NotFound('Challenge not found')
            if not flags_match(challenge.flag, candidate_flag):
                raise IncorrectFlag()

        try:
            result = self._record_solve(caller.user_id, team_id, challenge_id, attempt_id, config, now)
        except IntegrityError:
            logger.info('Concurrent solve of %s by %s lost the race', challenge_id, team_id or caller.user_id)
            with self.session_factory() as session:
                existing = _find_solve(session, challenge_id, caller.user_id, team_id)
            if existing is None:
                # Not a duplicate solve, e.g. the user vanished in a concurrent reset.
                logger.exception('Recording solve of %s by %s violated a constraint', challenge_id, caller.user_id)
                raise Internal() from None
            raise AlreadySolved(existing.points_awarded) from None
        except SQLAlchemyError as exc:
            logger.exception('Recording solve of %s by %s failed', challenge_id, caller.user_id)
            raise Internal() from exc

        self.fanout.changed('challenges', 'leaderboard')
        return result

    def _admit_attempt(self, user_id: str, challenge_id: str, policy: RateLimitPolicy, now: datetime) -> str:
        """Record one attempt, or raise ``RateLimited`` without recording it.

        Counts every attempt by the caller, on any challenge. The check and
        the insert share a transaction with the caller's user row locked, so
        parallel requests queue behind each other instead of all passing.
        """
        since = now - timedelta(seconds=policy.window_seconds + policy.cooldown_seconds)
        with self.session_factory() as session, session.begin():
            session.scalar(select(User.id).where(User.id == user_id).with_for_update())
            attempt = FlagAttempt(user_id=user_id, challenge_id=challenge_id, correct=False, created_at=now)
            session.add(attempt)
            session.flush()
            earlier = list(
                session.scalars(
                    select(FlagAttempt.created_at).where(
                        FlagAttempt.user_id == user_id,
                        FlagAttempt.created_at >= since,
                        FlagAttempt.id != attempt.id,
                    )
                )
            )
            retry_after = rate_limit_retry_after(earlier, now, policy)
            if retry_after:
                logger.info('Rate limited %s for %ss', user_id, retry_after)
                # Rolls back the attempt row with the transaction.
                raise RateLimited(retry_after)
            return attempt.id

    def _record_solve(
        self,
        user_id: str,
        team_id: str | None,
        challenge_id: str,
        attempt_id: str,
        config: GameConfig,
        now: datetime,
    ) -> SolveResult:
        with self.session_factory() as session, session.begin():
            challenge = session.scalar(select(Challenge).where(Challenge.id == challenge_id).with_for_update())
            if challenge is None:
                raise NotFound('Challenge not found')
            award = challenge.points
            session.add(
                Submission(
                    user_id=user_id,
                    team_id=team_id,
                    challenge_id=challenge_id,
                    points_awarded=award,
                    fingerprint=fingerprint(challenge_id, team_id or user_id),
                    created_at=now,
                )
            )
            session.flush()

            session.execute(update(User).where(User.id == user_id).values(points=User.points + award))
            user_points = session.scalar(select(User.points).where(User.id == user_id))

            team_points = None
            if team_id is not None:
                session.execute(update(Team).where(Team.id == team_id).values(points=Team.points + award))
                team = session.get(Team, team_id, populate_existing=True)
                self.leaderboard.upsert_entry(session, team, solved_at=now)
                team_points = team.points

            if config.dynamic_scoring:
                solves = session.scalar(
                    select(func.count()).select_from(Submission).where(Submission.challenge_id == challenge_id)
                )
                challenge.points = decayed_points(
                    challenge.initial_points, solves, config.decay.rate, config.decay.max_decay
                )

            session.execute(update(FlagAttempt).where(FlagAttempt.id == attempt_id).values(correct=True))
            audit(
                session,
                user_id,
                'ledger.solve',
                'challenge',
                challenge_id,
                {'team_id': team_id, 'points_awarded': award, 'challenge_points': challenge.points},
            )

        logger.info('Solve recorded: challenge=%s owner=%s points=%s', challenge_id, team_id or user_id, award)
        return SolveResult(
            challenge_id=challenge_id,
            points_awarded=award,
            user_points=user_points,
            team_points=team_points,
            challenge_points=challenge.points,
            solved_at=now,
        )
