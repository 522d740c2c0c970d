from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from flagledger.models.schema import Challenge, Hint, HintPurchase, Submission, Team, User
from flagledger.services.errors import NotFound
from flagledger.services.identity import Caller
from flagledger.services.leaderboard import member_snapshot


def _solves(session: Session, *criteria) -> list[dict]:
    rows = session.execute(
        select(Submission, Challenge, User)
        .join(Challenge, Challenge.id == Submission.challenge_id)
        .join(User, User.id == Submission.user_id)
        .where(*criteria)
        .order_by(Submission.created_at.desc(), Challenge.title)
    )
    return [
        {
            'challenge_id': challenge.id,
            'title': challenge.title,
            'category': challenge.category,
            'points_awarded': submission.points_awarded,
            'solved_at': submission.created_at.isoformat(),
            'solved_by': {'id': solver.id, 'name': solver.name},
        }
        for submission, challenge, solver in rows
    ]


def category_counts(solves: list[dict]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for solve in solves:
        counts[solve['category']] = counts.get(solve['category'], 0) + 1
    return counts


class ProfileReader:
    """Read-only views of a team's or the caller's own progress."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def team_profile(self, team_id: str) -> dict:
        with self.session_factory() as session:
            team = session.get(Team, team_id)
            if team is None:
                raise NotFound('Team not found')
            leader = session.get(User, team.leader_id)
            solves = _solves(session, Submission.team_id == team.id)
            return {
                'id': team.id,
                'name': team.name,
                'points': team.points,
                'leader': {'id': leader.id, 'name': leader.name} if leader else None,
                'members': member_snapshot(session, team.id),
                'solves': solves,
                'category_stats': category_counts(solves),
            }

    def profile(self, caller: Caller) -> dict:
        with self.session_factory() as session:
            user = session.get(User, caller.user_id)
            if user is None:
                raise NotFound('Unknown user')
            team = session.get(Team, user.team_id) if user.team_id else None
            if team is None:
                solves = _solves(session, Submission.user_id == user.id)
                purchases = []
            else:
                solves = _solves(session, Submission.team_id == team.id)
                purchases = [
                    {
                        'hint_id': purchase.hint_id,
                        'challenge_id': challenge_id,
                        'cost_at_purchase': purchase.cost_at_purchase,
                        'purchased_at': purchase.created_at.isoformat(),
                    }
                    for purchase, challenge_id in session.execute(
                        select(HintPurchase, Hint.challenge_id)
                        .join(Hint, Hint.id == HintPurchase.hint_id)
                        .where(HintPurchase.team_id == team.id)
                        .order_by(HintPurchase.created_at.desc())
                    )
                ]
            return {
                'id': user.id,
                'name': user.name,
                'email': user.email,
                'role': user.role,
                'points': user.points,
                'team': None
                if team is None
                else {
                    'id': team.id,
                    'name': team.name,
                    'code': team.code,
                    'points': team.points,
                    'members': member_snapshot(session, team.id),
                },
                'solves': solves,
                'hint_purchases': purchases,
            }
