from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from flagledger.models.schema import LeaderboardEntry, Team, User
from flagledger.services.cache import LEADERBOARD_KEY, Cache, read_through


def _sort_key(row: dict):
    solved_at = row['last_solve_at']
    # Earlier last solve wins a tie; teams that never solved go last.
    return (-row['points'], solved_at is None, solved_at or datetime.max, row['name'])


def _sorted_board(rows: list[dict]) -> list[dict]:
    rows = sorted(rows, key=_sort_key)
    for i, row in enumerate(rows, start=1):
        row['rank'] = i
        if row['last_solve_at'] is not None:
            row['last_solve_at'] = row['last_solve_at'].isoformat()
    return rows


def member_snapshot(session: Session, team_id: str) -> list[dict]:
    members = session.scalars(select(User).where(User.team_id == team_id).order_by(User.points.desc(), User.name))
    return [{'id': m.id, 'name': m.name, 'points': m.points} for m in members]


class LeaderboardMaterializer:
    """Keeps ``leaderboard_entries`` in step with team points and serves the ranked view.

    Entries are written inside the caller's transaction; the ranked view is a
    short-lived cache over Team + LeaderboardEntry.
    """

    def __init__(self, session_factory: sessionmaker[Session], cache: Cache, ttl_seconds: float = 5) -> None:
        self.session_factory = session_factory
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    def upsert_entry(self, session: Session, team: Team, solved_at: datetime | None = None) -> LeaderboardEntry:
        entry = session.scalar(select(LeaderboardEntry).where(LeaderboardEntry.team_id == team.id))
        if entry is None:
            entry = LeaderboardEntry(team_id=team.id, points=0, member_details=[])
            session.add(entry)
        entry.points = team.points
        entry.member_details = member_snapshot(session, team.id)
        if solved_at is not None:
            entry.last_solve_at = solved_at
        return entry

    def refresh_members(self, session: Session, team: Team) -> LeaderboardEntry:
        session.flush()
        return self.upsert_entry(session, team)

    def ranking(self) -> list[dict]:
        return read_through(self.cache, LEADERBOARD_KEY, self.compute_ranking, self.ttl_seconds)

    def compute_ranking(self) -> list[dict]:
        with self.session_factory() as session:
            rows = session.execute(
                select(Team, LeaderboardEntry).outerjoin(LeaderboardEntry, LeaderboardEntry.team_id == Team.id)
            ).all()
            board = [
                {
                    'team_id': team.id,
                    'name': team.name,
                    'points': team.points,
                    'last_solve_at': entry.last_solve_at if entry else None,
                    'members': list(entry.member_details) if entry else [],
                }
                for team, entry in rows
            ]
        return _sorted_board(board)
