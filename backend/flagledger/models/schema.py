from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from flagledger.db.base import Base
from flagledger.db.types import new_id, utcnow


class Role:
    competitor = 'competitor'
    admin = 'admin'
    challenge_creator = 'challenge_creator'

    staff = frozenset({admin, challenge_creator})
    all = frozenset({competitor, admin, challenge_creator})


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class User(Base, TimestampMixin):
    __tablename__ = 'users'
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default=Role.competitor)
    team_id: Mapped[str | None] = mapped_column(ForeignKey('teams.id', ondelete='SET NULL'), index=True)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Team(Base, TimestampMixin):
    __tablename__ = 'teams'
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    code: Mapped[str] = mapped_column(String(16), nullable=False, unique=True, index=True)
    # Not a foreign key: users.team_id already points the other way.
    leader_id: Mapped[str] = mapped_column(String(36), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Challenge(Base, TimestampMixin):
    __tablename__ = 'challenges'
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default='')
    category: Mapped[str] = mapped_column(String(64), nullable=False, default='misc', index=True)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    initial_points: Mapped[int] = mapped_column(Integer, nullable=False)
    flag: Mapped[str] = mapped_column(String(255), nullable=False)
    visible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    __table_args__ = (CheckConstraint('points >= 0', name='challenge_points_non_negative'),)


class Hint(Base, TimestampMixin):
    __tablename__ = 'hints'
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    challenge_id: Mapped[str] = mapped_column(ForeignKey('challenges.id', ondelete='CASCADE'), nullable=False, index=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    cost: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    __table_args__ = (CheckConstraint('cost >= 0', name='hint_cost_non_negative'),)


class Submission(Base):
    """One correct-flag event. Never updated; removed only by a competition reset."""

    __tablename__ = 'submissions'
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    team_id: Mapped[str | None] = mapped_column(ForeignKey('teams.id', ondelete='SET NULL'), index=True)
    challenge_id: Mapped[str] = mapped_column(ForeignKey('challenges.id', ondelete='CASCADE'), nullable=False, index=True)
    points_awarded: Mapped[int] = mapped_column(Integer, nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(80), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    __table_args__ = (
        UniqueConstraint('fingerprint', name='uq_submission_fingerprint'),
        UniqueConstraint('challenge_id', 'team_id', name='uq_submission_challenge_team'),
        UniqueConstraint('challenge_id', 'user_id', name='uq_submission_challenge_user'),
    )


class FlagAttempt(Base):
    __tablename__ = 'flag_attempts'
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    challenge_id: Mapped[str] = mapped_column(String(36), nullable=False)
    correct: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    __table_args__ = (Index('ix_flag_attempts_user_created', 'user_id', 'created_at'),)


class HintPurchase(Base):
    __tablename__ = 'hint_purchases'
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    team_id: Mapped[str] = mapped_column(ForeignKey('teams.id', ondelete='CASCADE'), nullable=False, index=True)
    user_id: Mapped[str | None] = mapped_column(ForeignKey('users.id', ondelete='SET NULL'))
    hint_id: Mapped[str] = mapped_column(ForeignKey('hints.id', ondelete='CASCADE'), nullable=False)
    cost_at_purchase: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    __table_args__ = (UniqueConstraint('team_id', 'hint_id', name='uq_hint_purchase_team_hint'),)


class LeaderboardEntry(Base, TimestampMixin):
    __tablename__ = 'leaderboard_entries'
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    team_id: Mapped[str] = mapped_column(ForeignKey('teams.id', ondelete='CASCADE'), nullable=False, unique=True)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_solve_at: Mapped[datetime | None] = mapped_column(DateTime)
    member_details: Mapped[list] = mapped_column(JSON, nullable=False, default=list)


class SystemSetting(Base, TimestampMixin):
    __tablename__ = 'system_settings'
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    key: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)


class AuditLog(Base):
    __tablename__ = 'audit_logs'
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    actor_user_id: Mapped[str | None] = mapped_column(String(36))
    action: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    target_type: Mapped[str] = mapped_column(String(80), nullable=False)
    target_id: Mapped[str] = mapped_column(String(80), nullable=False)
    details: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
