from __future__ import annotations

from enum import Enum
import logging

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from flagledger.config.settings import Settings
from flagledger.models.schema import SystemSetting

logger = logging.getLogger(__name__)

CONFIG_KEY = 'game_config'

# Older deployments configured the event with START/PAUSE/STOP.
_LEGACY_STATES = {'START': 'RUNNING', 'PAUSE': 'PAUSED', 'STOP': 'STOPPED'}


class EventState(str, Enum):
    running = 'RUNNING'
    paused = 'PAUSED'
    stopped = 'STOPPED'


class RateLimitPolicy(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    window_seconds: int = Field(default=30, ge=1)
    cooldown_seconds: int = Field(default=60, ge=0)


class DecayPolicy(BaseModel):
    rate: float = Field(default=0.03, ge=0)
    max_decay: float = Field(default=0.25, ge=0, le=1)


class GameConfig(BaseModel):
    event_state: EventState = EventState.running
    dynamic_scoring: bool = False
    rate_limit: RateLimitPolicy = Field(default_factory=RateLimitPolicy)
    decay: DecayPolicy = Field(default_factory=DecayPolicy)
    public_challenges: bool = True
    public_leaderboard: bool = True

    @field_validator('event_state', mode='before')
    @classmethod
    def accept_legacy_states(cls, value):
        if isinstance(value, str):
            value = value.strip().upper()
            return _LEGACY_STATES.get(value, value)
        return value

    @classmethod
    def from_settings(cls, settings: Settings) -> GameConfig:
        return cls(
            event_state=settings.event_state,
            dynamic_scoring=settings.dynamic_scoring,
            rate_limit=RateLimitPolicy(
                max_attempts=settings.rate_limit_max_attempts,
                window_seconds=settings.rate_limit_window_seconds,
                cooldown_seconds=settings.rate_limit_cooldown_seconds,
            ),
            decay=DecayPolicy(rate=settings.decay_rate, max_decay=settings.max_decay),
            public_challenges=settings.public_challenges,
            public_leaderboard=settings.public_leaderboard,
        )

    def merged(self, patch: dict) -> GameConfig:
        data = self.model_dump(mode='json')
        for key, value in patch.items():
            if value is None:
                continue
            if isinstance(value, dict) and isinstance(data.get(key), dict):
                data[key] = {**data[key], **{k: v for k, v in value.items() if v is not None}}
            else:
                data[key] = value
        return GameConfig.model_validate(data)


class ConfigProvider:
    """Source of truth for the mutable, competition-wide settings."""

    def get_config(self) -> GameConfig:
        raise NotImplementedError

    def update_config(self, patch: dict) -> GameConfig:
        raise NotImplementedError


class StaticConfigProvider(ConfigProvider):
    def __init__(self, config: GameConfig | None = None) -> None:
        self.config = config or GameConfig()

    def get_config(self) -> GameConfig:
        return self.config

    def update_config(self, patch: dict) -> GameConfig:
        self.config = self.config.merged(patch)
        return self.config


class DatabaseConfigProvider(ConfigProvider):
    """Persists the configuration as JSON in ``system_settings``.

    The first read seeds the row from the environment defaults, later reads
    always reflect the latest admin update.
    """

    def __init__(self, session_factory: sessionmaker[Session], defaults: GameConfig) -> None:
        self.session_factory = session_factory
        self.defaults = defaults

    @staticmethod
    def _load(session: Session, for_update: bool = False) -> SystemSetting | None:
        statement = select(SystemSetting).where(SystemSetting.key == CONFIG_KEY)
        if for_update:
            statement = statement.with_for_update()
        return session.scalar(statement)

    def get_config(self) -> GameConfig:
        try:
            with self.session_factory() as session, session.begin():
                row = self._load(session)
                if row is not None:
                    return GameConfig.model_validate_json(row.value)
                session.add(SystemSetting(key=CONFIG_KEY, value=self.defaults.model_dump_json()))
        except IntegrityError:
            # Another worker seeded it first.
            with self.session_factory() as session:
                return GameConfig.model_validate_json(self._load(session).value)
        logger.info('Persisted default game configuration')
        return self.defaults

    def update_config(self, patch: dict) -> GameConfig:
        self.get_config()
        with self.session_factory() as session, session.begin():
            row = self._load(session, for_update=True)
            updated = GameConfig.model_validate_json(row.value).merged(patch)
            row.value = updated.model_dump_json()
        logger.info(
            'Game configuration updated: event_state=%s dynamic_scoring=%s',
            updated.event_state.value,
            updated.dynamic_scoring,
        )
        return updated
