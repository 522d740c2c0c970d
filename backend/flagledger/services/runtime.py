from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
import logging

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from flagledger.config.settings import Settings
from flagledger.db.session import build_engine, build_session_factory
from flagledger.db.types import utcnow
from flagledger.services.admin import CompetitionAdmin
from flagledger.services.cache import Cache, MemoryCache, RedisCache
from flagledger.services.catalog import ChallengeCatalog
from flagledger.services.config_store import ConfigProvider, DatabaseConfigProvider, GameConfig
from flagledger.services.events import EventChannel, FanOut, LocalEventChannel, RedisEventChannel
from flagledger.services.hints import HintVendor
from flagledger.services.leaderboard import LeaderboardMaterializer
from flagledger.services.ledger import ScoringLedger
from flagledger.services.profiles import ProfileReader
from flagledger.services.teams import TeamService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker[Session]
    cache: Cache
    channel: EventChannel
    fanout: FanOut
    config_provider: ConfigProvider
    leaderboard: LeaderboardMaterializer
    ledger: ScoringLedger
    hints: HintVendor
    catalog: ChallengeCatalog
    teams: TeamService
    admin: CompetitionAdmin
    profiles: ProfileReader


def build_cache(settings: Settings) -> Cache:
    if settings.cache_backend == 'memory':
        return MemoryCache()
    if settings.cache_backend == 'redis':
        return RedisCache.from_url(settings.redis_url)
    raise ValueError(f'Unsupported cache backend: {settings.cache_backend}')


def build_channel(settings: Settings) -> EventChannel:
    if settings.event_backend == 'local':
        return LocalEventChannel()
    if settings.event_backend == 'redis':
        return RedisEventChannel(settings.redis_url)
    raise ValueError(f'Unsupported event backend: {settings.event_backend}')


def build_services(
    settings: Settings,
    config_provider: ConfigProvider | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    engine = build_engine(settings.database_url, echo=settings.database_echo)
    session_factory = build_session_factory(engine)
    cache = build_cache(settings)
    channel = build_channel(settings)
    fanout = FanOut(cache, channel, topic=settings.trigger_topic)
    config_provider = config_provider or DatabaseConfigProvider(session_factory, GameConfig.from_settings(settings))
    leaderboard = LeaderboardMaterializer(session_factory, cache, settings.leaderboard_cache_ttl_seconds)
    logger.info('Services ready: cache=%s events=%s', settings.cache_backend, settings.event_backend)
    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        cache=cache,
        channel=channel,
        fanout=fanout,
        config_provider=config_provider,
        leaderboard=leaderboard,
        ledger=ScoringLedger(session_factory, config_provider, fanout, leaderboard, clock=clock),
        hints=HintVendor(session_factory, fanout, leaderboard, clock=clock),
        catalog=ChallengeCatalog(session_factory, cache, fanout, settings.challenges_cache_ttl_seconds),
        teams=TeamService(session_factory, fanout, leaderboard, settings.team_code_length, settings.max_team_size),
        admin=CompetitionAdmin(session_factory, config_provider, cache, fanout, settings.status_cache_ttl_seconds),
        profiles=ProfileReader(session_factory),
    )
