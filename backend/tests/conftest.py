from datetime import datetime, timedelta

from fastapi.testclient import TestClient
import pytest
from sqlalchemy import func, select

from flagledger.config.settings import Settings
from flagledger.db.session import init_schema
from flagledger.main import create_app
from flagledger.models.schema import Challenge, Hint, Role, Team, User
from flagledger.security.jwt import create_access_token
from flagledger.services.events import LocalEventChannel
from flagledger.services.identity import Caller
from flagledger.services.runtime import build_services
from flagledger.services.teams import generate_code


class FixedClock:
    def __init__(self, start: datetime = datetime(2026, 3, 1, 12, 0, 0)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_settings(**overrides) -> Settings:
    values = {
        'database_url': 'sqlite://',
        'cache_backend': 'memory',
        'event_backend': 'local',
        'jwt_secret': 'test-secret',
    }
    values.update(overrides)
    return Settings(**values)


class RecordingChannel(LocalEventChannel):
    def __init__(self) -> None:
        super().__init__()
        self.published = []

    def publish(self, topic, event):
        self.published.append((topic, event))
        super().publish(topic, event)


class Seeder:
    """Writes fixture rows straight to the database, bypassing the services."""

    def __init__(self, services) -> None:
        self.services = services

    def user(self, name: str, role: str = Role.competitor) -> Caller:
        with self.services.session_factory() as session, session.begin():
            user = User(email=f'{name}@example.com', name=name, role=role)
            session.add(user)
            session.flush()
            return Caller(user_id=user.id, team_id=None, role=role)

    def team(self, name: str, *members: Caller, points: int = 0) -> str:
        with self.services.session_factory() as session, session.begin():
            team = Team(name=name, code=generate_code(), leader_id=members[0].user_id, points=points)
            session.add(team)
            session.flush()
            for member in members:
                session.get(User, member.user_id).team_id = team.id
            return team.id

    def challenge(self, points: int = 100, flag: str = 'flag{ok}', visible: bool = True, title: str = 'Warmup') -> str:
        with self.services.session_factory() as session, session.begin():
            challenge = Challenge(
                title=title,
                description='',
                category='misc',
                points=points,
                initial_points=points,
                flag=flag,
                visible=visible,
            )
            session.add(challenge)
            session.flush()
            return challenge.id

    def hint(self, challenge_id: str, cost: int = 30, content: str = 'Look closer') -> str:
        with self.services.session_factory() as session, session.begin():
            hint = Hint(challenge_id=challenge_id, content=content, cost=cost)
            session.add(hint)
            session.flush()
            return hint.id

    def get(self, model, key):
        with self.services.session_factory() as session:
            return session.get(model, key)

    def count(self, model, *criteria) -> int:
        with self.services.session_factory() as session:
            return session.scalar(select(func.count()).select_from(model).where(*criteria))

    def headers(self, caller: Caller) -> dict[str, str]:
        with self.services.session_factory() as session:
            user = session.get(User, caller.user_id)
            token = create_access_token(user.id, user.email, user.name, user.role, settings=self.services.settings)
        return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def services(clock):
    services = build_services(make_settings(), clock=clock)
    init_schema(services.engine)
    yield services
    services.engine.dispose()


@pytest.fixture
def seed(services) -> Seeder:
    return Seeder(services)


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as client:
        yield client


@pytest.fixture
def published(services, monkeypatch) -> list:
    channel = RecordingChannel()
    monkeypatch.setattr(services.fanout, 'channel', channel)
    return channel.published


@pytest.fixture
def disk_services(tmp_path, clock):
    # A file database, so concurrent sessions get their own connections.
    services = build_services(make_settings(database_url=f'sqlite:///{tmp_path / "flagledger.db"}'), clock=clock)
    init_schema(services.engine)
    yield services
    services.engine.dispose()


@pytest.fixture
def disk_seed(disk_services) -> Seeder:
    return Seeder(disk_services)
