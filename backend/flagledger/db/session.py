from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from flagledger.db.base import Base


def _serialize_sqlite_writers(engine: Engine) -> None:
    # pysqlite ignores SELECT ... FOR UPDATE; take the write lock at BEGIN instead.
    @event.listens_for(engine, 'connect')
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _begin_immediate(conn):
        conn.exec_driver_sql('BEGIN IMMEDIATE')


def build_engine(database_url: str, echo: bool = False) -> Engine:
    if database_url.startswith('sqlite'):
        kwargs = {'connect_args': {'check_same_thread': False, 'timeout': 30}}
        if ':memory:' in database_url or database_url.rstrip('/').endswith('sqlite:'):
            kwargs['poolclass'] = StaticPool
            return create_engine(database_url, echo=echo, **kwargs)
        engine = create_engine(database_url, echo=echo, **kwargs)
        _serialize_sqlite_writers(engine)
        return engine
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_schema(engine: Engine) -> None:
    from flagledger.models import schema  # noqa: F401

    Base.metadata.create_all(bind=engine)
