from __future__ import annotations

from collections.abc import Iterator

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from wavetrack.config import settings


def _install_sqlite_transaction_hooks(engine: Engine, *, immediate: bool = False) -> None:
    # pysqlite defers BEGIN until the first DML statement, which breaks SAVEPOINT.
    @event.listens_for(engine, 'connect')
    def _on_connect(dbapi_connection, _connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _on_begin(conn) -> None:
        conn.exec_driver_sql('BEGIN IMMEDIATE' if immediate else 'BEGIN')


def build_engine(url: str, *, echo: bool = False, sqlite_immediate: bool = False) -> Engine:
    if url.startswith('sqlite'):
        kwargs: dict = {'connect_args': {'check_same_thread': False, 'timeout': 30}}
        if ':memory:' in url or url in {'sqlite://', 'sqlite+pysqlite://'}:
            kwargs['poolclass'] = StaticPool
        engine = create_engine(url, echo=echo, **kwargs)
        _install_sqlite_transaction_hooks(engine, immediate=sqlite_immediate)
        return engine
    return create_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
        connect_args={'connect_timeout': settings.db_connect_timeout_seconds},
    )


engine = build_engine(settings.database_url_normalized, echo=settings.sql_echo)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_db() -> Iterator[Session]:
    with SessionLocal() as db:
        yield db
