"""
SQLAlchemy persistence beneath the contract, verification and tag stores.

Versions, contract revisions and verification results are append-only rows.
The only row that is ever updated in place is a tag pointer, plus the
single-row write sequence used as a consistency token by the verdict cache.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager, nullcontext
from datetime import datetime, timezone
from typing import Iterator, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
    text,
    update,
)
from sqlalchemy.exc import DisconnectionError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from ..core.exceptions import StoreUnavailable

logger = logging.getLogger(__name__)

STORE_ERRORS = (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ParticipantRow(Base):
    __tablename__ = "participants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class VersionRow(Base):
    __tablename__ = "versions"
    __table_args__ = (UniqueConstraint("participant_id", "number", name="uq_version_per_participant"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    participant_id: Mapped[int] = mapped_column(ForeignKey("participants.id"), index=True)
    number: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    participant: Mapped[ParticipantRow] = relationship(lazy="joined")


class ContractRevisionRow(Base):
    __tablename__ = "contract_revisions"
    __table_args__ = (
        UniqueConstraint("consumer_version_id", "provider_id", "revision", name="uq_contract_revision"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    consumer_version_id: Mapped[int] = mapped_column(ForeignKey("versions.id"), index=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("participants.id"), index=True)
    revision: Mapped[int] = mapped_column(Integer)
    sha: Mapped[str] = mapped_column(String(64), index=True)
    content: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    consumer_version: Mapped[VersionRow] = relationship(lazy="joined")
    provider: Mapped[ParticipantRow] = relationship(lazy="joined")


class VerificationRow(Base):
    __tablename__ = "verifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    contract_revision_id: Mapped[int] = mapped_column(ForeignKey("contract_revisions.id"), index=True)
    provider_version_id: Mapped[int] = mapped_column(ForeignKey("versions.id"), index=True)
    success: Mapped[bool] = mapped_column(Boolean)
    failures: Mapped[str] = mapped_column(Text, default="[]")
    verified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    stale: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    contract_revision: Mapped[ContractRevisionRow] = relationship(lazy="joined")
    provider_version: Mapped[VersionRow] = relationship(lazy="joined")


class TagRow(Base):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("participant_id", "name", name="uq_tag_per_participant"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    participant_id: Mapped[int] = mapped_column(ForeignKey("participants.id"), index=True)
    name: Mapped[str] = mapped_column(String(255))
    version_id: Mapped[int] = mapped_column(ForeignKey("versions.id"), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    version: Mapped[VersionRow] = relationship(lazy="joined")


class BrokerStateRow(Base):
    __tablename__ = "broker_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    write_sequence: Mapped[int] = mapped_column(Integer, default=0)


class Database:
    """
    Engine and session factory for the broker stores.

    `session()` opens a write transaction that commits on success and rolls
    back on error. `snapshot()` opens a read-only transaction so a query sees
    one consistent point in time across all stores. SQLite in-memory
    databases share a single connection, so all access to them is serialized.
    File-backed SQLite runs in WAL mode with explicit BEGIN, so readers keep
    their snapshot while writers commit.
    """

    def __init__(self, url: str = "sqlite://", echo: bool = False):
        self.url = url
        kwargs = {}
        self._sqlite = url.startswith("sqlite")
        self._single_connection = self._sqlite and (url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url)
        if self._sqlite:
            kwargs["connect_args"] = {"check_same_thread": False}
            if self._single_connection:
                kwargs["poolclass"] = StaticPool
        else:
            kwargs["pool_pre_ping"] = True
        self.engine = create_engine(url, echo=echo, **kwargs)
        if self._sqlite:
            self._configure_sqlite(wal=not self._single_connection)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._serial = threading.RLock() if self._single_connection else None

    def _configure_sqlite(self, wal: bool) -> None:
        # pysqlite defers BEGIN until the first DML statement, so SELECTs would
        # otherwise each see the latest commit. Take over transaction control.
        @event.listens_for(self.engine, "connect")
        def on_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            if wal:
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.close()

        @event.listens_for(self.engine, "begin")
        def on_begin(conn):
            # Writers take the write lock up front; a deferred upgrade fails
            # outright when another writer committed after our first read.
            if conn.get_execution_options().get("sqlite_write"):
                conn.exec_driver_sql("BEGIN IMMEDIATE")
            else:
                conn.exec_driver_sql("BEGIN")

    def _guard(self):
        return self._serial if self._serial is not None else nullcontext()

    def create_all(self) -> None:
        try:
            Base.metadata.create_all(self.engine)
            with self.session() as session:
                if session.get(BrokerStateRow, 1) is None:
                    session.add(BrokerStateRow(id=1, write_sequence=0))
        except STORE_ERRORS as e:
            raise StoreUnavailable(f"Could not initialise broker schema: {e}") from e
        logger.info("Broker schema ready", extra={"database": self.engine.url.render_as_string(hide_password=True)})

    @contextmanager
    def session(self) -> Iterator[Session]:
        with self._guard():
            session = self._session_factory()
            try:
                if self._sqlite:
                    session.connection(execution_options={"sqlite_write": True})
                yield session
                session.commit()
            except STORE_ERRORS as e:
                session.rollback()
                logger.error(f"Store write failed: {e}")
                raise StoreUnavailable(f"Contract store unavailable: {e}") from e
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    @contextmanager
    def snapshot(self) -> Iterator[Session]:
        with self._guard():
            session = self._session_factory()
            try:
                if not self._sqlite:
                    session.connection(execution_options={"isolation_level": "REPEATABLE READ"})
                yield session
                session.rollback()
            except STORE_ERRORS as e:
                session.rollback()
                logger.error(f"Store read failed: {e}")
                raise StoreUnavailable(f"Contract store unavailable: {e}") from e
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    @contextmanager
    def reading(self, session: Optional[Session] = None) -> Iterator[Session]:
        """Reuse a caller's snapshot when given one, otherwise open a new one."""
        if session is not None:
            yield session
        else:
            with self.snapshot() as s:
                yield s

    def ping(self) -> bool:
        try:
            with self.snapshot() as session:
                session.execute(text("SELECT 1"))
            return True
        except StoreUnavailable:
            return False

    def dispose(self) -> None:
        self.engine.dispose()


def bump_write_sequence(session: Session) -> None:
    session.execute(update(BrokerStateRow).where(BrokerStateRow.id == 1).values(write_sequence=BrokerStateRow.write_sequence + 1))


def current_write_sequence(session: Session) -> int:
    value = session.execute(select(BrokerStateRow.write_sequence).where(BrokerStateRow.id == 1)).scalar_one_or_none()
    return value or 0


def get_participant(session: Session, name: str) -> Optional[ParticipantRow]:
    return session.execute(select(ParticipantRow).where(ParticipantRow.name == name)).scalar_one_or_none()


def get_or_create_participant(session: Session, name: str) -> ParticipantRow:
    """
    Return the participant row, inserting it on first sight.

    Participants are shared across write keys, so a concurrent writer may
    insert the same name between our select and insert. The insert runs in a
    savepoint and a unique violation falls back to the committed row.
    """
    row = get_participant(session, name)
    if row is not None:
        return row
    try:
        with session.begin_nested():
            row = ParticipantRow(name=name)
            session.add(row)
    except IntegrityError:
        logger.debug(f"Participant {name} registered concurrently")
        return _reselect(get_participant(session, name), f"participant {name}")
    logger.info(f"Registered participant {name}")
    return row


def get_version(session: Session, participant: ParticipantRow, number: str) -> Optional[VersionRow]:
    return session.execute(
        select(VersionRow).where(VersionRow.participant_id == participant.id, VersionRow.number == number)
    ).scalar_one_or_none()


def get_or_create_version(session: Session, participant: ParticipantRow, number: str) -> VersionRow:
    row = get_version(session, participant, number)
    if row is not None:
        return row
    try:
        with session.begin_nested():
            row = VersionRow(participant=participant, number=number)
            session.add(row)
    except IntegrityError:
        logger.debug(f"Version {number} of {participant.name} registered concurrently")
        return _reselect(get_version(session, participant, number), f"version {number} of {participant.name}")
    return row


def _reselect(row, what: str):
    if row is None:
        raise StoreUnavailable(f"Could not register {what}: conflicting insert is not visible")
    return row
