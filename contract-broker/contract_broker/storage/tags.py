from __future__ import annotations

import logging
from typing import Optional, Set

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.exceptions import UnknownParticipant, UnknownVersion
from ..core.locks import KeyedLock
from ..core.metrics import BrokerMetrics
from .database import Database, TagRow, bump_write_sequence, get_participant, get_version, utcnow

logger = logging.getLogger(__name__)


class TagIndex:
    """Mutable (participant, tag) -> version pointers."""

    def __init__(self, db: Database, locks: Optional[KeyedLock] = None, metrics: Optional[BrokerMetrics] = None):
        self.db = db
        self.locks = locks or KeyedLock()
        self.metrics = metrics

    def tag(self, participant: str, version: str, tag_name: str) -> None:
        """
        Point `tag_name` at `version`, moving it off any other version.

        Raises:
            UnknownParticipant: if the participant has never been seen
            UnknownVersion: if the version has never been published or verified
        """
        if not tag_name:
            raise ValueError("Tag name must not be empty")

        with self.locks.hold(("tag", participant, tag_name)):
            with self.db.session() as session:
                p = get_participant(session, participant)
                if p is None:
                    raise UnknownParticipant(f"Unknown participant {participant}")
                v = get_version(session, p, version)
                if v is None:
                    raise UnknownVersion(f"Unknown version {version} of {participant}")

                row = self._row(session, p.id, tag_name)
                if row is None:
                    session.add(TagRow(participant_id=p.id, name=tag_name, version=v, updated_at=utcnow()))
                    operation = "create"
                elif row.version_id != v.id:
                    previous = row.version.number
                    row.version = v
                    operation = "move"
                    logger.info(f"Moved tag {tag_name} of {participant} from {previous} to {version}")
                else:
                    operation = "noop"
                if operation != "noop":
                    bump_write_sequence(session)

        if self.metrics:
            self.metrics.record_tag(operation)

    def untag(self, participant: str, tag_name: str, version: Optional[str] = None) -> bool:
        """Remove a tag; when `version` is given only if the tag points at it."""
        with self.locks.hold(("tag", participant, tag_name)):
            with self.db.session() as session:
                p = get_participant(session, participant)
                if p is None:
                    return False
                row = self._row(session, p.id, tag_name)
                if row is None or (version is not None and row.version.number != version):
                    return False
                session.delete(row)
                bump_write_sequence(session)

        logger.info(f"Removed tag {tag_name} from {participant}")
        if self.metrics:
            self.metrics.record_tag("delete")
        return True

    def versions_for_tag(self, participant: str, tag_name: str, session: Optional[Session] = None) -> Set[str]:
        with self.db.reading(session) as s:
            p = get_participant(s, participant)
            if p is None:
                return set()
            row = self._row(s, p.id, tag_name)
            return {row.version.number} if row is not None else set()

    def tags_for_version(self, participant: str, version: str, session: Optional[Session] = None) -> Set[str]:
        with self.db.reading(session) as s:
            p = get_participant(s, participant)
            if p is None:
                return set()
            v = get_version(s, p, version)
            if v is None:
                return set()
            names = s.execute(
                select(TagRow.name).where(TagRow.participant_id == p.id, TagRow.version_id == v.id)
            ).scalars().all()
            return set(names)

    @staticmethod
    def _row(session: Session, participant_id: int, tag_name: str) -> Optional[TagRow]:
        return session.execute(
            select(TagRow).where(TagRow.participant_id == participant_id, TagRow.name == tag_name)
        ).scalar_one_or_none()
