from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.documents import build_document, canonical_json, content_sha, validate_document
from ..core.exceptions import NotFound, UnknownContract, UnknownParticipant, UnknownVersion
from ..core.locks import KeyedLock
from ..core.metrics import BrokerMetrics
from ..core.schemas import ContractDocument, ContractRef, Interaction, StoredContract
from .database import (
    ContractRevisionRow,
    Database,
    ParticipantRow,
    TagRow,
    VersionRow,
    bump_write_sequence,
    get_or_create_participant,
    get_or_create_version,
    get_participant,
    get_version,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VersionSelector:
    version: str


@dataclass(frozen=True)
class TagSelector:
    tag: str


Selector = Union[VersionSelector, TagSelector]


@dataclass(frozen=True)
class PublishOutcome:
    ref: ContractRef
    created: bool


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_contract_ref(row: ContractRevisionRow) -> ContractRef:
    return ContractRef(
        id=row.id,
        consumer=row.consumer_version.participant.name,
        consumerVersion=row.consumer_version.number,
        provider=row.provider.name,
        revision=row.revision,
        sha=row.sha,
        createdAt=as_utc(row.created_at),
    )


def current_revision_row(session: Session, consumer_version_id: int, provider_id: int) -> Optional[ContractRevisionRow]:
    return session.execute(
        select(ContractRevisionRow)
        .where(
            ContractRevisionRow.consumer_version_id == consumer_version_id,
            ContractRevisionRow.provider_id == provider_id,
        )
        .order_by(ContractRevisionRow.revision.desc())
        .limit(1)
    ).scalars().first()


def is_current(session: Session, row: ContractRevisionRow) -> bool:
    current = current_revision_row(session, row.consumer_version_id, row.provider_id)
    return current is not None and current.id == row.id


class ContractStore:
    """
    Append-only log of contract revisions keyed by consumer version and provider.

    Publishing identical content for a key is a no-op returning the current
    revision. Publishing different content appends the next revision, which
    supersedes the previous one for every later lookup.
    """

    def __init__(self, db: Database, locks: Optional[KeyedLock] = None, metrics: Optional[BrokerMetrics] = None):
        self.db = db
        self.locks = locks or KeyedLock()
        self.metrics = metrics

    def publish(
        self,
        consumer_name: str,
        consumer_version: str,
        provider_name: str,
        interactions: Iterable[Union[Interaction, Mapping[str, Any]]],
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> ContractRef:
        document = build_document(consumer_name, provider_name, interactions, metadata)
        return self._store(document, consumer_version).ref

    def publish_document(self, consumer_version: str, raw: Mapping[str, Any]) -> PublishOutcome:
        """Validate a raw contract document and publish it for `consumer_version`."""
        document = validate_document(raw)
        return self._store(document, consumer_version)

    def _store(self, document: ContractDocument, consumer_version: str) -> PublishOutcome:
        consumer_name = document.consumer.name
        provider_name = document.provider.name
        content = canonical_json(document)
        sha = content_sha(content)

        with self.locks.hold(("version", consumer_name, consumer_version)):
            with self.db.session() as session:
                consumer = get_or_create_participant(session, consumer_name)
                provider = get_or_create_participant(session, provider_name)
                version = get_or_create_version(session, consumer, consumer_version)
                current = current_revision_row(session, version.id, provider.id)

                if current is not None and current.sha == sha:
                    outcome = PublishOutcome(ref=to_contract_ref(current), created=False)
                else:
                    row = ContractRevisionRow(
                        consumer_version=version,
                        provider=provider,
                        revision=current.revision + 1 if current is not None else 1,
                        sha=sha,
                        content=content,
                        created_at=utcnow(),
                    )
                    session.add(row)
                    session.flush()
                    bump_write_sequence(session)
                    outcome = PublishOutcome(ref=to_contract_ref(row), created=True)

        if outcome.created:
            logger.info(
                f"Published contract {consumer_name}@{consumer_version} -> {provider_name} "
                f"revision {outcome.ref.revision}"
            )
        else:
            logger.debug(f"Contract {consumer_name}@{consumer_version} -> {provider_name} unchanged")
        if self.metrics:
            self.metrics.record_publish(outcome.created)
        return outcome

    def get(self, provider_name: str, consumer_name: str, selector: Selector,
            session: Optional[Session] = None) -> ContractRef:
        """
        Resolve the current contract revision between a consumer and a provider.

        Args:
            provider_name: provider participant name
            consumer_name: consumer participant name
            selector: an explicit consumer version or the consumer's tag

        Raises:
            NotFound: (or one of its subclasses) when nothing matches
        """
        with self.db.reading(session) as s:
            provider = self._participant(s, provider_name)
            consumer = self._participant(s, consumer_name)

            if isinstance(selector, VersionSelector):
                version = get_version(s, consumer, selector.version)
                if version is None:
                    raise UnknownVersion(f"Unknown version {selector.version} of {consumer_name}")
            else:
                tag = s.execute(
                    select(TagRow).where(TagRow.participant_id == consumer.id, TagRow.name == selector.tag)
                ).scalar_one_or_none()
                if tag is None:
                    raise NotFound(f"No version of {consumer_name} is tagged {selector.tag}")
                version = tag.version

            row = current_revision_row(s, version.id, provider.id)
            if row is None:
                raise UnknownContract(
                    f"No contract from {consumer_name}@{version.number} to {provider_name}"
                )
            return to_contract_ref(row)

    def fetch(self, contract_id: int, session: Optional[Session] = None) -> StoredContract:
        with self.db.reading(session) as s:
            row = s.get(ContractRevisionRow, contract_id)
            if row is None:
                raise UnknownContract(f"Unknown contract revision {contract_id}")
            return StoredContract(ref=to_contract_ref(row), current=is_current(s, row), content=row.content)

    def history(self, consumer_name: str, consumer_version: str, provider_name: str,
                session: Optional[Session] = None) -> List[ContractRef]:
        """All revisions for one consumer version and provider, oldest first."""
        with self.db.reading(session) as s:
            rows = self._revision_rows(s, consumer_name, consumer_version, provider_name)
            if not rows:
                raise UnknownContract(
                    f"No contract from {consumer_name}@{consumer_version} to {provider_name}"
                )
            return [to_contract_ref(r) for r in rows]

    def current(self, consumer_name: str, consumer_version: str, provider_name: str,
                session: Optional[Session] = None) -> Optional[ContractRef]:
        with self.db.reading(session) as s:
            rows = self._revision_rows(s, consumer_name, consumer_version, provider_name)
            return to_contract_ref(rows[-1]) if rows else None

    def revision_ids(self, consumer_name: str, consumer_version: str, provider_name: str,
                     session: Optional[Session] = None) -> List[int]:
        with self.db.reading(session) as s:
            return [r.id for r in self._revision_rows(s, consumer_name, consumer_version, provider_name)]

    def current_for_version(self, consumer_name: str, consumer_version: str,
                            session: Optional[Session] = None) -> List[ContractRef]:
        """Current revision of every contract a consumer version has published."""
        with self.db.reading(session) as s:
            consumer = get_participant(s, consumer_name)
            if consumer is None:
                return []
            version = get_version(s, consumer, consumer_version)
            if version is None:
                return []
            rows = s.execute(
                select(ContractRevisionRow)
                .where(ContractRevisionRow.consumer_version_id == version.id)
                .order_by(ContractRevisionRow.provider_id, ContractRevisionRow.revision)
            ).scalars().all()
            latest: Dict[int, ContractRevisionRow] = {}
            for row in rows:
                latest[row.provider_id] = row
            return sorted((to_contract_ref(r) for r in latest.values()), key=lambda ref: ref.provider)

    def consumers_of(self, provider_name: str, session: Optional[Session] = None) -> List[str]:
        with self.db.reading(session) as s:
            provider = get_participant(s, provider_name)
            if provider is None:
                return []
            names = s.execute(
                select(ParticipantRow.name)
                .join(VersionRow, VersionRow.participant_id == ParticipantRow.id)
                .join(ContractRevisionRow, ContractRevisionRow.consumer_version_id == VersionRow.id)
                .where(ContractRevisionRow.provider_id == provider.id)
                .distinct()
            ).scalars().all()
            return sorted(names)

    def _participant(self, session: Session, name: str) -> ParticipantRow:
        row = get_participant(session, name)
        if row is None:
            raise UnknownParticipant(f"Unknown participant {name}")
        return row

    def _revision_rows(self, session: Session, consumer_name: str, consumer_version: str,
                       provider_name: str) -> List[ContractRevisionRow]:
        consumer = get_participant(session, consumer_name)
        provider = get_participant(session, provider_name)
        if consumer is None or provider is None:
            return []
        version = get_version(session, consumer, consumer_version)
        if version is None:
            return []
        return list(session.execute(
            select(ContractRevisionRow)
            .where(
                ContractRevisionRow.consumer_version_id == version.id,
                ContractRevisionRow.provider_id == provider.id,
            )
            .order_by(ContractRevisionRow.revision)
        ).scalars().all())
