from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.exceptions import StaleContractReference, UnknownContract
from ..core.locks import KeyedLock
from ..core.metrics import BrokerMetrics
from ..core.schemas import Outcome, VerificationFailure, VerificationRef
from .contracts import as_utc, is_current, to_contract_ref
from .database import (
    ContractRevisionRow,
    Database,
    VerificationRow,
    bump_write_sequence,
    get_or_create_version,
    get_participant,
    get_version,
    utcnow,
)

logger = logging.getLogger(__name__)


def to_verification_ref(row: VerificationRow) -> VerificationRef:
    return VerificationRef(
        id=row.id,
        contractRef=to_contract_ref(row.contract_revision),
        providerVersion=row.provider_version.number,
        outcome="success" if row.success else "failure",
        failures=[VerificationFailure(**f) for f in json.loads(row.failures or "[]")],
        verifiedAt=as_utc(row.verified_at),
        stale=row.stale,
    )


class VerificationRecorder:
    """
    Stores provider verification outcomes against contract revisions.

    The authoritative result for a (revision, provider version) pair is the
    one with the newest `verifiedAt`; ties go to the most recently inserted
    row, whose id is strictly increasing.
    """

    def __init__(self, db: Database, locks: Optional[KeyedLock] = None, metrics: Optional[BrokerMetrics] = None,
                 reject_stale: bool = False):
        self.db = db
        self.locks = locks or KeyedLock()
        self.metrics = metrics
        self.reject_stale = reject_stale

    def record(
        self,
        contract_id: int,
        provider_version: str,
        outcome: Outcome,
        failures: Iterable[Union[VerificationFailure, dict]] = (),
        verified_at: Optional[datetime] = None,
    ) -> VerificationRef:
        """
        Record one verification outcome.

        A failure outcome is stored like any other result. Recording against a
        superseded revision is accepted and flagged `stale` unless the recorder
        was configured to reject stale references.

        Raises:
            UnknownContract: if `contract_id` does not exist
            StaleContractReference: if stale references are rejected
        """
        if outcome not in ("success", "failure"):
            raise ValueError(f"Unsupported verification outcome: {outcome}")
        failure_models = [f if isinstance(f, VerificationFailure) else VerificationFailure(**f) for f in failures]

        with self.db.snapshot() as s:
            revision = s.get(ContractRevisionRow, contract_id)
            if revision is None:
                raise UnknownContract(f"Unknown contract revision {contract_id}")
            provider_name = revision.provider.name

        with self.locks.hold(("version", provider_name, provider_version)):
            with self.db.session() as session:
                revision = session.get(ContractRevisionRow, contract_id)
                stale = not is_current(session, revision)
                if stale and self.reject_stale:
                    raise StaleContractReference(
                        f"Contract revision {contract_id} has been superseded",
                        context={"contract_id": contract_id, "provider_version": provider_version},
                    )
                version = get_or_create_version(session, revision.provider, provider_version)
                row = VerificationRow(
                    contract_revision=revision,
                    provider_version=version,
                    success=outcome == "success",
                    failures=json.dumps([f.model_dump() for f in failure_models]),
                    verified_at=as_utc(verified_at) if verified_at else utcnow(),
                    stale=stale,
                    created_at=utcnow(),
                )
                session.add(row)
                session.flush()
                bump_write_sequence(session)
                ref = to_verification_ref(row)

        if stale:
            logger.warning(
                f"Verification by {provider_name}@{provider_version} recorded against superseded "
                f"contract revision {contract_id}"
            )
        else:
            logger.info(f"Recorded {outcome} verification of contract {contract_id} by {provider_name}@{provider_version}")
        if self.metrics:
            self.metrics.record_verification(outcome == "success", stale)
        return ref

    def latest_for(self, contract_id: int, provider_version: str,
                   session: Optional[Session] = None) -> Optional[VerificationRef]:
        with self.db.reading(session) as s:
            revision = s.get(ContractRevisionRow, contract_id)
            if revision is None:
                raise UnknownContract(f"Unknown contract revision {contract_id}")
            return self._latest(s, [contract_id], revision.provider.name, provider_version)

    def latest_across(self, contract_ids: Sequence[int], provider_name: str, provider_version: str,
                      session: Optional[Session] = None) -> Optional[VerificationRef]:
        """Latest result by a provider version over any of the given revisions."""
        if not contract_ids:
            return None
        with self.db.reading(session) as s:
            return self._latest(s, contract_ids, provider_name, provider_version)

    def history_for(self, contract_id: int, provider_version: Optional[str] = None,
                    session: Optional[Session] = None) -> List[VerificationRef]:
        """All results for a revision, newest first."""
        with self.db.reading(session) as s:
            revision = s.get(ContractRevisionRow, contract_id)
            if revision is None:
                raise UnknownContract(f"Unknown contract revision {contract_id}")
            stmt = select(VerificationRow).where(VerificationRow.contract_revision_id == contract_id)
            if provider_version is not None:
                version = get_version(s, revision.provider, provider_version)
                if version is None:
                    return []
                stmt = stmt.where(VerificationRow.provider_version_id == version.id)
            rows = s.execute(stmt.order_by(VerificationRow.verified_at.desc(), VerificationRow.id.desc())).scalars().all()
            return [to_verification_ref(r) for r in rows]

    def _latest(self, session: Session, contract_ids: Sequence[int], provider_name: str,
                provider_version: str) -> Optional[VerificationRef]:
        provider = get_participant(session, provider_name)
        if provider is None:
            return None
        version = get_version(session, provider, provider_version)
        if version is None:
            return None
        row = session.execute(
            select(VerificationRow)
            .where(
                VerificationRow.contract_revision_id.in_(list(contract_ids)),
                VerificationRow.provider_version_id == version.id,
            )
            .order_by(VerificationRow.verified_at.desc(), VerificationRow.id.desc())
            .limit(1)
        ).scalars().first()
        return to_verification_ref(row) if row is not None else None
