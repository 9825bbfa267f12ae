"""
Deployment-safety evaluation (can-i-deploy).

A candidate version may be deployed under a tag when every contract
relationship implied by that tag, plus any required environment tags, is
backed by a successful verification of the current contract revision.
Both sides of the participant are checked: contracts where it is the
provider, and contracts its candidate version produced as a consumer.

The evaluator only reads. Each query runs inside a single store snapshot.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import FrozenSet, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from ..cache.redis_cache import VerdictCache
from ..config import Settings
from ..storage.contracts import ContractStore
from ..storage.database import Database, current_write_sequence, get_participant
from ..storage.tags import TagIndex
from ..storage.verifications import VerificationRecorder
from .exceptions import UnknownParticipant
from .metrics import BrokerMetrics
from .schemas import ContractRef, DeploymentVerdict, UnsatisfiedContract, UnsatisfiedReason, Verdict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeploymentPolicy:
    """
    Which tags a deployment must be compatible with, and what to answer
    when no contract applies at all.

    `allow_empty=True` lets a participant without relationships deploy;
    `allow_empty=False` treats the absence of evidence as unsafe.
    """
    required_tags: FrozenSet[str] = field(default_factory=frozenset)
    allow_empty: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "DeploymentPolicy":
        return cls(required_tags=settings.required_environments(), allow_empty=settings.ALLOW_EMPTY_DEPLOYMENTS)

    def relevant_tags(self, target_tag: str) -> List[str]:
        return sorted({target_tag} | set(self.required_tags))


@dataclass
class ContractCheck:
    ref: ContractRef
    tag: str
    provider_version: Optional[str]
    reason: Optional[UnsatisfiedReason]

    @property
    def satisfied(self) -> bool:
        return self.reason is None


class CompatibilityEvaluator:
    def __init__(
        self,
        db: Database,
        contracts: ContractStore,
        verifications: VerificationRecorder,
        tags: TagIndex,
        policy: Optional[DeploymentPolicy] = None,
        cache: Optional[VerdictCache] = None,
        metrics: Optional[BrokerMetrics] = None,
    ):
        self.db = db
        self.contracts = contracts
        self.verifications = verifications
        self.tags = tags
        self.policy = policy or DeploymentPolicy()
        self.cache = cache
        self.metrics = metrics

    def can_i_deploy(self, participant: str, version: str, target_tag: str,
                     allow_empty: Optional[bool] = None) -> DeploymentVerdict:
        """
        Decide whether `participant` at `version` may be deployed as `target_tag`.

        Args:
            participant: participant name
            version: candidate version; an unknown version is not an error, it
                simply has no verifications
            target_tag: the tag (environment or branch) being deployed to
            allow_empty: per-query override of the empty-relationship policy

        Raises:
            UnknownParticipant: if the participant has never been seen
            StoreUnavailable: if the stores cannot be read; callers must
                report this as an unknown verdict, never as a yes
        """
        policy = self.policy if allow_empty is None else replace(self.policy, allow_empty=allow_empty)
        tags = policy.relevant_tags(target_tag)

        if self.metrics:
            with self.metrics.time_evaluation():
                verdict = self._evaluate(participant, version, target_tag, tags, policy)
            self.metrics.record_verdict(verdict.verdict.value)
        else:
            verdict = self._evaluate(participant, version, target_tag, tags, policy)

        logger.info(
            f"can-i-deploy {participant}@{version} to {target_tag}: {verdict.verdict.value}",
            extra={"checked": verdict.checked, "unsatisfied": len(verdict.unsatisfied)}
        )
        return verdict

    def _evaluate(self, participant: str, version: str, target_tag: str, tags: List[str],
                  policy: DeploymentPolicy) -> DeploymentVerdict:
        with self.db.snapshot() as session:
            if get_participant(session, participant) is None:
                raise UnknownParticipant(f"Unknown participant {participant}")

            cache_key = None
            if self.cache is not None:
                cache_key = self.cache.verdict_key(
                    participant, version, target_tag, tags, policy.allow_empty, current_write_sequence(session)
                )
                cached = self.cache.get(cache_key)
                if self.metrics:
                    self.metrics.record_cache_lookup(cached is not None)
                if cached is not None:
                    return cached

            checks = self.provider_checks(session, participant, version, tags)
            checks += self.consumer_checks(session, participant, version, tags)
            verdict = self._decide(participant, version, target_tag, checks, policy)

            if cache_key is not None:
                self.cache.set(cache_key, verdict)
            return verdict

    def provider_checks(self, session: Session, provider: str, candidate: str, tags: List[str]) -> List[ContractCheck]:
        """Contracts from consumer versions carrying any relevant tag, against the candidate provider version."""
        checks: List[ContractCheck] = []
        seen: Set[int] = set()
        for consumer in self.contracts.consumers_of(provider, session=session):
            for tag in tags:
                for consumer_version in sorted(self.tags.versions_for_tag(consumer, tag, session=session)):
                    ref = self.contracts.current(consumer, consumer_version, provider, session=session)
                    if ref is None or ref.id in seen:
                        continue
                    seen.add(ref.id)
                    reason = self._check(session, ref, candidate)
                    checks.append(ContractCheck(ref=ref, tag=tag, provider_version=candidate, reason=reason))
        return checks

    def consumer_checks(self, session: Session, consumer: str, candidate: str, tags: List[str]) -> List[ContractCheck]:
        """Contracts the candidate consumer version produced, against provider versions carrying each tag."""
        checks: List[ContractCheck] = []
        seen: Set[Tuple[int, str]] = set()
        for ref in self.contracts.current_for_version(consumer, candidate, session=session):
            for tag in tags:
                provider_versions = sorted(self.tags.versions_for_tag(ref.provider, tag, session=session))
                if not provider_versions:
                    checks.append(ContractCheck(
                        ref=ref, tag=tag, provider_version=None, reason=UnsatisfiedReason.NO_VERIFICATION
                    ))
                    continue
                for provider_version in provider_versions:
                    if (ref.id, provider_version) in seen:
                        continue
                    seen.add((ref.id, provider_version))
                    reason = self._check(session, ref, provider_version)
                    checks.append(ContractCheck(ref=ref, tag=tag, provider_version=provider_version, reason=reason))
        return checks

    def _check(self, session: Session, ref: ContractRef, provider_version: str) -> Optional[UnsatisfiedReason]:
        latest = self.verifications.latest_across([ref.id], ref.provider, provider_version, session=session)
        if latest is not None:
            return None if latest.outcome == "success" else UnsatisfiedReason.VERIFICATION_FAILED

        superseded = [
            rid for rid in self.contracts.revision_ids(ref.consumer, ref.consumerVersion, ref.provider, session=session)
            if rid != ref.id
        ]
        if self.verifications.latest_across(superseded, ref.provider, provider_version, session=session) is not None:
            return UnsatisfiedReason.SUPERSEDED_REVISION
        return UnsatisfiedReason.NO_VERIFICATION

    @staticmethod
    def _decide(participant: str, version: str, target_tag: str, checks: List[ContractCheck],
                policy: DeploymentPolicy) -> DeploymentVerdict:
        unsatisfied = [
            UnsatisfiedContract(contractRef=c.ref, reason=c.reason, tag=c.tag, providerVersion=c.provider_version)
            for c in checks if not c.satisfied
        ]
        detail = None
        if not checks:
            verdict = Verdict.YES if policy.allow_empty else Verdict.NO
            detail = f"No contracts apply to {participant}@{version} for {target_tag}"
        else:
            verdict = Verdict.NO if unsatisfied else Verdict.YES
        return DeploymentVerdict(
            participant=participant,
            version=version,
            targetTag=target_tag,
            verdict=verdict,
            unsatisfied=unsatisfied,
            checked=len(checks),
            allowEmpty=policy.allow_empty,
            detail=detail,
        )
