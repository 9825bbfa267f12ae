from __future__ import annotations

import logging
from typing import Optional

from ..cache.redis_cache import VerdictCache
from ..config import Settings, get_settings
from ..storage.contracts import ContractStore
from ..storage.database import Database
from ..storage.tags import TagIndex
from ..storage.verifications import VerificationRecorder
from .evaluator import CompatibilityEvaluator, DeploymentPolicy
from .locks import KeyedLock
from .metrics import BrokerMetrics

logger = logging.getLogger(__name__)


class Broker:
    """Wires the three stores and the evaluator over one database."""

    def __init__(
        self,
        db: Database,
        policy: Optional[DeploymentPolicy] = None,
        metrics: Optional[BrokerMetrics] = None,
        cache: Optional[VerdictCache] = None,
        reject_stale: bool = False,
    ):
        self.db = db
        self.metrics = metrics or BrokerMetrics()
        self.locks = KeyedLock()
        self.contracts = ContractStore(db, self.locks, self.metrics)
        self.verifications = VerificationRecorder(db, self.locks, self.metrics, reject_stale=reject_stale)
        self.tags = TagIndex(db, self.locks, self.metrics)
        self.cache = cache
        self.evaluator = CompatibilityEvaluator(
            db, self.contracts, self.verifications, self.tags,
            policy=policy, cache=cache, metrics=self.metrics,
        )

    @property
    def policy(self) -> DeploymentPolicy:
        return self.evaluator.policy

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, metrics: Optional[BrokerMetrics] = None) -> "Broker":
        settings = settings or get_settings()
        db = Database(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
        db.create_all()
        broker = cls(
            db,
            policy=DeploymentPolicy.from_settings(settings),
            metrics=metrics,
            cache=VerdictCache.from_settings(settings),
            reject_stale=settings.REJECT_STALE_VERIFICATIONS,
        )
        logger.info(
            "Broker initialised",
            extra={
                "required_environments": sorted(broker.policy.required_tags),
                "allow_empty": broker.policy.allow_empty,
                "verdict_cache": broker.cache is not None,
            }
        )
        return broker

    def close(self) -> None:
        self.db.dispose()
