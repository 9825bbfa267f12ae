"""
Broker endpoints: contract publishing and lookup, verification results,
tags and the can-i-deploy query.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response, status
from fastapi.responses import JSONResponse

from ..core.broker import Broker
from ..core.exceptions import InvalidSelector, NotFound, StoreUnavailable
from ..core.schemas import (
    ContractRef,
    DeploymentQuery,
    DeploymentVerdict,
    ProblemDetails,
    PublishRequest,
    PublishResponse,
    TagResponse,
    Verdict,
    VerificationRef,
    VerificationReport,
)
from ..storage.contracts import TagSelector, VersionSelector
from ..webhooks.publisher import WebhookPublisher
from .deps import get_broker, get_webhooks, require_write_token

logger = logging.getLogger(__name__)

router = APIRouter()

PROBLEM_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    401: {"model": ProblemDetails, "description": "Missing or invalid write token"},
    404: {"model": ProblemDetails, "description": "Unknown participant, version or contract"},
    422: {"model": ProblemDetails, "description": "Invalid contract or request"},
    503: {"model": ProblemDetails, "description": "Store unavailable"},
}


@router.post(
    "/contracts",
    tags=["contracts"],
    summary="Publish a contract",
    description="Publish a consumer contract for a consumer version. Identical content is idempotent; "
                "changed content creates a new revision that supersedes the previous one.",
    response_model=PublishResponse,
    status_code=status.HTTP_201_CREATED,
    responses={200: {"model": PublishResponse, "description": "Identical content already published"}, **PROBLEM_RESPONSES},
    dependencies=[Depends(require_write_token)],
)
def publish_contract(
    payload: PublishRequest,
    response: Response,
    background_tasks: BackgroundTasks,
    broker: Broker = Depends(get_broker),
    webhooks: WebhookPublisher = Depends(get_webhooks),
) -> PublishResponse:
    outcome = broker.contracts.publish_document(payload.consumerVersion, payload.contract)
    for tag in payload.tags:
        broker.tags.tag(outcome.ref.consumer, outcome.ref.consumerVersion, tag)

    if outcome.created and webhooks.enabled:
        background_tasks.add_task(webhooks.contract_content_changed, outcome.ref)
    if not outcome.created:
        response.status_code = status.HTTP_200_OK
    return PublishResponse(contractRef=outcome.ref, created=outcome.created, tags=payload.tags)


@router.get(
    "/contracts/{contract_id}",
    tags=["contracts"],
    summary="Fetch a contract revision",
    description="Returns the stored canonical contract document, byte for byte.",
    responses={200: {"content": {"application/json": {}}}, 404: PROBLEM_RESPONSES[404]},
)
def fetch_contract(contract_id: int, broker: Broker = Depends(get_broker)) -> Response:
    stored = broker.contracts.fetch(contract_id)
    return Response(
        content=stored.content.encode("utf-8"),
        media_type="application/json",
        headers={
            "X-Contract-Revision": str(stored.ref.revision),
            "X-Contract-Sha": stored.ref.sha,
            "X-Contract-Current": str(stored.current).lower(),
        },
    )


@router.get(
    "/contracts/{provider}/{consumer}",
    tags=["contracts"],
    summary="Resolve the current contract",
    description="Resolve by explicit consumer `version` or by the consumer version currently carrying `tag`.",
    response_model=ContractRef,
    responses=PROBLEM_RESPONSES,
)
def get_contract(
    provider: str,
    consumer: str,
    version: Optional[str] = Query(None),
    tag: Optional[str] = Query(None),
    broker: Broker = Depends(get_broker),
) -> ContractRef:
    if bool(version) == bool(tag):
        raise InvalidSelector("Exactly one of 'version' or 'tag' must be given", context={"version": version, "tag": tag})
    selector = VersionSelector(version) if version else TagSelector(tag)
    return broker.contracts.get(provider, consumer, selector)


@router.get(
    "/contracts/{provider}/{consumer}/versions/{version}/revisions",
    tags=["contracts"],
    summary="List contract revisions",
    response_model=List[ContractRef],
    responses=PROBLEM_RESPONSES,
)
def contract_history(provider: str, consumer: str, version: str, broker: Broker = Depends(get_broker)) -> List[ContractRef]:
    return broker.contracts.history(consumer, version, provider)


@router.post(
    "/verifications",
    tags=["verifications"],
    summary="Record a verification result",
    response_model=VerificationRef,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ProblemDetails, "description": "Superseded contract revision rejected"},
               **PROBLEM_RESPONSES},
    dependencies=[Depends(require_write_token)],
)
def record_verification(
    report: VerificationReport,
    background_tasks: BackgroundTasks,
    broker: Broker = Depends(get_broker),
    webhooks: WebhookPublisher = Depends(get_webhooks),
) -> VerificationRef:
    ref = broker.verifications.record(
        report.contractId, report.providerVersion, report.outcome, report.failures, report.verifiedAt
    )
    if webhooks.enabled:
        background_tasks.add_task(webhooks.verification_published, ref)
    return ref


@router.get(
    "/verifications/latest",
    tags=["verifications"],
    summary="Latest verification result",
    response_model=VerificationRef,
    responses=PROBLEM_RESPONSES,
)
def latest_verification(
    contract_id: int = Query(..., alias="contractId"),
    provider_version: str = Query(..., alias="providerVersion"),
    broker: Broker = Depends(get_broker),
) -> VerificationRef:
    ref = broker.verifications.latest_for(contract_id, provider_version)
    if ref is None:
        raise NotFound(f"No verification of contract {contract_id} by provider version {provider_version}")
    return ref


@router.put(
    "/participants/{participant}/versions/{version}/tags/{tag}",
    tags=["tags"],
    summary="Tag a version",
    description="Points the tag at this version, moving it off any other version of the participant.",
    response_model=TagResponse,
    responses=PROBLEM_RESPONSES,
    dependencies=[Depends(require_write_token)],
)
def tag_version(participant: str, version: str, tag: str, broker: Broker = Depends(get_broker)) -> TagResponse:
    broker.tags.tag(participant, version, tag)
    return TagResponse(participant=participant, tag=tag, versions=sorted(broker.tags.versions_for_tag(participant, tag)))


@router.delete(
    "/participants/{participant}/tags/{tag}",
    tags=["tags"],
    summary="Remove a tag",
    responses=PROBLEM_RESPONSES,
    dependencies=[Depends(require_write_token)],
)
def untag(
    participant: str,
    tag: str,
    version: Optional[str] = Query(None),
    broker: Broker = Depends(get_broker),
) -> Dict[str, Any]:
    removed = broker.tags.untag(participant, tag, version)
    return {"participant": participant, "tag": tag, "removed": removed}


@router.get(
    "/participants/{participant}/tags/{tag}",
    tags=["tags"],
    summary="Versions carrying a tag",
    response_model=TagResponse,
)
def versions_for_tag(participant: str, tag: str, broker: Broker = Depends(get_broker)) -> TagResponse:
    return TagResponse(participant=participant, tag=tag, versions=sorted(broker.tags.versions_for_tag(participant, tag)))


@router.get(
    "/participants/{participant}/versions/{version}/tags",
    tags=["tags"],
    summary="Tags carried by a version",
    response_model=List[str],
)
def tags_for_version(participant: str, version: str, broker: Broker = Depends(get_broker)) -> List[str]:
    return sorted(broker.tags.tags_for_version(participant, version))


@router.post(
    "/can-i-deploy",
    tags=["deployment"],
    summary="Deployment-safety query",
    description="""
    Answers whether `participant` at `version` can be deployed as `targetTag`.

    - **yes**: every applicable contract has a successful verification of its current revision
    - **no**: at least one contract is unsatisfied (listed with a reason), or no contract
      applies and the empty-relationship policy says no
    - **unknown**: the stores could not be read (HTTP 503); never treat as yes
    """,
    response_model=DeploymentVerdict,
    responses={503: {"model": DeploymentVerdict, "description": "Verdict unknown, store unavailable"},
               404: PROBLEM_RESPONSES[404]},
)
def can_i_deploy(query: DeploymentQuery, broker: Broker = Depends(get_broker)):
    try:
        return broker.evaluator.can_i_deploy(query.participant, query.version, query.targetTag, query.allowEmpty)
    except StoreUnavailable as e:
        logger.error(f"can-i-deploy for {query.participant}@{query.version} could not complete: {e}")
        broker.metrics.record_verdict(Verdict.UNKNOWN.value)
        allow_empty = broker.policy.allow_empty if query.allowEmpty is None else query.allowEmpty
        verdict = DeploymentVerdict(
            participant=query.participant,
            version=query.version,
            targetTag=query.targetTag,
            verdict=Verdict.UNKNOWN,
            allowEmpty=allow_empty,
            detail=str(e),
        )
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=verdict.model_dump(mode="json"))
