from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


Outcome = Literal["success", "failure"]
MatchKind = Literal["type", "regex", "equality", "include"]


class Pacticipant(BaseModel):
    name: str = Field(..., min_length=1, description="Participant name", examples=["web-client", "orders-service"])


class MatchingRule(BaseModel):
    """
    One Pact-style matching rule.

    `type` accepts any value of the same JSON type as the example (and, for
    arrays, checks every element against the first example element), `regex`
    requires a string matching `regex`, `include` requires a substring and
    `equality` forces a literal comparison below a `type` rule.
    """
    match: MatchKind = "type"
    regex: Optional[str] = None
    value: Optional[str] = None
    min: Optional[int] = Field(None, ge=0)
    max: Optional[int] = Field(None, ge=0)


class RequestMatcher(BaseModel):
    method: str = Field(..., min_length=1, examples=["GET", "POST"])
    path: str = Field(..., min_length=1, examples=["/orders/1"])
    query: Optional[str] = Field(None, examples=["status=open&limit=10"])
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None
    matchingRules: Dict[str, MatchingRule] = Field(default_factory=dict)


class ResponseMatcher(BaseModel):
    status: int = Field(..., ge=100, le=599)
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None
    matchingRules: Dict[str, MatchingRule] = Field(default_factory=dict)


class Interaction(BaseModel):
    """
    A single request/response expectation inside a contract.

    `request` and `response` are optional at the model level so that a
    missing matcher is reported as an InvalidContract issue naming the
    interaction rather than as a generic validation error.
    """
    description: str = Field(..., min_length=1, examples=["a request for order 1"])
    providerState: Optional[str] = Field(None, examples=["order 1 exists"])
    providerStateParams: Optional[Dict[str, Any]] = None
    request: Optional[RequestMatcher] = None
    response: Optional[ResponseMatcher] = None


class ContractDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    consumer: Pacticipant
    provider: Pacticipant
    interactions: List[Interaction] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ContractRef(BaseModel):
    """Identifies one immutable revision of a consumer version's contract with a provider."""
    id: int = Field(..., description="Global revision identifier")
    consumer: str
    consumerVersion: str
    provider: str
    revision: int = Field(..., description="Revision number within (consumer, consumerVersion, provider)")
    sha: str = Field(..., description="SHA-256 of the canonical contract document")
    createdAt: datetime


class StoredContract(BaseModel):
    ref: ContractRef
    current: bool
    content: str = Field(..., description="Canonical JSON document as stored")


class VerificationFailure(BaseModel):
    interaction: str = Field(..., examples=["a request for order 1"])
    description: str = Field(..., examples=["field $.id expected '1' but received '2'"])


class VerificationRef(BaseModel):
    id: int
    contractRef: ContractRef
    providerVersion: str
    outcome: Outcome
    failures: List[VerificationFailure] = Field(default_factory=list)
    verifiedAt: datetime
    stale: bool = Field(False, description="True when recorded against a superseded contract revision")


class Verdict(str, Enum):
    YES = "yes"
    NO = "no"
    UNKNOWN = "unknown"


class UnsatisfiedReason(str, Enum):
    NO_VERIFICATION = "no verification found"
    VERIFICATION_FAILED = "latest verification failed"
    SUPERSEDED_REVISION = "verification is for a superseded contract revision"


class UnsatisfiedContract(BaseModel):
    contractRef: ContractRef
    reason: UnsatisfiedReason
    tag: str
    providerVersion: Optional[str] = None


class DeploymentVerdict(BaseModel):
    participant: str
    version: str
    targetTag: str
    verdict: Verdict
    unsatisfied: List[UnsatisfiedContract] = Field(default_factory=list)
    checked: int = Field(0, description="Number of contract checks evaluated")
    allowEmpty: bool
    detail: Optional[str] = None

    @property
    def deployable(self) -> bool:
        return self.verdict == Verdict.YES


# API payloads

class PublishRequest(BaseModel):
    consumerVersion: str = Field(..., min_length=1, examples=["1.4.2", "9f1c2ab"])
    contract: Dict[str, Any] = Field(..., description="Contract document")
    tags: List[str] = Field(default_factory=list, description="Tags to apply to the consumer version after publishing")


class PublishResponse(BaseModel):
    contractRef: ContractRef
    created: bool
    tags: List[str] = Field(default_factory=list)


class VerificationReport(BaseModel):
    """Outcome of running a provider version against one contract revision."""
    contractId: int
    providerVersion: str = Field(..., min_length=1)
    outcome: Outcome
    failures: List[VerificationFailure] = Field(default_factory=list)
    verifiedAt: Optional[datetime] = None


class DeploymentQuery(BaseModel):
    participant: str = Field(..., min_length=1)
    version: str = Field(..., min_length=1)
    targetTag: str = Field(..., min_length=1, examples=["production", "main"])
    allowEmpty: Optional[bool] = Field(None, description="Override the configured empty-relationship policy")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"participant": "orders-service", "version": "2.3.0", "targetTag": "production"}
            ]
        }
    }


class TagResponse(BaseModel):
    participant: str
    tag: str
    versions: List[str]


class ProblemDetails(BaseModel):
    """
    RFC 7807 Problem Details for HTTP APIs.
    """
    type: Optional[str] = Field(
        "about:blank",
        description="A URI reference that identifies the problem type"
    )
    title: Optional[str] = Field(
        None,
        description="A short, human-readable summary of the problem type"
    )
    status: Optional[int] = Field(
        None,
        description="The HTTP status code"
    )
    detail: Optional[str] = Field(
        None,
        description="A human-readable explanation specific to this occurrence"
    )
    instance: Optional[str] = Field(
        None,
        description="A URI reference that identifies the specific occurrence"
    )
    errorCode: Optional[str] = None
    issues: List[str] = Field(default_factory=list)
