"""
Contract document codec.

Raw documents are checked against the bundled JSON schema, parsed into
pydantic models and serialized to a canonical JSON form. The canonical form
is what gets stored and hashed, so two documents with the same semantic
content produce the same bytes and the same SHA regardless of whitespace or
key order in the original upload.
"""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import yaml
from jsonschema import Draft202012Validator
from pydantic import ValidationError

from .errors import BrokerErrorCode
from .exceptions import InvalidContract
from .schemas import ContractDocument, Interaction, Pacticipant

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent.parent / "schemas" / "contract.schema.json"
DEFAULT_SPEC_VERSION = "2.0.0"

_validator: Optional[Draft202012Validator] = None


def _schema_validator() -> Draft202012Validator:
    global _validator
    if _validator is None:
        with SCHEMA_PATH.open("r", encoding="utf-8") as f:
            _validator = Draft202012Validator(json.load(f))
    return _validator


def _format_pydantic_errors(exc: ValidationError) -> List[str]:
    return [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]


def validate_document(raw: Mapping[str, Any]) -> ContractDocument:
    """
    Validate a raw contract document and return its model.

    Raises:
        InvalidContract: if the document violates the schema or the
            interaction rules enforced by `normalize_interactions`
    """
    if not isinstance(raw, Mapping):
        raise InvalidContract("Contract document must be a JSON object")

    errors = sorted(_schema_validator().iter_errors(dict(raw)), key=lambda e: list(e.path))
    if errors:
        issues = [f"{'.'.join(str(p) for p in e.path) or '<root>'}: {e.message}" for e in errors]
        exc = InvalidContract(f"Contract document failed schema validation: {'; '.join(issues)}", issues)
        exc.code = BrokerErrorCode.CONTRACT_SCHEMA_VIOLATION
        raise exc

    try:
        document = ContractDocument.model_validate(dict(raw))
    except ValidationError as e:
        issues = _format_pydantic_errors(e)
        raise InvalidContract(f"Contract document is malformed: {'; '.join(issues)}", issues) from e

    document.interactions = normalize_interactions(document.interactions)
    document.metadata = normalize_metadata(document.metadata)
    return document


def normalize_interactions(interactions: Iterable[Union[Interaction, Mapping[str, Any]]]) -> List[Interaction]:
    """Coerce interactions to models and enforce the publish-time invariants."""
    result: List[Interaction] = []
    issues: List[str] = []
    for index, item in enumerate(interactions or []):
        if isinstance(item, Interaction):
            interaction = item
        else:
            try:
                interaction = Interaction.model_validate(item)
            except ValidationError as e:
                issues.extend(f"interactions.{index}.{msg}" for msg in _format_pydantic_errors(e))
                continue
        if interaction.request is None:
            issues.append(f"interaction '{interaction.description}' lacks a request matcher")
        if interaction.response is None:
            issues.append(f"interaction '{interaction.description}' lacks a response matcher")
        result.append(interaction)

    if not result and not issues:
        raise InvalidContract("Contract must contain at least one interaction")

    seen: Dict[tuple, int] = {}
    for index, interaction in enumerate(result):
        key = (interaction.description, interaction.providerState)
        if key in seen:
            issues.append(
                f"interactions {seen[key]} and {index} share description '{interaction.description}'"
                f" and provider state '{interaction.providerState}'"
            )
        else:
            seen[key] = index

    if issues:
        raise InvalidContract(f"Invalid contract: {'; '.join(issues)}", issues)
    return result


def normalize_metadata(metadata: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Fold the `specVersion` shorthand into `pactSpecification.version`."""
    data = dict(metadata or {})
    spec_version = data.pop("specVersion", None)
    pact_spec = dict(data.get("pactSpecification") or {})
    pact_spec["version"] = str(pact_spec.get("version") or spec_version or DEFAULT_SPEC_VERSION)
    data["pactSpecification"] = pact_spec
    return data


def build_document(
    consumer_name: str,
    provider_name: str,
    interactions: Iterable[Union[Interaction, Mapping[str, Any]]],
    metadata: Optional[Mapping[str, Any]] = None,
) -> ContractDocument:
    if not consumer_name or not provider_name:
        raise InvalidContract("Consumer and provider names are required")
    return ContractDocument(
        consumer=Pacticipant(name=consumer_name),
        provider=Pacticipant(name=provider_name),
        interactions=normalize_interactions(interactions),
        metadata=normalize_metadata(metadata),
    )


def canonical_json(document: ContractDocument) -> str:
    payload = document.model_dump(mode="json", exclude_none=True)
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def content_sha(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def load_contract_file(path: Union[str, Path]) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise InvalidContract(f"Contract file not found: {p}")
    with p.open("r", encoding="utf-8") as f:
        if p.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(f)
        else:
            data = json.load(f)
    if not isinstance(data, dict):
        raise InvalidContract(f"Contract file {p} does not hold a contract object")
    logger.debug(f"Loaded contract file {path}")
    return data
