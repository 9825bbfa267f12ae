"""
Provider verification runner.

Replays every interaction of a contract against a running provider: the
provider state is set up through the provider's state-setup endpoint, the
expected request is sent and the response is matched. The result is a
verification report that callers hand to the verification recorder. This
runs outside the broker stores and is the only place that talks to a
provider over the network.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

import httpx

from .documents import validate_document
from .matching import match_response
from .schemas import ContractDocument, ContractRef, Interaction, StoredContract, VerificationFailure, VerificationReport

logger = logging.getLogger(__name__)


class ProviderVerifier:
    """
    Verifies a provider against contract documents.

    Args:
        client: HTTP client whose base URL points at the provider
        state_setup_path: path (or absolute URL) of the provider-state setup
            endpoint; `None` skips state setup
    """

    def __init__(self, client: httpx.Client, state_setup_path: Optional[str] = "/_pact/provider-states"):
        self.client = client
        self.state_setup_path = state_setup_path

    def verify_stored(self, stored: StoredContract, provider_version: str) -> VerificationReport:
        document = validate_document(json.loads(stored.content))
        return self.verify(document, stored.ref, provider_version)

    def verify(self, document: ContractDocument, ref: ContractRef, provider_version: str) -> VerificationReport:
        failures: List[VerificationFailure] = []
        for interaction in document.interactions:
            for mismatch in self.verify_interaction(interaction):
                failures.append(VerificationFailure(interaction=interaction.description, description=mismatch))

        outcome = "failure" if failures else "success"
        logger.info(
            f"Verified {len(document.interactions)} interaction(s) of {ref.consumer}@{ref.consumerVersion} "
            f"against {ref.provider}@{provider_version}: {outcome}"
        )
        return VerificationReport(
            contractId=ref.id,
            providerVersion=provider_version,
            outcome=outcome,
            failures=failures,
            verifiedAt=datetime.now(timezone.utc),
        )

    def verify_interaction(self, interaction: Interaction) -> List[str]:
        if interaction.providerState and self.state_setup_path:
            problem = self._setup_state(interaction)
            if problem:
                return [problem]

        request = interaction.request
        url = request.path + (f"?{request.query}" if request.query else "")
        try:
            response = self.client.request(
                request.method.upper(),
                url,
                headers=request.headers or None,
                json=request.body if request.body is not None else None,
            )
        except httpx.HTTPError as e:
            logger.warning(f"Request for interaction '{interaction.description}' failed: {e}")
            return [f"request {request.method.upper()} {url} failed: {e}"]

        return match_response(interaction.response, response.status_code, response.headers, self._body(response))

    def _setup_state(self, interaction: Interaction) -> Optional[str]:
        payload = {"state": interaction.providerState, "params": interaction.providerStateParams or {}}
        try:
            response = self.client.post(self.state_setup_path, json=payload)
        except httpx.HTTPError as e:
            return f"provider state '{interaction.providerState}' could not be set up: {e}"
        if response.status_code >= 400:
            return f"provider state '{interaction.providerState}' could not be set up: HTTP {response.status_code}"
        return None

    @staticmethod
    def _body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text
