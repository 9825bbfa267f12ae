"""
Command line client for CI pipelines.

    contract-broker publish contracts/web-orders.json --consumer-version 1.4.2 --tag main
    contract-broker verify --provider orders --consumer web --consumer-version 1.4.2 \\
        --provider-version 2.0.0 --provider-base-url http://localhost:8000
    contract-broker record-verification --contract-id 7 --provider-version 2.0.0 --outcome success
    contract-broker tag orders 2.0.0 production
    contract-broker can-i-deploy web 1.4.2 --to production

The broker URL and write token come from CONTRACT_BROKER_URL and
CONTRACT_BROKER_TOKEN unless given as options. can-i-deploy exits 0 for yes,
1 for no and 2 when the verdict is unknown or the broker could not answer.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

import httpx
import requests

from .core.documents import load_contract_file, validate_document
from .core.exceptions import InvalidContract
from .core.schemas import ContractRef, DeploymentVerdict, Verdict
from .core.verifier import ProviderVerifier

logger = logging.getLogger(__name__)

EXIT_YES = 0
EXIT_NO = 1
EXIT_UNKNOWN = 2

DEFAULT_BROKER_URL = "http://localhost:8080"


class BrokerClientError(Exception):
    """The broker rejected a request or could not be reached."""


class BrokerClient:
    """Thin `requests` client over the broker HTTP API."""

    def __init__(self, base_url: str, token: Optional[str] = None, session: Optional[requests.Session] = None,
                 timeout: int = 30):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if token:
            self.session.headers["X-Broker-Token"] = token

    def _call(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        try:
            response = self.session.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise BrokerClientError(f"Broker unreachable: {e}") from e
        if response.status_code >= 400 and not (path == "/can-i-deploy" and response.status_code == 503):
            raise BrokerClientError(self._problem_text(response))
        return response

    @staticmethod
    def _problem_text(response: requests.Response) -> str:
        try:
            problem = response.json()
        except ValueError:
            return f"HTTP {response.status_code}: {response.text}"
        message = f"HTTP {response.status_code}: {problem.get('detail') or problem.get('title')}"
        for issue in problem.get("issues") or []:
            message += f"\n  - {issue}"
        return message

    def publish(self, consumer_version: str, contract: Dict[str, Any], tags: List[str]) -> Dict[str, Any]:
        body = {"consumerVersion": consumer_version, "contract": contract, "tags": tags}
        return self._call("POST", "/contracts", json=body).json()

    def resolve(self, provider: str, consumer: str, version: Optional[str] = None,
                tag: Optional[str] = None) -> ContractRef:
        params = {"version": version} if version else {"tag": tag}
        data = self._call("GET", f"/contracts/{provider}/{consumer}", params=params).json()
        return ContractRef.model_validate(data)

    def fetch_document(self, contract_id: int) -> Dict[str, Any]:
        return self._call("GET", f"/contracts/{contract_id}").json()

    def record_verification(self, report: Dict[str, Any]) -> Dict[str, Any]:
        return self._call("POST", "/verifications", json=report).json()

    def tag(self, participant: str, version: str, tag: str) -> Dict[str, Any]:
        return self._call("PUT", f"/participants/{participant}/versions/{version}/tags/{tag}").json()

    def can_i_deploy(self, participant: str, version: str, target_tag: str,
                     allow_empty: Optional[bool] = None) -> DeploymentVerdict:
        body: Dict[str, Any] = {"participant": participant, "version": version, "targetTag": target_tag}
        if allow_empty is not None:
            body["allowEmpty"] = allow_empty
        return DeploymentVerdict.model_validate(self._call("POST", "/can-i-deploy", json=body).json())


def _client(args: argparse.Namespace) -> BrokerClient:
    return BrokerClient(args.broker_url, token=args.token)


def cmd_publish(args: argparse.Namespace) -> int:
    contract = load_contract_file(args.file)
    result = _client(args).publish(args.consumer_version, contract, args.tag)
    ref = result["contractRef"]
    state = "published" if result["created"] else "unchanged"
    print(f"{ref['consumer']}@{ref['consumerVersion']} -> {ref['provider']}: revision {ref['revision']} {state} (id {ref['id']})")
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    broker = _client(args)
    ref = broker.resolve(args.provider, args.consumer, version=args.consumer_version, tag=args.consumer_tag)
    document = validate_document(broker.fetch_document(ref.id))

    with httpx.Client(base_url=args.provider_base_url, timeout=args.timeout) as provider:
        verifier = ProviderVerifier(provider, state_setup_path=args.state_setup_path or None)
        report = verifier.verify(document, ref, args.provider_version)

    for failure in report.failures:
        print(f"  FAIL {failure.interaction}: {failure.description}")
    if args.publish:
        broker.record_verification(report.model_dump(mode="json"))
    print(f"Verification of contract {ref.id} by {ref.provider}@{args.provider_version}: {report.outcome}")
    return 0 if report.outcome == "success" else 1


def cmd_record_verification(args: argparse.Namespace) -> int:
    failures = [{"interaction": "", "description": message} for message in args.failure]
    report = {
        "contractId": args.contract_id,
        "providerVersion": args.provider_version,
        "outcome": args.outcome,
        "failures": failures,
    }
    result = _client(args).record_verification(report)
    stale = " (superseded contract revision)" if result.get("stale") else ""
    print(f"Recorded {result['outcome']} verification {result['id']}{stale}")
    return 0


def cmd_tag(args: argparse.Namespace) -> int:
    _client(args).tag(args.participant, args.version, args.tag)
    print(f"Tagged {args.participant}@{args.version} as {args.tag}")
    return 0


def cmd_can_i_deploy(args: argparse.Namespace) -> int:
    try:
        verdict = _client(args).can_i_deploy(args.participant, args.version, args.to, args.allow_empty)
    except BrokerClientError as e:
        print(f"Verdict unknown: {e}", file=sys.stderr)
        return EXIT_UNKNOWN

    if args.output == "json":
        print(json.dumps(verdict.model_dump(mode="json"), indent=2))
    else:
        print(f"{verdict.participant}@{verdict.version} to {verdict.targetTag}: {verdict.verdict.value} "
              f"({verdict.checked} contract check(s))")
        for item in verdict.unsatisfied:
            ref = item.contractRef
            print(f"  {ref.consumer}@{ref.consumerVersion} -> {ref.provider} "
                  f"[{item.tag}, provider {item.providerVersion or '-'}]: {item.reason.value}")
        if verdict.detail:
            print(f"  {verdict.detail}")

    if verdict.deployable:
        return EXIT_YES
    if verdict.verdict == Verdict.NO:
        return EXIT_NO
    return EXIT_UNKNOWN


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("contract_broker.main:app", host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="contract-broker", description="Consumer-driven contract broker client")
    parser.add_argument("--broker-url", default=os.getenv("CONTRACT_BROKER_URL", DEFAULT_BROKER_URL))
    parser.add_argument("--token", default=os.getenv("CONTRACT_BROKER_TOKEN"))
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("publish", help="Publish a contract file (JSON or YAML)")
    p.add_argument("file")
    p.add_argument("--consumer-version", required=True)
    p.add_argument("--tag", action="append", default=[])
    p.set_defaults(func=cmd_publish)

    p = sub.add_parser("verify", help="Verify a running provider against a published contract")
    p.add_argument("--provider", required=True)
    p.add_argument("--consumer", required=True)
    selector = p.add_mutually_exclusive_group(required=True)
    selector.add_argument("--consumer-version")
    selector.add_argument("--consumer-tag")
    p.add_argument("--provider-version", required=True)
    p.add_argument("--provider-base-url", required=True)
    p.add_argument("--state-setup-path", default="/_pact/provider-states")
    p.add_argument("--timeout", type=float, default=10.0)
    p.add_argument("--publish", action="store_true", help="Record the result with the broker")
    p.set_defaults(func=cmd_verify)

    p = sub.add_parser("record-verification", help="Record a verification result")
    p.add_argument("--contract-id", type=int, required=True)
    p.add_argument("--provider-version", required=True)
    p.add_argument("--outcome", choices=["success", "failure"], required=True)
    p.add_argument("--failure", action="append", default=[], help="Failure description (repeatable)")
    p.set_defaults(func=cmd_record_verification)

    p = sub.add_parser("tag", help="Tag a participant version")
    p.add_argument("participant")
    p.add_argument("version")
    p.add_argument("tag")
    p.set_defaults(func=cmd_tag)

    p = sub.add_parser("can-i-deploy", help="Ask whether a version can be deployed")
    p.add_argument("participant")
    p.add_argument("version")
    p.add_argument("--to", required=True, help="Target environment tag")
    empty = p.add_mutually_exclusive_group()
    empty.add_argument("--allow-empty", dest="allow_empty", action="store_true", default=None)
    empty.add_argument("--no-allow-empty", dest="allow_empty", action="store_false")
    p.add_argument("--output", choices=["text", "json"], default="text")
    p.set_defaults(func=cmd_can_i_deploy)

    p = sub.add_parser("serve", help="Run the broker HTTP service")
    p.add_argument("--host", default="0.0.0.0")
    p.add_argument("--port", type=int, default=8080)
    p.set_defaults(func=cmd_serve)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except (BrokerClientError, InvalidContract) as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_UNKNOWN if args.command == "can-i-deploy" else 1


if __name__ == "__main__":
    sys.exit(main())
