"""
Response matching for provider verification.

Compares an actual provider response with an interaction's response
matcher. Bodies are compared structurally: expected object keys must be
present (extra keys are tolerated), arrays are compared element by element,
and leaf values are compared literally unless a matching rule applies.

Matching rules use Pact-style paths rooted at `$.body` or `$.headers`.
A `type` rule cascades to every descendant until an `equality` rule turns
literal comparison back on. Array indexes in rule paths may be written as
`[*]`.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Mapping, Optional

from .schemas import MatchingRule, ResponseMatcher

_INDEX = re.compile(r"\[\d+\]")


def _fmt(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True)


def _json_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


class BodyMatcher:
    def __init__(self, rules: Optional[Mapping[str, MatchingRule]] = None):
        self.rules: Dict[str, MatchingRule] = dict(rules or {})
        self.mismatches: List[str] = []

    def rule_for(self, rule_path: str) -> Optional[MatchingRule]:
        rule = self.rules.get(rule_path)
        if rule is None:
            rule = self.rules.get(_INDEX.sub("[*]", rule_path))
        return rule

    def compare(self, expected: Any, actual: Any, path: str = "$", rule_path: str = "$.body",
                cascade: bool = False) -> List[str]:
        rule = self.rule_for(rule_path)
        if rule is not None:
            if rule.match == "regex":
                self._match_regex(rule, actual, path)
                return self.mismatches
            if rule.match == "include":
                self._match_include(rule, actual, path)
                return self.mismatches
            cascade = rule.match == "type"
            if isinstance(expected, list) and isinstance(actual, list):
                self._check_bounds(rule, actual, path)

        if isinstance(expected, dict):
            if not isinstance(actual, dict):
                self._type_mismatch(path, expected, actual)
                return self.mismatches
            for key, value in expected.items():
                child = f"{path}.{key}"
                if key not in actual:
                    self.mismatches.append(f"field {child} expected but was missing")
                    continue
                self.compare(value, actual[key], child, f"{rule_path}.{key}", cascade)
        elif isinstance(expected, list):
            if not isinstance(actual, list):
                self._type_mismatch(path, expected, actual)
                return self.mismatches
            if cascade:
                if expected:
                    for index, item in enumerate(actual):
                        self.compare(expected[0], item, f"{path}[{index}]", f"{rule_path}[{index}]", cascade)
            else:
                if len(expected) != len(actual):
                    self.mismatches.append(
                        f"field {path} expected {len(expected)} element(s) but received {len(actual)}"
                    )
                for index, (item, got) in enumerate(zip(expected, actual)):
                    self.compare(item, got, f"{path}[{index}]", f"{rule_path}[{index}]", cascade)
        elif cascade:
            if _json_type(expected) != _json_type(actual):
                self._type_mismatch(path, expected, actual)
        elif expected != actual or _json_type(expected) != _json_type(actual):
            self.mismatches.append(f"field {path} expected '{_fmt(expected)}' but received '{_fmt(actual)}'")
        return self.mismatches

    def _match_regex(self, rule: MatchingRule, actual: Any, path: str) -> None:
        if not isinstance(actual, str) or not re.fullmatch(rule.regex or "", actual):
            self.mismatches.append(f"field {path} expected to match /{rule.regex}/ but received '{_fmt(actual)}'")

    def _match_include(self, rule: MatchingRule, actual: Any, path: str) -> None:
        if not isinstance(actual, str) or (rule.value or "") not in actual:
            self.mismatches.append(f"field {path} expected to include '{rule.value}' but received '{_fmt(actual)}'")

    def _check_bounds(self, rule: MatchingRule, actual: List[Any], path: str) -> None:
        if rule.min is not None and len(actual) < rule.min:
            self.mismatches.append(f"field {path} expected at least {rule.min} element(s) but received {len(actual)}")
        if rule.max is not None and len(actual) > rule.max:
            self.mismatches.append(f"field {path} expected at most {rule.max} element(s) but received {len(actual)}")

    def _type_mismatch(self, path: str, expected: Any, actual: Any) -> None:
        self.mismatches.append(
            f"field {path} expected type {_json_type(expected)} but received {_json_type(actual)} '{_fmt(actual)}'"
        )


def _normalize_header(value: str) -> str:
    return ",".join(part.strip() for part in value.split(","))


def match_headers(expected: Mapping[str, str], actual: Mapping[str, str],
                  rules: Optional[Mapping[str, MatchingRule]] = None) -> List[str]:
    """Expected headers must be present; names compare case-insensitively."""
    mismatches: List[str] = []
    lowered = {k.lower(): v for k, v in actual.items()}
    rules_lowered = {k.lower(): v for k, v in (rules or {}).items()}
    for name, value in expected.items():
        got = lowered.get(name.lower())
        if got is None:
            mismatches.append(f"header {name} expected but was missing")
            continue
        rule = rules_lowered.get(f"$.headers.{name}".lower())
        if rule is not None and rule.match == "regex":
            if not re.fullmatch(rule.regex or "", got):
                mismatches.append(f"header {name} expected to match /{rule.regex}/ but received '{got}'")
        elif _normalize_header(value) != _normalize_header(got):
            mismatches.append(f"header {name} expected '{value}' but received '{got}'")
    return mismatches


def match_response(expected: ResponseMatcher, status: int, headers: Mapping[str, str], body: Any) -> List[str]:
    """
    Compare an actual response with the expected one.

    Returns a list of human-readable mismatch descriptions; empty means the
    response satisfies the interaction.
    """
    mismatches: List[str] = []
    if status != expected.status:
        mismatches.append(f"status expected {expected.status} but received {status}")
    mismatches.extend(match_headers(expected.headers, headers, expected.matchingRules))
    if expected.body is not None:
        body_rules = {k: v for k, v in expected.matchingRules.items() if k.startswith("$.body")}
        mismatches.extend(BodyMatcher(body_rules).compare(expected.body, body))
    return mismatches
