"""
Batch payload validation rules.

A payload is checked against an ordered list of rules; the first rule that
fails decides the rejection. Fraud and safety rules come before format rules,
so a malformed payload that carries a counterfeit marker is still reported as
counterfeit.

Default order:
    1. counterfeit marker (case-insensitive)        -> COUNTERFEIT
    2. expired marker (case-insensitive)            -> EXPIRED
    3. payload must be a JSON object                -> MALFORMED
    4. at least one of lote / producto / id         -> INCOMPLETE
    5. suspicious marker (case-sensitive)           -> SUSPICIOUS

Rules are pure: no I/O, no clock, no randomness.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .models import REASON_MESSAGES, ReasonCode, ValidationOutcome

__all__ = [
    "ReasonCode",
    "REASON_MESSAGES",
    "ValidationRules",
    "Rule",
    "MarkerRule",
    "StructureRule",
    "RequiredKeysRule",
    "Validator",
    "validate",
    "parse_payload",
]


@dataclass(frozen=True)
class ValidationRules:
    """Marker lists and required keys used by the default rule set."""
    counterfeit_markers: Tuple[str, ...] = ("PRODUCTO_FALSO",)
    expired_markers: Tuple[str, ...] = ("VENCIDO", "EXPIRADO")
    suspicious_markers: Tuple[str, ...] = ("SOSPECHOSO", "NO_AUTORIZADO")
    required_keys: Tuple[str, ...] = ("lote", "producto", "id")


def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not a JSON number")


def parse_payload(payload_text: str) -> Dict[str, Any]:
    """
    Parse payload text as a JSON object.

    Raises:
        ValueError: if the text is not JSON (NaN and Infinity included) or is
            JSON but not an object
    """
    try:
        parsed = json.loads(payload_text, parse_constant=_reject_constant)
    except (TypeError, ValueError, RecursionError) as e:
        raise ValueError(f"payload is not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise ValueError(f"payload must be a JSON object, got {type(parsed).__name__}")
    return parsed


class Rule(ABC):
    """
    A single validation rule.

    ``check`` returns the reason code when the rule fails and None when it
    passes. It receives the raw text and the parsed mapping, which is None
    when the text is not a JSON object.
    """

    reason: ReasonCode

    def __init__(self, rule_id: str):
        self.rule_id = rule_id

    @abstractmethod
    def check(self, payload_text: str, parsed: Optional[Dict[str, Any]]) -> Optional[ReasonCode]:
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.rule_id!r})"


class MarkerRule(Rule):
    """Fails when any marker occurs as a substring of the payload text."""

    def __init__(self, rule_id: str, reason: ReasonCode, markers: Sequence[str], case_sensitive: bool = False):
        super().__init__(rule_id)
        self.reason = reason
        self.case_sensitive = case_sensitive
        self.markers = tuple(m if case_sensitive else m.upper() for m in markers)

    def check(self, payload_text, parsed):
        haystack = payload_text if self.case_sensitive else payload_text.upper()
        if any(marker in haystack for marker in self.markers):
            return self.reason
        return None


class StructureRule(Rule):
    """Fails when the payload is not a JSON object."""

    reason = ReasonCode.MALFORMED

    def check(self, payload_text, parsed):
        if parsed is None:
            return self.reason
        return None


class RequiredKeysRule(Rule):
    """
    Fails unless at least one of the keys is present with a truthy value.

    An empty string or null counts as missing.
    """

    reason = ReasonCode.INCOMPLETE

    def __init__(self, rule_id: str, keys: Sequence[str]):
        super().__init__(rule_id)
        self.keys = tuple(keys)

    def check(self, payload_text, parsed):
        if not parsed or not any(parsed.get(key) for key in self.keys):
            return self.reason
        return None


def default_rules(config: Optional[ValidationRules] = None) -> List[Rule]:
    config = config or ValidationRules()
    return [
        MarkerRule("counterfeit", ReasonCode.COUNTERFEIT, config.counterfeit_markers),
        MarkerRule("expired", ReasonCode.EXPIRED, config.expired_markers),
        StructureRule("structure"),
        RequiredKeysRule("required_keys", config.required_keys),
        MarkerRule("suspicious", ReasonCode.SUSPICIOUS, config.suspicious_markers, case_sensitive=True),
    ]


@dataclass
class Validator:
    """
    Evaluates rules in order, first failure wins.

    Usage:
        outcome = Validator().validate('{"lote": "A1"}')
        if outcome.accepted:
            parsed = outcome.parsed
    """
    rules: List[Rule] = field(default_factory=default_rules)

    @classmethod
    def from_config(cls, config: ValidationRules) -> "Validator":
        return cls(rules=default_rules(config))

    def validate(self, payload_text: str) -> ValidationOutcome:
        # Parsing is pure, so it is done once up front; a parse failure is
        # only reported where the StructureRule sits in the order.
        try:
            parsed: Optional[Dict[str, Any]] = parse_payload(payload_text)
        except ValueError:
            parsed = None

        for rule in self.rules:
            reason = rule.check(payload_text, parsed)
            if reason is not None:
                return ValidationOutcome.reject(reason)

        if parsed is None:
            return ValidationOutcome.reject(ReasonCode.MALFORMED)
        return ValidationOutcome.accept(parsed)


_DEFAULT_VALIDATOR = Validator()


def validate(payload_text: str) -> ValidationOutcome:
    """Validate a payload with the default rule set."""
    return _DEFAULT_VALIDATOR.validate(payload_text)
