"""
Pool Resolver - match label selectors against the pool set.

A selector is a dict with optional ``matchLabels`` and ``matchExpressions``.
A nil or empty selector matches nothing.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple

from models import Pool

logger = logging.getLogger(__name__)

OPERATORS = ("In", "NotIn", "Exists", "DoesNotExist")

_NAME_RE = re.compile(r"^([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]$")
_PREFIX_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")


class SelectorError(Exception):
    """Raised for a syntactically invalid selector."""


class NoMatchingPoolsError(Exception):
    """Raised when a selector matches no pool."""


class PoolRepository(Protocol):
    def list(self) -> List[Pool]: ...


@dataclass(frozen=True)
class Requirement:
    key: str
    operator: str
    values: Tuple[str, ...] = ()

    def matches(self, labels: Dict[str, str]) -> bool:
        if self.operator == "Exists":
            return self.key in labels
        if self.operator == "DoesNotExist":
            return self.key not in labels
        if self.operator == "In":
            return self.key in labels and labels[self.key] in self.values
        # NotIn
        return self.key not in labels or labels[self.key] not in self.values


def _validate_key(key: Any) -> None:
    if not isinstance(key, str) or not key:
        raise SelectorError(f"invalid label key {key!r}")
    prefix, _, name = key.rpartition("/")
    if "/" in key and (not prefix or len(prefix) > 253 or not _PREFIX_RE.match(prefix)):
        raise SelectorError(f"invalid label key prefix in {key!r}")
    if len(name) > 63 or not _NAME_RE.match(name):
        raise SelectorError(f"invalid label key {key!r}")


def _validate_value(key: str, value: Any) -> None:
    if not isinstance(value, str) or len(value) > 63 or (value and not _NAME_RE.match(value)):
        raise SelectorError(f"invalid label value {value!r} for key {key!r}")


def parse_selector(selector: Optional[Dict[str, Any]]) -> List[Requirement]:
    """
    Convert a selector into a list of requirements.

    Raises:
        SelectorError: If the selector is malformed.
    """
    if not selector:
        return []
    if not isinstance(selector, dict):
        raise SelectorError(f"selector must be an object, got {type(selector).__name__}")

    match_labels = selector.get("matchLabels") or {}
    if not isinstance(match_labels, dict):
        raise SelectorError(f"matchLabels must be an object, got {type(match_labels).__name__}")
    match_expressions = selector.get("matchExpressions") or []
    if not isinstance(match_expressions, list):
        raise SelectorError(
            f"matchExpressions must be a list, got {type(match_expressions).__name__}"
        )

    requirements = []
    for key, value in sorted(match_labels.items()):
        _validate_key(key)
        _validate_value(key, value)
        requirements.append(Requirement(key, "In", (value,)))

    for expr in match_expressions:
        if not isinstance(expr, dict):
            raise SelectorError(f"match expression must be an object, got {expr!r}")
        key = expr.get("key")
        operator = expr.get("operator")
        values = expr.get("values") or []
        if not isinstance(values, list):
            raise SelectorError(f"values for key {key!r} must be a list, got {values!r}")
        _validate_key(key)
        if operator not in OPERATORS:
            raise SelectorError(f"{operator!r} is not a valid label selector operator")
        if operator in ("In", "NotIn") and not values:
            raise SelectorError(f"values must be non-empty for operator {operator}")
        if operator in ("Exists", "DoesNotExist") and values:
            raise SelectorError(f"values must be empty for operator {operator}")
        for value in values:
            _validate_value(key, value)
        requirements.append(Requirement(key, operator, tuple(values)))

    return requirements


class PoolResolver:
    """Resolves selectors against a read-only pool repository."""

    def __init__(self, pools: PoolRepository):
        self.pools = pools

    def resolve(self, selector: Optional[Dict[str, Any]]) -> List[Pool]:
        """
        Return the pools matching ``selector``, ordered by name.

        Raises:
            SelectorError: If the selector is malformed.
            NoMatchingPoolsError: If nothing matches, including when the
                selector is empty.
        """
        requirements = parse_selector(selector)

        matched = []
        if requirements:
            for pool in self.pools.list():
                if all(r.matches(pool.labels) for r in requirements):
                    matched.append(pool)
        else:
            logger.debug("Empty pool selector matches no pools")

        if not matched:
            raise NoMatchingPoolsError("selector does not match any pool")

        return sorted(matched, key=lambda p: p.name)
