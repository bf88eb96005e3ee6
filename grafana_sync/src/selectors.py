from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from kubernetes.client import CoreV1Api

LOGGER = logging.getLogger(__name__)

OPERATORS = frozenset({"In", "NotIn", "Exists", "DoesNotExist"})

_SET_CLAUSE = re.compile(r"^([^\s!=()]+)\s+(in|notin)\s+\(([^)]*)\)$", re.IGNORECASE)


@dataclass(frozen=True)
class Requirement:
    """A single ``matchExpressions`` entry of a label selector."""

    key: str
    operator: str
    values: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.key:
            raise ValueError("selector requirement key must be non-empty")
        if self.operator not in OPERATORS:
            raise ValueError(f"unsupported selector operator: {self.operator!r}")
        if self.operator in {"In", "NotIn"} and not self.values:
            raise ValueError(f"operator {self.operator} requires at least one value")
        if self.operator in {"Exists", "DoesNotExist"} and self.values:
            raise ValueError(f"operator {self.operator} does not take values")

    def matches(self, labels: Mapping[str, str]) -> bool:
        present = self.key in labels
        if self.operator == "Exists":
            return present
        if self.operator == "DoesNotExist":
            return not present
        if self.operator == "In":
            return present and labels[self.key] in self.values
        return not present or labels[self.key] not in self.values


@dataclass(frozen=True)
class LabelSelector:
    """Kubernetes label selector: ``matchLabels`` AND ``matchExpressions``.

    An empty selector matches every label set, the same as the API server.
    """

    match_labels: Mapping[str, str] = field(default_factory=dict)
    match_expressions: tuple[Requirement, ...] = ()

    def is_empty(self) -> bool:
        return not self.match_labels and not self.match_expressions

    def matches(self, labels: Mapping[str, str] | None) -> bool:
        labels = labels or {}
        if any(labels.get(k) != v for k, v in self.match_labels.items()):
            return False
        return all(req.matches(labels) for req in self.match_expressions)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> LabelSelector:
        """Build a selector from the API shape (``matchLabels`` / ``matchExpressions``)."""
        if not raw:
            return cls()
        match_labels = raw.get("matchLabels") or raw.get("match_labels") or {}
        if not isinstance(match_labels, Mapping):
            raise ValueError("matchLabels must be a mapping")
        expressions = raw.get("matchExpressions") or raw.get("match_expressions") or []
        requirements = tuple(
            Requirement(
                key=str(expr.get("key", "")),
                operator=str(expr.get("operator", "")),
                values=tuple(str(v) for v in expr.get("values") or ()),
            )
            for expr in expressions
        )
        return cls(
            match_labels={str(k): str(v) for k, v in match_labels.items()},
            match_expressions=requirements,
        )

    @classmethod
    def parse(cls, selector: str) -> LabelSelector:
        """Parse the kubectl string form, e.g. ``app=grafana,tier in (a,b),!legacy``."""
        match_labels: dict[str, str] = {}
        requirements: list[Requirement] = []
        for clause in _split_clauses(selector):
            set_match = _SET_CLAUSE.match(clause)
            if set_match:
                key, op, raw_values = set_match.groups()
                values = tuple(v.strip() for v in raw_values.split(",") if v.strip())
                operator = "In" if op.lower() == "in" else "NotIn"
                requirements.append(Requirement(key=key, operator=operator, values=values))
            elif "!=" in clause:
                key, value = (part.strip() for part in clause.split("!=", 1))
                requirements.append(Requirement(key=key, operator="NotIn", values=(value,)))
            elif "=" in clause:
                key, value = clause.split("==", 1) if "==" in clause else clause.split("=", 1)
                key = key.strip()
                if not key:
                    raise ValueError(f"invalid selector clause: {clause!r}")
                match_labels[key] = value.strip()
            elif clause.startswith("!"):
                requirements.append(Requirement(key=clause[1:].strip(), operator="DoesNotExist"))
            elif re.fullmatch(r"[^\s()]+", clause):
                requirements.append(Requirement(key=clause, operator="Exists"))
            else:
                raise ValueError(f"invalid selector clause: {clause!r}")
        return cls(match_labels=match_labels, match_expressions=tuple(requirements))


def _split_clauses(selector: str) -> list[str]:
    """Split on commas that are not inside a ``(...)`` value set."""
    clauses: list[str] = []
    depth = 0
    current: list[str] = []
    for char in selector:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise ValueError(f"unbalanced parentheses in selector: {selector!r}")
        if char == "," and depth == 0:
            clauses.append("".join(current))
            current = []
            continue
        current.append(char)
    if depth != 0:
        raise ValueError(f"unbalanced parentheses in selector: {selector!r}")
    clauses.append("".join(current))
    return [clause.strip() for clause in clauses if clause.strip()]


def parse_selector_list(text: str) -> tuple[LabelSelector, ...]:
    """Parse ``;``-separated selectors.  An empty string yields an empty tuple."""
    return tuple(LabelSelector.parse(part) for part in text.split(";") if part.strip())


def matches(
    labels: Mapping[str, str] | None,
    selectors: Iterable[LabelSelector] | None,
) -> bool:
    """Return True if *labels* satisfy at least one of *selectors*.

    ``None`` or an empty selector set matches nothing: an uninitialised
    selector set means the controller is not ready to manage anything yet.
    """
    if selectors is None:
        return False
    return any(selector.matches(labels) for selector in selectors)


def matches_namespace(
    core_api: CoreV1Api,
    namespace: str,
    selector: LabelSelector | None,
    timeout_seconds: float | None = None,
) -> bool:
    """Return True if the namespace's labels satisfy *selector*.

    A ``None`` selector matches without touching the API.  Otherwise the
    namespace is read first, so lookup failures (including 404) surface as
    ``ApiException`` instead of being treated as a non-match.
    """
    if selector is None:
        return True
    ns = core_api.read_namespace(name=namespace, _request_timeout=timeout_seconds)
    labels = getattr(getattr(ns, "metadata", None), "labels", None) or {}
    if selector.is_empty():
        return True
    matched = selector.matches(labels)
    if not matched:
        LOGGER.debug("Namespace %s labels %s do not match selector", namespace, labels)
    return matched
