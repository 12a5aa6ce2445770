"""Condition evaluation for edge routing, rule nodes and value templating.

Everything here is pure: no I/O, no engine state. Values are compared as
strings unless an ordering operator asks for numbers, and booleans are
stringified as ``true``/``false`` so that ``conditionResult: True`` matches an
edge declared with ``condition: "true"``.
"""

import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from ..models.core import ConditionOperator, Edge

ROUTING_FIELDS = ("conditionResult", "intent")

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")

_OPERATOR_ALIASES = {
    "==": ConditionOperator.EQUALS,
    "eq": ConditionOperator.EQUALS,
    "equal": ConditionOperator.EQUALS,
    "!=": ConditionOperator.NOT_EQUALS,
    "ne": ConditionOperator.NOT_EQUALS,
    "not_equal": ConditionOperator.NOT_EQUALS,
    ">": ConditionOperator.GT,
    "greater_than": ConditionOperator.GT,
    ">=": ConditionOperator.GTE,
    "<": ConditionOperator.LT,
    "less_than": ConditionOperator.LT,
    "<=": ConditionOperator.LTE,
    "includes": ConditionOperator.CONTAINS,
}


def stringify(value: Any) -> Optional[str]:
    """Canonical string form used for comparisons."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def resolve_path(data: Any, path: str, default: Any = None) -> Any:
    """Look up a dotted path (``a.b.0.c``) in nested dicts and lists."""
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return default
        else:
            return default
    return current


def parse_operator(operator: Any) -> ConditionOperator:
    """Accept enum members, canonical names and common symbolic aliases."""
    if isinstance(operator, ConditionOperator):
        return operator
    if operator is None:
        return ConditionOperator.EQUALS
    key = str(operator).strip().lower()
    if key in _OPERATOR_ALIASES:
        return _OPERATOR_ALIASES[key]
    try:
        return ConditionOperator(key)
    except ValueError:
        raise ValueError(f"Unsupported condition operator: {operator}")


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _accepted_values(expected: Any) -> List[Optional[str]]:
    if isinstance(expected, (list, tuple, set)):
        return [stringify(item) for item in expected]
    return [item.strip() for item in str(expected).split(",")]


def compare(operator: ConditionOperator, actual: Any, expected: Any = None) -> bool:
    """Apply one operator; a missing actual value never matches a positive test."""
    if operator == ConditionOperator.EXISTS:
        return actual is not None and actual != ""
    if operator == ConditionOperator.NOT_EQUALS:
        return stringify(actual) != stringify(expected)
    if actual is None:
        return False
    if operator == ConditionOperator.EQUALS:
        return stringify(actual) == stringify(expected)
    if operator == ConditionOperator.IN:
        return stringify(actual) in _accepted_values(expected)
    if operator == ConditionOperator.CONTAINS:
        if isinstance(actual, (list, tuple, set)):
            return stringify(expected) in {stringify(item) for item in actual}
        return str(expected) in str(actual)

    left, right = _to_number(actual), _to_number(expected)
    if left is None or right is None:
        return False
    if operator == ConditionOperator.GT:
        return left > right
    if operator == ConditionOperator.GTE:
        return left >= right
    if operator == ConditionOperator.LT:
        return left < right
    return left <= right


def routing_value(output: Mapping[str, Any], field: Optional[str] = None) -> Any:
    """Value an edge condition is compared against."""
    if field:
        return resolve_path(output, field)
    for key in ROUTING_FIELDS:
        if output.get(key) is not None:
            return output[key]
    return None


def evaluate_edge(edge: Edge, output: Mapping[str, Any]) -> bool:
    """True when a conditioned edge matches the node output."""
    if edge.condition is None:
        return False
    return compare(edge.operator, routing_value(output, edge.field), edge.condition)


def select_edge(edges: Iterable[Edge], output: Mapping[str, Any]) -> Optional[Edge]:
    """First matching conditioned edge, else the first fallback edge, else None."""
    edges = list(edges)
    for edge in edges:
        if evaluate_edge(edge, output):
            return edge
    for edge in edges:
        if edge.is_fallback:
            return edge
    return None


def evaluate_rule(rule: Mapping[str, Any], variables: Mapping[str, Any]) -> bool:
    """Evaluate ``{field|variable, operator, value}`` against a variables bag."""
    path = rule.get("field") or rule.get("variable")
    if not path:
        raise ValueError("Rule must name a field or variable")
    operator = parse_operator(rule.get("operator"))
    return compare(operator, resolve_path(variables, str(path)), rule.get("value"))


def evaluate_rules(rules: Iterable[Mapping[str, Any]], variables: Mapping[str, Any], logic: str = "and") -> bool:
    """Combine several rules with ``and`` / ``or`` logic."""
    outcomes = [evaluate_rule(rule, variables) for rule in rules]
    if not outcomes:
        return False
    if str(logic).lower() == "or":
        return any(outcomes)
    return all(outcomes)


def render_template(value: Any, variables: Mapping[str, Any]) -> Any:
    """Replace ``{{name}}`` placeholders in strings, dicts and lists.

    A string made of a single placeholder yields the raw value so that
    numbers and objects survive templating. Missing names render as an
    empty string inside larger strings and as ``None`` on their own.
    """
    if isinstance(value, str):
        whole = _PLACEHOLDER.fullmatch(value.strip())
        if whole:
            return resolve_path(variables, whole.group(1))

        def substitute(match):
            resolved = resolve_path(variables, match.group(1))
            return "" if resolved is None else stringify(resolved)

        return _PLACEHOLDER.sub(substitute, value)
    if isinstance(value, Mapping):
        return {key: render_template(item, variables) for key, item in value.items()}
    if isinstance(value, list):
        return [render_template(item, variables) for item in value]
    return value


def first_matching_branch(branches: Iterable[Mapping[str, Any]], variables: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    """First branch whose rule set holds.

    A branch is either a single rule with a ``result`` key or
    ``{rules: [...], logic, result}``.
    """
    for branch in branches:
        if "rules" in branch:
            matched = evaluate_rules(branch["rules"], variables, branch.get("logic", "and"))
        else:
            matched = evaluate_rule(branch, variables)
        if matched:
            return dict(branch)
    return None
