"""Built-in criterion evaluators.

An evaluator receives the resolved evidence entries and the criterion params
and returns ``True``/``False`` or ``(passed, reason)``. Raising means the
evaluator could not judge the evidence (malformed content, bad params); the
validator reports that as an evaluator error rather than unmet work.
"""

from __future__ import annotations

import importlib
import json
import re
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from boomerang.state.context_store import ContextEntry

EvaluatorOutcome = bool | tuple[bool, str]
Evaluator = Callable[[Sequence[ContextEntry], Mapping[str, Any]], EvaluatorOutcome]

SEVERITY_PATTERN = re.compile(r"\b(BLOCKER|MAJOR|MINOR|SUGGESTION)\b", re.IGNORECASE)

EVALUATORS: dict[str, Evaluator] = {}


def register_evaluator(name: str) -> Callable[[Evaluator], Evaluator]:
    def _decorator(func: Evaluator) -> Evaluator:
        EVALUATORS[name] = func
        return func

    return _decorator


def resolve_evaluator(reference: str | Evaluator) -> Evaluator:
    if callable(reference):
        return reference
    name = str(reference).strip()
    if name in EVALUATORS:
        return EVALUATORS[name]
    if ":" in name:
        module_name, _, attr = name.partition(":")
        module = importlib.import_module(module_name)
        evaluator = getattr(module, attr)
        if not callable(evaluator):
            raise TypeError(f"Evaluator {name} is not callable.")
        return evaluator
    raise KeyError(f"Unknown evaluator: {name}")


def _is_empty(content: Any) -> bool:
    if content is None:
        return True
    if isinstance(content, str):
        return not content.strip()
    if isinstance(content, (dict, list, tuple, set)):
        return len(content) == 0
    return False


def _as_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=False, default=str)


def lookup_field(content: Any, path: str) -> Any:
    """Resolve a dotted path such as ``coverage.percent`` inside mapping content."""
    if isinstance(content, str):
        content = json.loads(content)
    current = content
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current[part]
        elif isinstance(current, Sequence) and not isinstance(current, str) and part.isdigit():
            current = current[int(part)]
        else:
            raise KeyError(path)
    return current


@register_evaluator("exists")
def exists(evidence: Sequence[ContextEntry], params: Mapping[str, Any]) -> EvaluatorOutcome:
    return bool(evidence)


@register_evaluator("non_empty")
def non_empty(evidence: Sequence[ContextEntry], params: Mapping[str, Any]) -> EvaluatorOutcome:
    for entry in evidence:
        if _is_empty(entry.content):
            return False, f"{entry.key} is empty"
    return True


@register_evaluator("min_entries")
def min_entries(evidence: Sequence[ContextEntry], params: Mapping[str, Any]) -> EvaluatorOutcome:
    minimum = int(params.get("min", 1))
    if len(evidence) < minimum:
        return False, f"expected at least {minimum} entries, found {len(evidence)}"
    return True


@register_evaluator("threshold")
def threshold(evidence: Sequence[ContextEntry], params: Mapping[str, Any]) -> EvaluatorOutcome:
    field_path = str(params["field"])
    minimum = params.get("min")
    maximum = params.get("max")
    if minimum is None and maximum is None:
        raise ValueError("threshold evaluator needs 'min' and/or 'max'.")
    for entry in evidence:
        raw = lookup_field(entry.content, field_path)
        if isinstance(raw, bool):
            raise TypeError(f"{entry.key}:{field_path} is boolean, expected a number")
        value = float(raw)
        if minimum is not None and value < float(minimum):
            return False, f"{entry.key}:{field_path}={value:g} below minimum {float(minimum):g}"
        if maximum is not None and value > float(maximum):
            return False, f"{entry.key}:{field_path}={value:g} above maximum {float(maximum):g}"
    return True


@register_evaluator("contains")
def contains(evidence: Sequence[ContextEntry], params: Mapping[str, Any]) -> EvaluatorOutcome:
    tokens = params.get("tokens")
    if not isinstance(tokens, list) or not tokens:
        raise ValueError("contains evaluator needs a non-empty 'tokens' list.")
    for entry in evidence:
        lower = _as_text(entry.content).lower()
        missing = [str(token) for token in tokens if str(token).lower() not in lower]
        if missing:
            return False, f"{entry.key} does not mention: {', '.join(missing)}"
    return True


@register_evaluator("max_findings")
def max_findings(evidence: Sequence[ContextEntry], params: Mapping[str, Any]) -> EvaluatorOutcome:
    """Count review findings by severity label and compare against a ceiling."""
    severity = str(params.get("severity", "BLOCKER")).upper()
    ceiling = int(params.get("max", 0))
    total = 0
    for entry in evidence:
        content = entry.content
        if isinstance(content, Mapping) and isinstance(content.get("counts"), Mapping):
            total += int(content["counts"].get(severity, 0))
            continue
        total += sum(
            1
            for match in SEVERITY_PATTERN.finditer(_as_text(content))
            if match.group(1).upper() == severity
        )
    if total > ceiling:
        return False, f"{total} {severity} finding(s) (max {ceiling})"
    return True
