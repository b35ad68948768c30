from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from boomerang.errors import NotFound
from boomerang.gates.evaluators import Evaluator, resolve_evaluator
from boomerang.models import ContextRef, Phase, utcnow_iso
from boomerang.state.context_store import ContextEntry, ContextStore

logger = logging.getLogger(__name__)


class GateStatus(str, Enum):
    UNEVALUATED = "unevaluated"
    PASSED = "passed"
    FAILED = "failed"


class CriterionOutcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    EVALUATOR_ERROR = "evaluator_error"


@dataclass(frozen=True, slots=True)
class Criterion:
    description: str
    evaluator: str | Evaluator = "exists"
    evidence: tuple[str, ...] = ()
    domain: str | None = None
    params: Mapping[str, Any] = field(default_factory=dict)
    remediation_role: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "evidence", tuple(str(item) for item in self.evidence))
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

    @property
    def evidence_refs(self) -> tuple[ContextRef, ...]:
        return tuple(ContextRef.parse(item) for item in self.evidence)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Criterion:
        evidence = payload.get("evidence", [])
        if isinstance(evidence, str):
            evidence = [evidence]
        pins = payload.get("pins") or {}
        if pins:
            pinned = []
            for item in evidence:
                ref = ContextRef.parse(item)
                if ref.version is None and ref.key in pins:
                    ref = ContextRef(ref.key, int(pins[ref.key]))
                pinned.append(str(ref))
            evidence = pinned
        return cls(
            description=str(payload.get("description") or payload.get("evaluator") or "criterion"),
            evaluator=str(payload.get("evaluator", "exists")),
            evidence=tuple(evidence),
            domain=payload.get("domain") or None,
            params=dict(payload.get("params", {})),
            remediation_role=payload.get("remediation_role") or None,
        )


@dataclass(frozen=True, slots=True)
class CriterionResult:
    index: int
    description: str
    outcome: CriterionOutcome
    reasons: tuple[str, ...] = ()
    evidence: tuple[str, ...] = ()
    missing: tuple[str, ...] = ()

    @property
    def passed(self) -> bool:
        return self.outcome is CriterionOutcome.PASS

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "description": self.description,
            "outcome": self.outcome.value,
            "reasons": list(self.reasons),
            "evidence": list(self.evidence),
            "missing": list(self.missing),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> CriterionResult:
        return cls(
            index=int(payload["index"]),
            description=str(payload.get("description", "")),
            outcome=CriterionOutcome(payload["outcome"]),
            reasons=tuple(payload.get("reasons", [])),
            evidence=tuple(payload.get("evidence", [])),
            missing=tuple(payload.get("missing", [])),
        )


@dataclass(frozen=True, slots=True)
class GateEvaluation:
    gate_id: str
    evaluated_at: str
    results: tuple[CriterionResult, ...]
    passed: bool
    unmet: tuple[str, ...] = ()

    @property
    def evaluator_errors(self) -> tuple[CriterionResult, ...]:
        return tuple(
            result for result in self.results if result.outcome is CriterionOutcome.EVALUATOR_ERROR
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "gate_id": self.gate_id,
            "evaluated_at": self.evaluated_at,
            "passed": self.passed,
            "unmet": list(self.unmet),
            "results": [result.to_dict() for result in self.results],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> GateEvaluation:
        return cls(
            gate_id=str(payload["gate_id"]),
            evaluated_at=str(payload.get("evaluated_at", "")),
            results=tuple(CriterionResult.from_dict(item) for item in payload.get("results", [])),
            passed=bool(payload.get("passed", False)),
            unmet=tuple(payload.get("unmet", [])),
        )


@dataclass(slots=True)
class Gate:
    name: str
    phase: Phase
    criteria: tuple[Criterion, ...]
    status: GateStatus = GateStatus.UNEVALUATED
    last_evaluated_at: str | None = None
    failure_reasons: list[str] = field(default_factory=list)
    history: list[GateEvaluation] = field(default_factory=list)

    @property
    def id(self) -> str:
        return f"{self.phase.value}/{self.name}"

    @property
    def passed(self) -> bool:
        return self.status is GateStatus.PASSED

    def record(self, evaluation: GateEvaluation) -> None:
        self.history.append(evaluation)
        self.last_evaluated_at = evaluation.evaluated_at
        self.status = GateStatus.PASSED if evaluation.passed else GateStatus.FAILED
        self.failure_reasons = list(evaluation.unmet)

    @classmethod
    def from_dict(cls, phase: Phase, payload: Mapping[str, Any]) -> Gate:
        criteria = tuple(Criterion.from_dict(item) for item in payload.get("criteria", []))
        if not criteria:
            raise ValueError(f"Gate '{payload.get('name')}' in {phase.value} has no criteria.")
        return cls(name=str(payload["name"]), phase=phase, criteria=criteria)


class GateValidator:
    """Evaluates gate checklists against the context store. A gate is binary: AND of criteria."""

    def __init__(self, store: ContextStore) -> None:
        self.store = store

    def _collect_evidence(
        self, criterion: Criterion, scope: str | None = None
    ) -> tuple[list[ContextEntry], list[str]]:
        evidence: list[ContextEntry] = []
        missing: list[str] = []
        for ref in criterion.evidence_refs:
            try:
                evidence.append(self.store.resolve(ref, scope=scope))
            except NotFound:
                missing.append(str(ref))
        if criterion.domain:
            prefix = str(criterion.params.get("prefix", ""))
            domain_entries = self.store.query(
                criterion.domain, lambda entry: entry.key.startswith(prefix), scope=scope
            )
            if not domain_entries:
                missing.append(f"domain:{criterion.domain}")
            evidence.extend(domain_entries)
        return evidence, missing

    def evaluate_criterion(
        self, criterion: Criterion, index: int, *, scope: str | None = None
    ) -> CriterionResult:
        evidence, missing = self._collect_evidence(criterion, scope)
        evidence_ids = tuple(entry.id for entry in evidence)
        if missing:
            reasons = tuple(
                f"no entries in domain {item.split(':', 1)[1]}"
                if item.startswith("domain:")
                else f"{item} missing"
                for item in missing
            )
            return CriterionResult(
                index=index,
                description=criterion.description,
                outcome=CriterionOutcome.FAIL,
                reasons=reasons,
                evidence=evidence_ids,
                missing=tuple(item for item in missing if not item.startswith("domain:")),
            )

        try:
            evaluator = resolve_evaluator(criterion.evaluator)
            outcome = evaluator(evidence, criterion.params)
        except Exception as exc:
            logger.warning(
                "Evaluator %r failed for criterion %r: %s",
                criterion.evaluator,
                criterion.description,
                exc,
            )
            return CriterionResult(
                index=index,
                description=criterion.description,
                outcome=CriterionOutcome.EVALUATOR_ERROR,
                reasons=(f"{criterion.description}: evaluator error: {exc}",),
                evidence=evidence_ids,
            )

        reason = ""
        if isinstance(outcome, tuple):
            passed, reason = bool(outcome[0]), str(outcome[1] if len(outcome) > 1 else "")
        else:
            passed = bool(outcome)
        if passed:
            return CriterionResult(
                index=index,
                description=criterion.description,
                outcome=CriterionOutcome.PASS,
                evidence=evidence_ids,
            )
        return CriterionResult(
            index=index,
            description=criterion.description,
            outcome=CriterionOutcome.FAIL,
            reasons=(reason or f"{criterion.description}: not met",),
            evidence=evidence_ids,
        )

    def evaluate(self, gate: Gate, *, scope: str | None = None) -> GateEvaluation:
        """Evaluate ``gate`` and record the outcome on it.

        With ``scope`` only entries written by tasks whose ids start with it
        count as evidence; pinned references are taken as given.

        A passed gate is terminal for its phase instance: its last passing
        evaluation is returned and no new record is produced.
        """
        if gate.passed and gate.history:
            return gate.history[-1]

        results = tuple(
            self.evaluate_criterion(criterion, index, scope=scope)
            for index, criterion in enumerate(gate.criteria)
        )
        unmet: list[str] = []
        for result in results:
            for reason in result.reasons:
                if reason not in unmet:
                    unmet.append(reason)
        evaluation = GateEvaluation(
            gate_id=gate.id,
            evaluated_at=utcnow_iso(),
            results=results,
            passed=bool(results) and all(result.passed for result in results),
            unmet=tuple(unmet),
        )
        gate.record(evaluation)
        return evaluation
