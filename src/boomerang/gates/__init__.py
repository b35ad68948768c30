from boomerang.gates.evaluators import EVALUATORS, register_evaluator, resolve_evaluator
from boomerang.gates.validator import (
    Criterion,
    CriterionOutcome,
    CriterionResult,
    Gate,
    GateEvaluation,
    GateStatus,
    GateValidator,
)

__all__ = [
    "EVALUATORS",
    "Criterion",
    "CriterionOutcome",
    "CriterionResult",
    "Gate",
    "GateEvaluation",
    "GateStatus",
    "GateValidator",
    "register_evaluator",
    "resolve_evaluator",
]
