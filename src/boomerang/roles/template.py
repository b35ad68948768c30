from __future__ import annotations

from typing import Any

from boomerang.models import DelegationResult, NewEntry
from boomerang.roles.base import Role, RoleRequest

DEFAULT_TEMPLATE = "{role} draft for '{goal}': {task}"


class TemplateRole(Role):
    """Deterministic drafting role for dry runs.

    Writes every required deliverable from ``template`` and, when
    ``decision_domain`` is set, logs one extra decision entry per task.
    """

    def __init__(
        self,
        name: str,
        template: str = DEFAULT_TEMPLATE,
        fields: dict[str, Any] | None = None,
        decision_domain: str = "decisionLog",
        risks: list[str] | None = None,
    ) -> None:
        self.name = name
        self.template = template
        self.fields = dict(fields or {})
        self.decision_domain = decision_domain
        self.risks = list(risks or [])

    def _goal(self, request: RoleRequest) -> str:
        run_record = request.input_content(f"runs/{request.task.run_id}", default={})
        if isinstance(run_record, dict):
            return str(run_record.get("goal", ""))
        return ""

    async def execute(self, request: RoleRequest) -> DelegationResult:
        task = request.task
        goal = self._goal(request)
        deliverables: dict[str, Any] = {}
        for key in task.deliverables:
            text = self.template.format(
                role=self.name, goal=goal, task=task.description, key=key, phase=task.phase
            )
            deliverables[key] = {"summary": text, **self.fields} if self.fields else text

        entries: tuple[NewEntry, ...] = ()
        if self.decision_domain:
            slug = task.id.replace(":", "-")
            produced = ", ".join(task.deliverables) or "no deliverables"
            entries = (
                NewEntry(
                    key=f"{self.decision_domain}/{slug}",
                    domain=self.decision_domain,
                    content={
                        "decision": f"{self.name} produced {produced}",
                        "rationale": task.description,
                        "attempt": request.attempt,
                    },
                ),
            )
        return DelegationResult(
            task_id=task.id,
            role=self.name,
            success=True,
            deliverables=deliverables,
            entries=entries,
            risks=tuple(self.risks),
            summary=f"{self.name} completed {task.id}",
        )
