"""Execution Plan Generator -- Planner 调用、校验、Worker 修正、静态降级

生成链路（每一步无论成败都写入 Context Entry）：
1. 调用 Planner，失败记录 planner_call_failed
2. 用 PlannerResponse 校验响应结构，失败记录 plan_validation_failed
3. 修正快照中不存在的 Worker 引用（别名表 -> 技能交集 -> 首个可用 Worker），
   记录 plan_workers_corrected
4. 以上任一步失败时使用单阶段人工指引降级计划（metadata.is_fallback=True）

最终统一写入一条 execution_plan_created。返回的计划绝不引用快照之外的 Worker。
"""

from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from ulid import ULID

from taskloom.core.config import RESPONSE_EXCERPT_LENGTH
from taskloom.core.event_log import EntryLog
from taskloom.core.models import (
    AgentCapability,
    ExecutionPhase,
    ExecutionPlan,
    Operation,
    PlanMetadata,
    Subtask,
    TaskContext,
)
from taskloom.core.models.payloads import (
    ExecutionPlanCreatedPayload,
    PlannerCallFailedPayload,
    PlanValidationFailedPayload,
    PlanWorkersCorrectedPayload,
    WorkerCorrection,
)
from taskloom.core.state_computer import RESERVED_KEYS
from taskloom.provider.exceptions import PlannerResponseError
from taskloom.provider.planner import extract_json

from .config import PlanningConfig
from .exceptions import InvalidWorkerReference, PlanGenerationFailed
from .protocols import Planner

log = structlog.get_logger()

FALLBACK_PHASE_NAME = "Manual Task Processing"


# ============================================================
# Planner 响应结构
# ============================================================


class PlannerSubtask(BaseModel):
    description: str = Field(min_length=1)
    agent: str = Field(min_length=1)
    specific_instruction: str
    input_data: dict[str, Any] = Field(default_factory=dict)
    expected_output: Any = None
    success_criteria: list[str] = Field(default_factory=list)
    required_capabilities: list[str] = Field(default_factory=list)

    @field_validator("success_criteria", "required_capabilities", mode="before")
    @classmethod
    def _listify(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v


class PlannerPhase(BaseModel):
    name: str = Field(min_length=1)
    subtasks: list[PlannerSubtask] = Field(min_length=1)
    parallel_execution: bool = False
    dependencies: list[str] = Field(default_factory=list)


class PlannerResponse(BaseModel):
    """Planner 返回的候选计划"""

    reasoning: dict[str, Any] = Field(default_factory=dict)
    phases: list[PlannerPhase] = Field(min_length=1)
    estimated_duration: str | None = None
    user_interactions: str | None = None

    @field_validator("reasoning", mode="before")
    @classmethod
    def _wrap_text_reasoning(cls, v: Any) -> Any:
        if isinstance(v, str):
            return {"summary": v}
        if v is None:
            return {}
        return v

    @field_validator("estimated_duration", "user_interactions", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Any:
        if v is None or isinstance(v, str):
            return v
        return str(v)

    @model_validator(mode="after")
    def _check_phase_names(self) -> "PlannerResponse":
        seen: set[str] = set()
        for phase in self.phases:
            if phase.name in seen:
                raise ValueError(f"duplicate phase name: {phase.name}")
            unknown = [dep for dep in phase.dependencies if dep not in seen]
            if unknown:
                raise ValueError(
                    f"phase '{phase.name}' depends on phases that do not precede it: {unknown}"
                )
            seen.add(phase.name)
        return self


# ============================================================
# PlanGenerator
# ============================================================


class PlanGenerator:
    """执行计划生成器"""

    def __init__(self, entry_log: EntryLog, planner: Planner, config: PlanningConfig) -> None:
        self._entry_log = entry_log
        self._planner = planner
        self._config = config

    async def create_plan(
        self,
        context: TaskContext,
        snapshot: dict[str, AgentCapability],
    ) -> ExecutionPlan:
        """为任务生成执行计划

        Raises:
            PlanGenerationFailed: 能力快照为空
            PersistenceAppendFailed: 条目写入失败
        """
        if not snapshot:
            raise PlanGenerationFailed(context.context_id, "capability snapshot is empty")

        plan: ExecutionPlan | None = None
        raw = await self._call_planner(context, snapshot)
        if raw is not None:
            parsed = await self._validate(context, raw)
            if parsed is not None:
                try:
                    plan = await self._bind_workers(context, parsed, snapshot)
                except InvalidWorkerReference as e:
                    log.warning(
                        "plan_worker_reference_uncorrectable",
                        context_id=context.context_id,
                        worker_id=e.worker_id,
                        subtask_id=e.subtask_id,
                    )
                    await self._entry_log.append(
                        context,
                        Operation.PLAN_VALIDATION_FAILED,
                        PlanValidationFailedPayload(errors=[str(e)]),
                        reasoning=f"Worker reference '{e.worker_id}' could not be corrected; "
                        "using manual-guidance fallback plan",
                    )

        if plan is not None and not plan.worker_ids() <= snapshot.keys():
            log.error(
                "plan_references_unknown_workers",
                context_id=context.context_id,
                unknown=sorted(plan.worker_ids() - snapshot.keys()),
            )
            plan = None

        if plan is None:
            plan = self.build_fallback_plan(context, snapshot)
            reasoning = (
                "Planner output unavailable or unusable; created static single-phase "
                f"manual-guidance plan bound to '{plan.phases[0].subtasks[0].assigned_worker_id}'"
            )
        else:
            reasoning = (
                f"Planner produced {len(plan.phases)} phase(s) using workers "
                f"{sorted(plan.worker_ids())}"
            )

        await self._entry_log.append(
            context,
            Operation.EXECUTION_PLAN_CREATED,
            ExecutionPlanCreatedPayload(plan=plan, reasoning=plan.reasoning),
            reasoning=reasoning,
        )
        log.info(
            "plan_generated",
            context_id=context.context_id,
            plan_id=plan.metadata.plan_id,
            is_fallback=plan.metadata.is_fallback,
            phases=plan.phase_names(),
        )
        return plan

    # ---- 步骤 1: Planner 调用 ----

    def build_prompt_context(
        self,
        context: TaskContext,
        snapshot: dict[str, AgentCapability],
    ) -> dict[str, Any]:
        metadata = context.metadata
        return {
            "task": {
                "context_id": context.context_id,
                "template_id": context.template_id,
                "title": metadata.get("title", ""),
                "description": metadata.get("description", ""),
                "goals": metadata.get("goals"),
                "data": {
                    k: v for k, v in context.current_state.data.items() if k not in RESERVED_KEYS
                },
            },
            "capabilities": [
                {
                    "agent": cap.worker_id,
                    "name": cap.name,
                    "role": cap.role,
                    "skills": sorted(cap.skills),
                    "availability": str(cap.availability),
                }
                for cap in snapshot.values()
            ],
        }

    async def _call_planner(
        self,
        context: TaskContext,
        snapshot: dict[str, AgentCapability],
    ) -> Any:
        try:
            return await self._planner.generate_plan(self.build_prompt_context(context, snapshot))
        except Exception as e:
            log.warning(
                "planner_call_failed",
                context_id=context.context_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            await self._entry_log.append(
                context,
                Operation.PLANNER_CALL_FAILED,
                PlannerCallFailedPayload(error_type=type(e).__name__, error_message=str(e)),
                reasoning=f"Planner call failed ({type(e).__name__}); plan generation falls back",
            )
            return None

    # ---- 步骤 2: 结构校验 ----

    async def _validate(self, context: TaskContext, raw: Any) -> PlannerResponse | None:
        excerpt = raw if isinstance(raw, str) else repr(raw)
        errors: list[str]
        try:
            data = extract_json(raw) if isinstance(raw, str) else raw
            return PlannerResponse.model_validate(data)
        except PlannerResponseError as e:
            errors = [str(e)]
        except ValidationError as e:
            errors = [
                f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
                for err in e.errors()
            ]

        log.warning(
            "plan_validation_failed",
            context_id=context.context_id,
            error_count=len(errors),
        )
        await self._entry_log.append(
            context,
            Operation.PLAN_VALIDATION_FAILED,
            PlanValidationFailedPayload(
                errors=errors,
                response_excerpt=excerpt[:RESPONSE_EXCERPT_LENGTH],
            ),
            reasoning=f"Planner response failed schema validation with {len(errors)} error(s)",
        )
        return None

    # ---- 步骤 3: Worker 修正 ----

    def _correct_worker(
        self,
        worker_id: str,
        required_skills: list[str],
        snapshot: dict[str, AgentCapability],
    ) -> tuple[str | None, str]:
        alias = self._config.worker_aliases.get(worker_id)
        if alias and alias in snapshot:
            return alias, "alias"

        available = [cap for cap in snapshot.values() if cap.is_available]
        wanted = set(required_skills)
        if wanted:
            for cap in available:
                if cap.skills & wanted:
                    return cap.worker_id, "skill_overlap"

        if available:
            return available[0].worker_id, "first_available"
        return None, ""

    async def _bind_workers(
        self,
        context: TaskContext,
        parsed: PlannerResponse,
        snapshot: dict[str, AgentCapability],
    ) -> ExecutionPlan:
        corrections: list[WorkerCorrection] = []
        phases: list[ExecutionPhase] = []

        for phase_index, phase in enumerate(parsed.phases, start=1):
            subtasks: list[Subtask] = []
            for subtask_index, item in enumerate(phase.subtasks, start=1):
                subtask_id = f"{phase_index}.{subtask_index}"
                worker_id = item.agent
                if worker_id not in snapshot:
                    corrected, method = self._correct_worker(
                        worker_id, item.required_capabilities, snapshot
                    )
                    if corrected is None:
                        raise InvalidWorkerReference(worker_id, subtask_id)
                    corrections.append(
                        WorkerCorrection(
                            subtask_id=subtask_id,
                            original_worker_id=worker_id,
                            corrected_worker_id=corrected,
                            method=method,
                        )
                    )
                    worker_id = corrected
                subtasks.append(
                    Subtask(
                        subtask_id=subtask_id,
                        description=item.description,
                        assigned_worker_id=worker_id,
                        instruction=item.specific_instruction,
                        input_data=item.input_data,
                        expected_output=item.expected_output,
                        success_criteria=item.success_criteria,
                        required_skills=item.required_capabilities,
                    )
                )
            phases.append(
                ExecutionPhase(
                    name=phase.name,
                    subtasks=subtasks,
                    parallel_execution=phase.parallel_execution,
                    dependencies=phase.dependencies,
                )
            )

        if corrections:
            log.info(
                "plan_workers_corrected",
                context_id=context.context_id,
                corrections=len(corrections),
            )
            await self._entry_log.append(
                context,
                Operation.PLAN_WORKERS_CORRECTED,
                PlanWorkersCorrectedPayload(corrections=corrections),
                reasoning=f"Corrected {len(corrections)} worker reference(s) absent from "
                "the capability directory",
            )

        return ExecutionPlan(
            phases=phases,
            reasoning=parsed.reasoning,
            metadata=PlanMetadata(
                plan_id=str(ULID()),
                is_fallback=False,
                source="planner",
                corrections=len(corrections),
                estimated_duration=parsed.estimated_duration,
                user_interactions=parsed.user_interactions,
                snapshot_worker_ids=sorted(snapshot),
                created_at=datetime.now(UTC),
            ),
        )

    # ---- 步骤 4: 静态降级计划 ----

    def _select_fallback_worker(self, snapshot: dict[str, AgentCapability]) -> str:
        if self._config.fallback_worker_id in snapshot:
            return self._config.fallback_worker_id

        available = [cap for cap in snapshot.values() if cap.is_available]
        fallback_skills = set(self._config.fallback_skills)
        for cap in available:
            if cap.skills & fallback_skills:
                return cap.worker_id
        if available:
            return available[0].worker_id
        return next(iter(snapshot))

    def build_fallback_plan(
        self,
        context: TaskContext,
        snapshot: dict[str, AgentCapability],
    ) -> ExecutionPlan:
        worker_id = self._select_fallback_worker(snapshot)
        subtask = Subtask(
            subtask_id="1.1",
            description="Guide user through manual task completion",
            assigned_worker_id=worker_id,
            instruction="Create guided forms and collect necessary information from user "
            "to complete the task manually",
            input_data={
                "task_type": context.template_id,
                "task_title": context.metadata.get("title", ""),
                "fallback": True,
            },
            expected_output="Completed task data collected from user",
            success_criteria=[
                "User has provided all required information",
                "Task marked as completed",
            ],
        )
        return ExecutionPlan(
            phases=[ExecutionPhase(name=FALLBACK_PHASE_NAME, subtasks=[subtask])],
            reasoning={
                "task_analysis": "Automated planning unavailable; the task is completed with user guidance",
                "coordination_strategy": "single manual-guidance phase",
            },
            metadata=PlanMetadata(
                plan_id=str(ULID()),
                is_fallback=True,
                source="fallback",
                estimated_duration="15-20 minutes",
                user_interactions="extensive",
                snapshot_worker_ids=sorted(snapshot),
                created_at=datetime.now(UTC),
            ),
        )
