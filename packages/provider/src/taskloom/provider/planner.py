"""LLMPlanner -- 基于 LLM 的 Planner 协作方实现

三个调用都是 best-effort 且可能失败：
- generate_plan: 任务描述 + 能力快照 -> 候选计划 JSON
- optimize_ordering: UI 请求列表 -> 请求 ID 的推荐顺序
- generate_guidance: 任务描述 -> 人工完成任务的分步指引

返回值只做 JSON 解析，结构校验由调用方负责。所有失败统一抛出 ProviderError。
"""

import json
import re
from typing import Any

import structlog

from .config import ProviderConfig
from .exceptions import PlannerResponseError
from .fallback import FallbackManager

log = structlog.get_logger()

PLAN_SYSTEM_PROMPT = """You are the planning component of a multi-agent task orchestrator.
Decompose the task into ordered phases. Assign every subtask to exactly one agent taken
verbatim from the provided capability list.
Respond with a single JSON object and nothing else:
{
  "reasoning": {
    "task_analysis": "...",
    "subtask_decomposition": [
      {"subtask": "...", "required_capabilities": ["..."], "assigned_agent": "...", "rationale": "..."}
    ],
    "coordination_strategy": "..."
  },
  "phases": [
    {
      "name": "...",
      "subtasks": [
        {
          "description": "...",
          "agent": "...",
          "specific_instruction": "...",
          "input_data": {},
          "expected_output": "...",
          "success_criteria": ["..."],
          "required_capabilities": ["..."]
        }
      ],
      "parallel_execution": false,
      "dependencies": []
    }
  ],
  "estimated_duration": "...",
  "user_interactions": "..."
}"""

ORDERING_SYSTEM_PROMPT = """You order user-facing input requests so that related questions are
asked together and the user is interrupted as little as possible.
Respond with a single JSON object and nothing else:
{"ordered_request_ids": ["..."], "rationale": "..."}"""

GUIDANCE_SYSTEM_PROMPT = """Automation could not complete the task below. Write short, concrete
steps a person can follow to finish it manually.
Respond with a single JSON object and nothing else:
{"steps": ["..."]}"""

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)

# 错误信息中保留的响应摘要长度
_EXCERPT_LENGTH = 300


def extract_json(text: str) -> Any:
    """从 LLM 输出中提取 JSON（支持 ```json 代码块和前后夹杂文字）

    Raises:
        PlannerResponseError: 无法解析
    """
    candidates = [text.strip()]
    fenced = _FENCE_RE.search(text)
    if fenced:
        candidates.insert(0, fenced.group(1).strip())
    for open_char, close_char in (("{", "}"), ("[", "]")):
        start, end = text.find(open_char), text.rfind(close_char)
        if 0 <= start < end:
            candidates.append(text[start : end + 1])

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue

    raise PlannerResponseError(
        "Planner response is not valid JSON",
        excerpt=text[:_EXCERPT_LENGTH],
    )


class LLMPlanner:
    """通过 FallbackManager 调用 LLM 的 Planner"""

    def __init__(self, manager: FallbackManager, config: ProviderConfig) -> None:
        self._manager = manager
        self._config = config

    async def generate_plan(self, prompt_context: dict[str, Any]) -> dict[str, Any]:
        """生成候选执行计划

        Raises:
            ProviderError: LLM 调用失败或响应不是 JSON 对象
        """
        content = await self._call(
            PLAN_SYSTEM_PROMPT,
            prompt_context,
            model=self._config.planner_model,
            temperature=self._config.planner_temperature,
        )
        parsed = extract_json(content)
        if not isinstance(parsed, dict):
            raise PlannerResponseError(
                "Planner response must be a JSON object",
                excerpt=content[:_EXCERPT_LENGTH],
            )
        return parsed

    async def optimize_ordering(self, requests: list[dict[str, Any]]) -> list[str]:
        """返回请求 ID 的推荐顺序（调用方负责去重与补全）"""
        content = await self._call(
            ORDERING_SYSTEM_PROMPT,
            {"requests": requests},
            model=self._config.optimizer_model,
            temperature=0.0,
        )
        parsed = extract_json(content)
        if isinstance(parsed, dict):
            parsed = parsed.get("ordered_request_ids")
        if not isinstance(parsed, list):
            raise PlannerResponseError(
                "Ordering response must contain a list of request ids",
                excerpt=content[:_EXCERPT_LENGTH],
            )
        return [str(item) for item in parsed]

    async def generate_guidance(self, prompt_context: dict[str, Any]) -> list[str]:
        """生成人工完成任务的分步指引"""
        content = await self._call(
            GUIDANCE_SYSTEM_PROMPT,
            prompt_context,
            model=self._config.optimizer_model,
            temperature=0.3,
        )
        parsed = extract_json(content)
        steps = parsed.get("steps") if isinstance(parsed, dict) else parsed
        if not isinstance(steps, list) or not steps:
            raise PlannerResponseError(
                "Guidance response must contain a non-empty list of steps",
                excerpt=content[:_EXCERPT_LENGTH],
            )
        return [str(step) for step in steps]

    async def _call(
        self,
        system_prompt: str,
        payload: dict[str, Any],
        *,
        model: str,
        temperature: float,
    ) -> str:
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": json.dumps(payload, ensure_ascii=False, default=str)},
        ]
        result = await self._manager.call_with_fallback(
            messages,
            model=model,
            allow_fallback=False,
            temperature=temperature,
        )
        log.debug(
            "planner_call_completed",
            model=model,
            duration_ms=result.duration_ms,
            total_tokens=result.token_usage.total_tokens,
        )
        return result.content
