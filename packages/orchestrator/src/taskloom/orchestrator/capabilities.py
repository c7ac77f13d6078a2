"""Capability Directory 实现 -- YAML 声明式 Worker 目录 + 静态目录

YAML 文件格式（每个 Worker 一个文件）::

    agent:
      id: data_collection_agent
      name: Data Collection Agent
      role: data_collector
      version: 1.0.0
      implementation: manual_input
      availability: available
      fallback_strategy: user_input
      agent_card:
        skills: [data_collection, form_generation]
      a2a:
        routing:
          can_receive_from: [orchestrator_agent]
          can_send_to: [ux_optimization_agent]

路由表为 sender -> {receiver}：
can_receive_from 中的每个 sender 都可发往本 Worker，
本 Worker 可发往 can_send_to 中的每个 receiver。
"""

from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import Any

import structlog
import yaml

from taskloom.core.models import AgentCapability, WorkerAvailability, WorkerFallbackStrategy

from .exceptions import WorkerUnavailable
from .protocols import Worker

log = structlog.get_logger()

WorkerFactory = Callable[[AgentCapability], Worker]

# 模板与测试用配置，不作为真实 Worker 加载
_SKIPPED_PREFIXES = ("base_agent", "test_agent")


def _first(mapping: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in mapping and mapping[key] is not None:
            return mapping[key]
    return default


def _parse_skills(raw: Any) -> set[str]:
    """skills 可以是字符串列表，也可以是带 id/name 的对象列表"""
    skills: set[str] = set()
    for item in raw or []:
        if isinstance(item, str):
            skills.add(item)
        elif isinstance(item, Mapping):
            value = _first(item, "id", "name")
            if value:
                skills.add(str(value))
    return skills


def _parse_enum(enum_cls, value: Any, default, *, source: str, field: str):
    if value is None:
        return default
    try:
        return enum_cls(str(value))
    except ValueError:
        log.warning(
            "capability_field_invalid",
            source=source,
            field=field,
            value=value,
        )
        return default


def parse_capability(config: Mapping[str, Any], source: str = "<memory>") -> AgentCapability | None:
    """从一份 YAML 文档解析 AgentCapability，缺少 agent.id 时返回 None"""
    agent = config.get("agent") if isinstance(config, Mapping) else None
    if not isinstance(agent, Mapping) or not agent.get("id"):
        return None

    a2a = agent.get("a2a") or config.get("a2a") or {}
    routing = a2a.get("routing") if isinstance(a2a, Mapping) else None
    if not isinstance(routing, Mapping):
        routing = {}
    card = agent.get("agent_card")
    if not isinstance(card, Mapping):
        card = {}

    worker_id = str(agent["id"])
    return AgentCapability(
        worker_id=worker_id,
        name=str(agent.get("name") or worker_id),
        role=str(agent.get("role") or ""),
        version=str(agent.get("version") or "1.0.0"),
        description=str(agent.get("description") or card.get("description") or ""),
        skills=_parse_skills(card.get("skills")),
        availability=_parse_enum(
            WorkerAvailability,
            agent.get("availability"),
            WorkerAvailability.AVAILABLE,
            source=source,
            field="availability",
        ),
        fallback_strategy=_parse_enum(
            WorkerFallbackStrategy,
            _first(agent, "fallback_strategy", "fallbackStrategy"),
            None,
            source=source,
            field="fallback_strategy",
        ),
        can_receive_from=[str(x) for x in _first(routing, "can_receive_from", "canReceiveFrom", default=[])],
        can_send_to=[str(x) for x in _first(routing, "can_send_to", "canSendTo", default=[])],
        implementation=agent.get("implementation"),
    )


def build_routing_table(capabilities: Iterable[AgentCapability]) -> dict[str, set[str]]:
    """由各 Worker 的 can_receive_from / can_send_to 构建 sender -> receivers 路由表"""
    table: dict[str, set[str]] = {}
    for cap in capabilities:
        for sender in cap.can_receive_from:
            table.setdefault(sender, set()).add(cap.worker_id)
        if cap.can_send_to:
            table.setdefault(cap.worker_id, set()).update(cap.can_send_to)
    return table


class _FactoryResolver:
    """按 implementation 标识实例化 Worker 的共用逻辑"""

    def __init__(self, factories: Mapping[str, WorkerFactory] | None) -> None:
        self._factories: dict[str, WorkerFactory] = dict(factories or {})

    def register_factory(self, implementation: str, factory: WorkerFactory) -> None:
        self._factories[implementation] = factory

    def has_factory(self, cap: AgentCapability) -> bool:
        return (cap.implementation or cap.worker_id) in self._factories

    def instantiate(self, cap: AgentCapability) -> Worker:
        key = cap.implementation or cap.worker_id
        factory = self._factories.get(key)
        if factory is None:
            raise WorkerUnavailable(cap.worker_id, f"no implementation registered for '{key}'")
        try:
            return factory(cap)
        except Exception as e:
            log.warning(
                "worker_instantiation_failed",
                worker_id=cap.worker_id,
                implementation=key,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise WorkerUnavailable(cap.worker_id, f"instantiation failed: {e}") from e


class YamlCapabilityDirectory:
    """从 YAML 目录加载 Worker 能力声明

    首次 list_capabilities 时懒加载；reload() 重新扫描目录。
    没有已注册实现的 Worker 标记为 not_implemented。
    """

    def __init__(
        self,
        config_dir: str | Path,
        factories: Mapping[str, WorkerFactory] | None = None,
    ) -> None:
        self._config_dir = Path(config_dir)
        self._resolver = _FactoryResolver(factories)
        self._capabilities: dict[str, AgentCapability] = {}
        self._routing: dict[str, set[str]] = {}
        self._loaded = False

    @property
    def config_dir(self) -> Path:
        return self._config_dir

    def register_factory(self, implementation: str, factory: WorkerFactory) -> None:
        self._resolver.register_factory(implementation, factory)
        for worker_id, cap in list(self._capabilities.items()):
            if cap.availability == WorkerAvailability.NOT_IMPLEMENTED and self._resolver.has_factory(cap):
                self._capabilities[worker_id] = cap.model_copy(
                    update={"availability": WorkerAvailability.AVAILABLE}
                )

    def reload(self) -> dict[str, AgentCapability]:
        """扫描配置目录，返回加载到的能力快照"""
        capabilities: dict[str, AgentCapability] = {}

        if not self._config_dir.is_dir():
            log.warning("capability_dir_missing", config_dir=str(self._config_dir))
        else:
            files = sorted([*self._config_dir.glob("*.yaml"), *self._config_dir.glob("*.yml")])
            for path in files:
                if path.name.startswith(_SKIPPED_PREFIXES):
                    continue
                try:
                    config = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                except (OSError, yaml.YAMLError) as e:
                    log.error(
                        "capability_file_load_failed",
                        file=path.name,
                        error=str(e),
                    )
                    continue

                cap = parse_capability(config, source=path.name)
                if cap is None:
                    log.debug("capability_file_skipped", file=path.name, reason="missing agent.id")
                    continue
                if cap.is_available and not self._resolver.has_factory(cap):
                    cap = cap.model_copy(update={"availability": WorkerAvailability.NOT_IMPLEMENTED})
                capabilities[cap.worker_id] = cap

        self._capabilities = capabilities
        self._routing = build_routing_table(capabilities.values())
        self._loaded = True
        log.info(
            "capabilities_loaded",
            config_dir=str(self._config_dir),
            count=len(capabilities),
            workers=sorted(capabilities),
        )
        return dict(capabilities)

    async def list_capabilities(self) -> dict[str, AgentCapability]:
        if not self._loaded:
            self.reload()
        return dict(self._capabilities)

    async def resolve_worker(self, worker_id: str, context_id: str) -> Worker:
        if not self._loaded:
            self.reload()
        cap = self._capabilities.get(worker_id)
        if cap is None:
            raise WorkerUnavailable(worker_id, "not declared in capability directory")
        worker = self._resolver.instantiate(cap)
        log.debug("worker_resolved", worker_id=worker_id, context_id=context_id)
        return worker

    def can_communicate(self, from_id: str, to_id: str) -> bool:
        return to_id in self._routing.get(from_id, set())


class StaticCapabilityDirectory:
    """内存中的静态能力目录（嵌入场景与测试）

    workers 直接给出 worker_id -> Worker 实例；
    未给出实例的 Worker 再尝试 factories。
    """

    def __init__(
        self,
        capabilities: Iterable[AgentCapability],
        workers: Mapping[str, Worker] | None = None,
        routes: Mapping[str, Iterable[str]] | None = None,
        factories: Mapping[str, WorkerFactory] | None = None,
    ) -> None:
        self._capabilities = {cap.worker_id: cap for cap in capabilities}
        self._workers: dict[str, Worker] = dict(workers or {})
        self._resolver = _FactoryResolver(factories)
        self._extra_routes = {sender: set(receivers) for sender, receivers in (routes or {}).items()}
        self._rebuild_routing()

    def add(self, capability: AgentCapability, worker: Worker | None = None) -> None:
        """新增 Worker（增量，不影响已有条目）"""
        self._capabilities[capability.worker_id] = capability
        if worker is not None:
            self._workers[capability.worker_id] = worker
        self._rebuild_routing()

    def _rebuild_routing(self) -> None:
        self._routing = build_routing_table(self._capabilities.values())
        for sender, receivers in self._extra_routes.items():
            self._routing.setdefault(sender, set()).update(receivers)

    async def list_capabilities(self) -> dict[str, AgentCapability]:
        return dict(self._capabilities)

    async def resolve_worker(self, worker_id: str, context_id: str) -> Worker:
        worker = self._workers.get(worker_id)
        if worker is not None:
            return worker
        cap = self._capabilities.get(worker_id)
        if cap is None:
            raise WorkerUnavailable(worker_id, "not declared in capability directory")
        return self._resolver.instantiate(cap)

    def can_communicate(self, from_id: str, to_id: str) -> bool:
        return to_id in self._routing.get(from_id, set())
