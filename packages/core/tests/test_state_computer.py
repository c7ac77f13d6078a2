"""State Computer 测试 -- 回放规则、确定性、前缀查询与完成度"""

from datetime import UTC, datetime, timedelta

from taskloom.core.models import Actor, ActorType, ContextEntry, Operation, TaskStatus
from taskloom.core.models.payloads import PAYLOAD_MODELS
from taskloom.core.state_computer import (
    REDUCERS,
    RESERVED_KEYS,
    apply_entry,
    compute_completeness,
    compute_state,
    compute_state_at_sequence,
    compute_state_at_time,
    deep_merge,
    diff_states,
    initial_state,
)

BASE_TIME = datetime(2025, 1, 1, tzinfo=UTC)


def make_entry(sequence, operation, data=None):
    return ContextEntry(
        entry_id=f"e{sequence}",
        context_id="ctx-test",
        sequence_number=sequence,
        timestamp=BASE_TIME + timedelta(seconds=sequence),
        actor=Actor(type=ActorType.SYSTEM, id="orchestrator"),
        operation=operation,
        data=data or {},
        reasoning=f"test entry {sequence}",
    )


PLAN = {
    "phases": [
        {"name": "Collect", "subtasks": []},
        {"name": "Review", "subtasks": []},
    ],
    "metadata": {"plan_id": "p1", "created_at": BASE_TIME.isoformat()},
}


def _history():
    return [
        make_entry(1, Operation.TASK_CREATED, {"template_id": "t", "tenant_id": "x"}),
        make_entry(2, Operation.ORCHESTRATION_STARTED, {"orchestrator_version": "1.0.0"}),
        make_entry(3, Operation.EXECUTION_PLAN_CREATED, {"plan": PLAN}),
        make_entry(4, Operation.PHASE_STARTED, {"phase_name": "Collect", "phase_index": 0}),
        make_entry(
            5,
            Operation.SUBTASK_COMPLETED,
            {
                "subtask_id": "1.1",
                "phase_name": "Collect",
                "worker_id": "w1",
                "output_data": {"profile": {"name": "Ada"}},
            },
        ),
        make_entry(
            6,
            Operation.PHASE_COMPLETED,
            {"phase_name": "Collect", "phase_index": 0, "status": "completed"},
        ),
    ]


class TestReducerTable:
    def test_every_operation_has_reducer(self):
        assert set(REDUCERS) == set(Operation)
        assert set(REDUCERS) == set(PAYLOAD_MODELS)


class TestScenarioA:
    """task_created -> 数据收集 -> 完成"""

    def test_replay(self):
        history = [
            make_entry(1, Operation.TASK_CREATED, {"template_id": "t", "tenant_id": "x"}),
            make_entry(2, Operation.DATA_COLLECTED, {"data": {"name": "Ada"}}),
            make_entry(3, Operation.TASK_COMPLETED, {}),
        ]
        state = compute_state(history)
        assert state.status == TaskStatus.COMPLETED
        assert state.completeness == 100
        assert state.data["name"] == "Ada"
        assert "completed_at" in state.data

    def test_empty_history(self):
        state = compute_state([])
        assert state == initial_state()
        assert state.status == TaskStatus.PENDING
        assert state.phase == "initialization"
        assert state.completeness == 0
        assert state.data == {}


class TestDeterminism:
    def test_same_history_same_state(self):
        assert compute_state(_history()) == compute_state(_history())

    def test_order_of_input_does_not_matter(self):
        history = _history()
        assert compute_state(list(reversed(history))) == compute_state(history)

    def test_apply_entry_matches_full_replay(self):
        history = _history()
        state = compute_state(history[:-1])
        assert apply_entry(state, history[-1]) == compute_state(history)

    def test_apply_entry_does_not_mutate_input(self):
        history = _history()
        state = compute_state(history[:3])
        snapshot = state.model_copy(deep=True)
        apply_entry(state, history[3])
        assert state == snapshot

    def test_prefix_by_sequence(self):
        history = _history()
        at_3 = compute_state_at_sequence(history, 3)
        assert at_3 == compute_state(history[:3])
        assert at_3.phase == "initialization"
        assert at_3.status == TaskStatus.IN_PROGRESS

    def test_prefix_by_time(self):
        history = _history()
        at = history[3].timestamp
        assert compute_state_at_time(history, at) == compute_state(history[:4])
        assert compute_state_at_time(history, at).phase == "Collect"


class TestReducers:
    def test_subtask_output_merged_into_data(self):
        state = compute_state(_history())
        assert state.data["profile"] == {"name": "Ada"}
        assert state.data["completed_subtasks"] == ["1.1"]
        assert state.data["subtask_outputs"]["1.1"] == {"profile": {"name": "Ada"}}

    def test_completed_phase_recorded(self):
        state = compute_state(_history())
        assert state.data["completed_phases"] == ["Collect"]
        assert state.data["phase_results"] == {"Collect": "completed"}

    def test_reserved_keys_not_overwritten_by_worker_output(self):
        history = _history() + [
            make_entry(
                7,
                Operation.SUBTASK_COMPLETED,
                {
                    "subtask_id": "2.1",
                    "phase_name": "Review",
                    "worker_id": "w2",
                    "output_data": {"execution_plan": "bogus", "completed_phases": []},
                },
            )
        ]
        state = compute_state(history)
        assert state.data["execution_plan"]["phases"][0]["name"] == "Collect"
        assert state.data["completed_phases"] == ["Collect"]

    def test_ui_request_lifecycle(self):
        history = [
            make_entry(1, Operation.TASK_CREATED, {"template_id": "t", "tenant_id": "x"}),
            make_entry(
                2,
                Operation.UI_REQUESTS_CREATED,
                {
                    "ui_requests": [
                        {"request_id": "r1", "template_type": "form"},
                        {"request_id": "r2", "template_type": "form"},
                    ],
                    "summary": {"count": 2},
                },
            ),
            make_entry(3, Operation.STATUS_UPDATED, {"from_status": "in_progress", "to_status": "waiting_for_input"}),
            make_entry(4, Operation.UI_RESPONSE_RECEIVED, {"request_id": "r1", "response": {"email": "a@b.c"}}),
        ]
        state = compute_state(history)
        assert state.status == TaskStatus.WAITING_FOR_INPUT
        assert state.data["pending_ui_requests"] == ["r2"]
        assert state.data["ui_responses"] == {"r1": {"email": "a@b.c"}}
        assert state.data["email"] == "a@b.c"

    def test_task_failed(self):
        history = [
            make_entry(1, Operation.TASK_CREATED, {"template_id": "t", "tenant_id": "x"}),
            make_entry(2, Operation.TASK_FAILED, {"error": "boom"}),
        ]
        state = compute_state(history)
        assert state.status == TaskStatus.FAILED
        assert state.data["error"] == "boom"

    def test_recovery_counted(self):
        history = [
            make_entry(1, Operation.TASK_CREATED, {"template_id": "t", "tenant_id": "x"}),
            make_entry(2, Operation.TASK_RECOVERED, {"reason": "restart", "recovered_at": BASE_TIME.isoformat()}),
            make_entry(3, Operation.TASK_RECOVERED, {"reason": "restart", "recovered_at": BASE_TIME.isoformat()}),
        ]
        state = compute_state(history)
        assert state.status == TaskStatus.IN_PROGRESS
        assert state.data["recovery_count"] == 2

    def test_unknown_operation_shallow_merged(self):
        history = [
            make_entry(1, Operation.TASK_CREATED, {"template_id": "t", "tenant_id": "x"}),
            make_entry(2, "custom_note", {"note": {"text": "hi"}}),
        ]
        state = compute_state(history)
        assert state.data["note"] == {"text": "hi"}
        assert state.status == TaskStatus.PENDING

    def test_malformed_payload_falls_back_to_shallow_merge(self):
        history = [
            make_entry(1, Operation.TASK_CREATED, {"template_id": "t", "tenant_id": "x"}),
            make_entry(
                2,
                Operation.UI_REQUESTS_CREATED,
                {"ui_requests": 5, "validation_warning": True},
            ),
        ]
        state = compute_state(history)
        assert state.data["validation_warning"] is True

    def test_last_updated_tracks_latest_entry(self):
        history = _history()
        state = compute_state(history)
        assert state.data["last_updated"] == history[-1].timestamp.isoformat()

    def test_last_updated_is_reserved(self):
        assert "last_updated" in RESERVED_KEYS
        assert "execution_plan" in RESERVED_KEYS


class TestDeepMerge:
    def test_nested_dicts_merged(self):
        base = {"a": {"x": 1, "y": 2}, "b": 1}
        result = deep_merge(base, {"a": {"y": 3, "z": 4}})
        assert result == {"a": {"x": 1, "y": 3, "z": 4}, "b": 1}

    def test_lists_replaced(self):
        assert deep_merge({"a": [1, 2]}, {"a": [3]}) == {"a": [3]}

    def test_inputs_unchanged(self):
        base = {"a": {"x": 1}}
        update = {"a": {"y": [1]}}
        result = deep_merge(base, update)
        result["a"]["y"].append(2)
        assert base == {"a": {"x": 1}}
        assert update == {"a": {"y": [1]}}


class TestCompleteness:
    def test_phase_ratio(self):
        assert compute_state(_history()).completeness == 50

    def test_required_fields(self):
        history = [
            make_entry(
                1,
                Operation.TASK_CREATED,
                {
                    "template_id": "t",
                    "tenant_id": "x",
                    "initial_data": {"profile": {"name": "Ada"}},
                    "required_fields": ["profile.name", "profile.email", "company", "role"],
                },
            ),
        ]
        assert compute_state(history).completeness == 25

    def test_empty_values_not_counted(self):
        state = initial_state()
        state.data = {"required_fields": ["a", "b"], "a": "", "b": []}
        assert compute_completeness(state) == 0

    def test_completed_is_always_100(self):
        state = initial_state()
        state.status = TaskStatus.COMPLETED
        assert compute_completeness(state) == 100

    def test_never_exceeds_bounds(self):
        state = compute_state(_history())
        assert 0 <= state.completeness <= 100


class TestDiffStates:
    def test_diff(self):
        history = _history()
        before = compute_state(history[:3])
        after = compute_state(history)
        diff = diff_states(before, after)
        assert diff["changes"]["phase"] == {"from": "initialization", "to": "Collect"}
        assert diff["changes"]["completeness"] == {"from": 0, "to": 50}
        assert "status" not in diff["changes"]
        assert "profile" in diff["added_keys"]
        assert "last_updated" in diff["modified_keys"]
        assert diff["removed_keys"] == []
