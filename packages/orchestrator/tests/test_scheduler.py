"""阶段状态推导与用户答复匹配测试"""

from taskloom.core.models import PhaseStatus, SubtaskResult, SubtaskStatus
from taskloom.orchestrator import derive_phase_status
from taskloom.orchestrator.scheduler import answered_input


def _result(status):
    return SubtaskResult(subtask_id="1.1", worker_id="w", status=status)


class TestDerivePhaseStatus:
    def test_needs_input_wins(self):
        results = [
            _result(SubtaskStatus.COMPLETED),
            _result(SubtaskStatus.FAILED),
            _result(SubtaskStatus.NEEDS_INPUT),
        ]
        assert derive_phase_status(results) == PhaseStatus.NEEDS_INPUT

    def test_failed_over_completed(self):
        results = [_result(SubtaskStatus.COMPLETED), _result(SubtaskStatus.FAILED)]
        assert derive_phase_status(results) == PhaseStatus.FAILED

    def test_delegated_counts_as_completed(self):
        results = [_result(SubtaskStatus.COMPLETED), _result(SubtaskStatus.DELEGATED)]
        assert derive_phase_status(results) == PhaseStatus.COMPLETED

    def test_empty_phase_completes(self):
        assert derive_phase_status([]) == PhaseStatus.COMPLETED


class TestAnsweredInput:
    def _data(self, pending, responses):
        return {
            "ui_requests": {
                "r1": {"request_id": "r1", "context": {"subtask_id": "1.1"}},
                "r2": {"request_id": "r2", "context": {"subtask_id": "1.1"}},
                "r3": {"request_id": "r3", "context": {"subtask_id": "2.1"}},
            },
            "pending_ui_requests": pending,
            "ui_responses": responses,
        }

    def test_all_answered(self):
        data = self._data([], {"r1": {"a": {"x": 1}}, "r2": {"a": {"y": 2}}})
        assert answered_input(data, "1.1") == {"a": {"x": 1, "y": 2}}

    def test_partially_answered(self):
        data = self._data(["r2"], {"r1": {"a": 1}})
        assert answered_input(data, "1.1") is None

    def test_no_requests_for_subtask(self):
        assert answered_input(self._data([], {}), "3.1") is None
