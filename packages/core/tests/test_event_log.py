"""EntryLog 测试 -- 串行化追加、序号冲突重试、payload 校验"""

import asyncio
from datetime import UTC, datetime

import pytest
from taskloom.core.event_log import EntryLog, validate_payload
from taskloom.core.exceptions import (
    InvalidStatusTransition,
    PersistenceAppendFailed,
    SequenceConflictError,
)
from taskloom.core.models import Operation, TaskContext, TaskStatus
from taskloom.core.models.payloads import (
    DataCollectedPayload,
    StatusUpdatedPayload,
    TaskCreatedPayload,
)
from ulid import ULID

@pytest.fixture
def entry_log(store):
    return EntryLog(store)

async def _start(entry_log):
    context = TaskContext(
        context_id=str(ULID()),
        template_id="onboarding",
        tenant_id="tenant-1",
        created_at=datetime.now(UTC),
    )
    await entry_log.start_context(
        context,
        TaskCreatedPayload(template_id="onboarding", tenant_id="tenant-1"),
        reasoning="Task submitted",
    )
    return context

class TestStartContext:
    async def test_first_entry_is_task_created(self, store, entry_log):
        context = await _start(entry_log)
        assert context.last_sequence == 1
        assert context.history[0].operation == Operation.TASK_CREATED
        assert context.current_state.status == TaskStatus.PENDING

        loaded = await store.get_context(context.context_id)
        assert loaded.history == context.history

class TestAppend:
    async def test_sequence_and_state(self, store, entry_log):
        context = await _start(entry_log)
        entry = await entry_log.append(
            context,
            Operation.DATA_COLLECTED,
            DataCollectedPayload(data={"name": "Ada"}),
            reasoning="Collected name",
        )
        assert entry.sequence_number == 2
        assert context.current_state.data["name"] == "Ada"
        assert await store.get_computed_state(context.context_id) == context.current_state

    async def test_empty_reasoning_rejected(self, entry_log):
        context = await _start(entry_log)
        with pytest.raises(ValueError):
            await entry_log.append(context, Operation.DATA_COLLECTED, {"data": {}}, reasoning="  ")
        assert context.last_sequence == 1

    async def test_concurrent_appends_are_contiguous(self, store, entry_log):
        context = await _start(entry_log)
        await asyncio.gather(
            *(
                entry_log.append(
                    context,
                    Operation.DATA_COLLECTED,
                    {"data": {f"field_{i}": i}},
                    reasoning=f"Subtask {i} finished",
                )
                for i in range(20)
            )
        )
        history = await store.read_history(context.context_id)
        assert [e.sequence_number for e in history] == list(range(1, 22))
        assert all(f"field_{i}" in context.current_state.data for i in range(20))

    async def test_stale_context_reloaded(self, store, entry_log):
        """另一写入方已追加条目时，先同步历史再分配序号"""
        context = await _start(entry_log)
        other = await store.get_context(context.context_id)
        await EntryLog(store).append(
            other, Operation.DATA_COLLECTED, {"data": {"a": 1}}, reasoning="other writer"
        )

        entry = await entry_log.append(
            context, Operation.DATA_COLLECTED, {"data": {"b": 2}}, reasoning="this writer"
        )
        assert entry.sequence_number == 3
        assert context.current_state.data["a"] == 1
        assert context.current_state.data["b"] == 2

    async def test_conflict_retried(self, store, entry_log):
        context = await _start(entry_log)
        original = store.append_entry
        calls = 0

        async def flaky(entry, state):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise SequenceConflictError(entry.context_id, entry.sequence_number)
            return await original(entry, state)

        store.append_entry = flaky
        entry = await entry_log.append(
            context, Operation.DATA_COLLECTED, {"data": {}}, reasoning="retry me"
        )
        assert calls == 2
        assert entry.sequence_number == 2

    async def test_conflict_retries_exhausted(self, store):
        entry_log = EntryLog(store, max_retries=2)
        context = await _start(entry_log)

        async def always_conflict(entry, state):
            raise SequenceConflictError(entry.context_id, entry.sequence_number)

        store.append_entry = always_conflict
        with pytest.raises(PersistenceAppendFailed):
            await entry_log.append(
                context, Operation.DATA_COLLECTED, {"data": {}}, reasoning="never lands"
            )
        assert context.last_sequence == 1

    async def test_storage_error_wrapped(self, store, entry_log):
        context = await _start(entry_log)

        async def broken(entry, state):
            raise RuntimeError("disk full")

        store.append_entry = broken
        with pytest.raises(PersistenceAppendFailed) as exc_info:
            await entry_log.append(
                context, Operation.DATA_COLLECTED, {"data": {}}, reasoning="fails"
            )
        assert "disk full" in exc_info.value.reason

    async def test_lock_released_at_terminal_state(self, entry_log):
        context = await _start(entry_log)
        await entry_log.append(
            context, Operation.ORCHESTRATION_STARTED, {"orchestrator_version": "1.0.0"}, reasoning="x"
        )
        assert entry_log.has_lock(context.context_id)

        await entry_log.append(context, Operation.TASK_COMPLETED, {}, reasoning="done")
        assert not entry_log.has_lock(context.context_id)

class TestStatusTransitions:
    async def test_illegal_status_update_rejected(self, store, entry_log):
        context = await _start(entry_log)
        with pytest.raises(InvalidStatusTransition) as exc_info:
            await entry_log.append(
                context,
                Operation.STATUS_UPDATED,
                StatusUpdatedPayload(
                    from_status=TaskStatus.PENDING, to_status=TaskStatus.WAITING_FOR_INPUT
                ),
                reasoning="skip straight to waiting",
            )
        assert exc_info.value.from_status == TaskStatus.PENDING
        assert exc_info.value.to_status == TaskStatus.WAITING_FOR_INPUT
        assert context.current_state.status == TaskStatus.PENDING
        assert len(await store.read_history(context.context_id)) == 1

    async def test_legal_transitions_recorded(self, entry_log):
        context = await _start(entry_log)
        await entry_log.append(
            context, Operation.ORCHESTRATION_STARTED, {"orchestrator_version": "1.0.0"}, reasoning="go"
        )
        await entry_log.append(
            context,
            Operation.STATUS_UPDATED,
            StatusUpdatedPayload(
                from_status=TaskStatus.IN_PROGRESS, to_status=TaskStatus.WAITING_FOR_INPUT
            ),
            reasoning="needs input",
        )
        await entry_log.append(context, Operation.TASK_COMPLETED, {}, reasoning="done")
        assert context.current_state.status == TaskStatus.COMPLETED

    async def test_terminal_task_cannot_be_finished_again(self, store, entry_log):
        context = await _start(entry_log)
        await entry_log.append(context, Operation.TASK_FAILED, {"error": "boom"}, reasoning="failed")

        with pytest.raises(InvalidStatusTransition):
            await entry_log.append(context, Operation.TASK_COMPLETED, {}, reasoning="too late")
        with pytest.raises(InvalidStatusTransition):
            await entry_log.append(context, Operation.TASK_RESUMED, {}, reasoning="too late")
        assert context.current_state.status == TaskStatus.FAILED
        assert len(await store.read_history(context.context_id)) == 2


class TestPayloadValidation:
    def test_valid_payload_normalized(self):
        payload, problems = validate_payload(Operation.DATA_COLLECTED, {"data": {"a": 1}})
        assert problems is None
        assert payload == {"data": {"a": 1}, "source": ""}

    def test_unknown_operation_passes_through(self):
        payload, problems = validate_payload("custom_note", {"x": 1})
        assert problems is None
        assert payload == {"x": 1}

    async def test_invalid_payload_kept_with_warning(self, store, entry_log):
        context = await _start(entry_log)
        entry = await entry_log.append(
            context, Operation.PHASE_STARTED, {"phase_name": "Collect"}, reasoning="start"
        )
        assert entry.data["validation_warning"] is True
        assert entry.data["phase_name"] == "Collect"
        assert "[payload validation warning:" in entry.reasoning

        history = await store.read_history(context.context_id)
        assert len(history) == 2
        assert context.current_state.phase == "Collect"
