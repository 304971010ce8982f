"""
Tests for the workflow history chain

Hash chaining, tamper detection, replay of history into instance state, and
the rule that refused attempts leave no trace in history.
"""

import pytest

from clinic_workflow.exceptions import NotAssignedError, StaleTaskError
from clinic_workflow.history import (
    HistoryAction,
    HistoryRecorder,
    WorkflowHistoryEntry,
    replay_history,
    verify_chain,
)
from clinic_workflow.instances import WorkflowStatus


# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)


class TestHistoryChain:

    @pytest.mark.asyncio
    async def test_entries_are_chained(self, engine, leave_instance):
        await engine.approve_step(leave_instance.id, "nurse_lead", "Fine by me")
        history = await engine.get_workflow_history(leave_instance.id)

        assert [e.sequence_no for e in history] == list(range(1, len(history) + 1))
        assert history[0].previous_hash == ""
        for previous, entry in zip(history, history[1:]):
            assert entry.previous_hash == previous.current_hash
            assert entry.verify_hash()

        instance = await engine.get_instance(leave_instance.id)
        assert instance.history_count == len(history)
        assert instance.last_history_hash == history[-1].current_hash

    @pytest.mark.asyncio
    async def test_integrity_of_untouched_history(self, engine, leave_instance):
        await engine.approve_step(leave_instance.id, "nurse_lead")
        instance = await engine.get_instance(leave_instance.id)

        result = await engine.history.verify_integrity(leave_instance.id, instance)

        assert result["valid"] is True
        assert result["head_matches_instance"] is True
        assert result["hash_errors"] == []

    @pytest.mark.asyncio
    async def test_tampered_entry_detected(self, engine, storage, leave_instance):
        await engine.approve_step(leave_instance.id, "nurse_lead", "Fine by me")
        history = await engine.get_workflow_history(leave_instance.id)
        approved = next(e for e in history if e.action == HistoryAction.APPROVED)

        record = await storage.load(HistoryRecorder.TABLE, approved.id)
        record["actor_id"] = "bob"
        await storage.save(HistoryRecorder.TABLE, approved.id, record)

        result = await engine.history.verify_integrity(leave_instance.id)
        assert result["valid"] is False
        assert [e["sequence_no"] for e in result["hash_errors"]] == [approved.sequence_no]

    @pytest.mark.asyncio
    async def test_deleted_entry_detected(self, engine, storage, leave_instance):
        await engine.approve_step(leave_instance.id, "nurse_lead")
        history = await engine.get_workflow_history(leave_instance.id)
        await storage.delete(HistoryRecorder.TABLE, history[2].id)

        instance = await engine.get_instance(leave_instance.id)
        result = await engine.history.verify_integrity(leave_instance.id, instance)

        assert result["valid"] is False
        assert result["chain_breaks"]
        assert result["sequence_gaps"]
        assert result["head_matches_instance"] is False

    @pytest.mark.asyncio
    async def test_refused_attempts_are_not_recorded(self, engine, leave_instance):
        before = await engine.get_workflow_history(leave_instance.id)

        with pytest.raises(NotAssignedError):
            await engine.approve_step(leave_instance.id, "bob")
        await engine.approve_step(leave_instance.id, "nurse_lead")
        after_accept = await engine.get_workflow_history(leave_instance.id)
        with pytest.raises(StaleTaskError):
            await engine.approve_step(leave_instance.id, "nurse_lead")

        final = await engine.get_workflow_history(leave_instance.id)
        assert len(final) == len(after_accept)
        assert all(e.actor_id != "bob" for e in final)
        assert len(after_accept) > len(before)

    def test_entry_round_trip(self, clock):
        entry = WorkflowHistoryEntry(
            id="h1", created_at=clock.now, updated_at=clock.now, instance_id="i1",
            sequence_no=1, action=HistoryAction.STARTED, occurred_at=clock.now,
            actor_id="alice", metadata={"entity_id": "42"},
        )
        entry.current_hash = entry.calculate_hash()

        restored = WorkflowHistoryEntry.from_dict(entry.to_dict())

        assert restored.verify_hash()
        assert restored == entry


class TestReplay:

    @pytest.mark.asyncio
    async def test_replay_matches_in_progress_instance(self, engine, leave_instance):
        await engine.approve_step(leave_instance.id, "nurse_lead")
        instance = await engine.get_instance(leave_instance.id)

        state = replay_history(await engine.get_workflow_history(leave_instance.id))

        assert state.status == WorkflowStatus.IN_PROGRESS
        assert state.current_step_sequence == instance.current_step_sequence == 2
        assert state.live_task_ids == {t.id for t in instance.live_tasks()}
        assert state.step_outcomes == {1: "step_approved"}

    @pytest.mark.asyncio
    async def test_replay_tracks_information_requests(self, engine, leave_instance):
        await engine.request_more_info(leave_instance.id, "nurse_lead")
        state = replay_history(await engine.get_workflow_history(leave_instance.id))
        assert state.awaiting_info is True
        assert len(state.live_task_ids) == 1

    @pytest.mark.asyncio
    async def test_replay_of_finished_instance(self, engine, leave_instance):
        await engine.approve_step(leave_instance.id, "nurse_lead")
        await engine.reject_step(leave_instance.id, "hr_head")

        state = replay_history(await engine.get_workflow_history(leave_instance.id))

        assert state.status == WorkflowStatus.REJECTED
        assert state.current_step_sequence is None
        assert state.live_task_ids == set()
        assert state.step_outcomes == {1: "step_approved", 2: "step_rejected"}

    def test_verify_empty_chain(self):
        result = verify_chain([])
        assert result["valid"] is True
        assert result["total_entries"] == 0
