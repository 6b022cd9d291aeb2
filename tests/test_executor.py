"""Tests for the participant state machine."""

from datetime import timedelta
from uuid import uuid4

import pytest

from conftest import START, build_engine_harness, chain, edge, node, workflow_payload
from lead_workflows.core.exceptions import (
    ConcurrentModificationError,
    DefinitionError,
    ParticipantNotFoundError,
)
from lead_workflows.core.executor import MANUAL_EXIT_REASON
from lead_workflows.models import ParticipantStatus, WorkflowStatus
from lead_workflows.schemas import LogAction, WorkflowUpdate


async def enroll(engine, payload, lead_id="lead-1", **lead_fields):
    if lead_id not in engine.leads.leads:
        engine.leads.add(lead_id, **lead_fields)
    workflow = await engine.create_active(payload)
    participant = await engine.enrollment.enroll(workflow, lead_id)
    assert participant is not None
    return workflow, participant


async def test_linear_chain_runs_to_completion(engine):
    workflow, participant = await enroll(
        engine,
        workflow_payload(
            [
                node("t", "trigger"),
                node("tag", "add_tag", tags=["welcome"]),
                node("score", "update_score", score_change=10),
            ],
            chain("t", "tag", "score"),
        ),
    )

    [outcome] = await engine.drain()

    assert outcome.status == ParticipantStatus.COMPLETED
    assert outcome.steps == 2
    state = await engine.participants.get_state(participant.id)
    assert state.status == ParticipantStatus.COMPLETED
    assert state.completed_at == START
    assert state.current_node_id is None
    assert state.exclusive_key is None
    assert [entry.action for entry in state.log] == [
        LogAction.ENTERED,
        LogAction.EXECUTED,
        LogAction.EXECUTED,
        LogAction.COMPLETED,
    ]
    assert engine.leads.leads["lead-1"].tags == ["welcome"]
    assert engine.leads.leads["lead-1"].score == 10

    metrics = await engine.metrics(workflow.id)
    assert metrics["completed"] == 1
    assert metrics["currently_active"] == 0


async def test_wait_node_parks_participant(engine):
    _, participant = await enroll(
        engine,
        workflow_payload(
            [
                node("t", "trigger"),
                node("wait", "wait", duration=2, unit="hours"),
                node("tag", "add_tag", tags=["later"]),
            ],
            chain("t", "wait", "tag"),
        ),
    )

    [outcome] = await engine.drain()

    assert outcome.status == ParticipantStatus.WAITING
    state = await engine.participants.get_state(participant.id)
    assert state.current_node_id == "wait"
    assert state.waiting_until == START + timedelta(hours=2)
    assert state.log[-1].action == LogAction.WAITING
    assert engine.leads.leads["lead-1"].tags == []


@pytest.mark.parametrize(("score", "branch", "tag"), [(80, "yes", "hot"), (10, "no", "cold")])
async def test_condition_follows_labelled_branch(engine, score, branch, tag):
    _, participant = await enroll(
        engine,
        workflow_payload(
            [
                node("t", "trigger"),
                node("check", "condition", field="score", operator="greater_than", value=50),
                node("hot", "add_tag", tags=["hot"]),
                node("cold", "add_tag", tags=["cold"]),
            ],
            [
                edge("t", "check"),
                edge("check", "hot", "yes"),
                edge("check", "cold", "no"),
            ],
        ),
        score=score,
    )

    await engine.drain()

    state = await engine.participants.get_state(participant.id)
    assert state.status == ParticipantStatus.COMPLETED
    assert state.branch_path == [branch]
    assert engine.leads.leads["lead-1"].tags == [tag]


async def test_failing_action_with_fail_policy_fails_participant(engine):
    engine.webhooks.status = 503
    workflow, participant = await enroll(
        engine,
        workflow_payload(
            [
                node("t", "trigger"),
                node("hook", "send_webhook", url="https://hooks.test/x", on_error="fail"),
                node("tag", "add_tag", tags=["after"]),
            ],
            chain("t", "hook", "tag"),
        ),
    )

    [outcome] = await engine.drain()

    assert outcome.status == ParticipantStatus.FAILED
    state = await engine.participants.get_state(participant.id)
    assert state.exit_reason == "Error: Webhook returned 503"
    assert state.exited_at == START
    assert state.log[-1].action == LogAction.FAILED
    assert state.log[-1].node_id == "hook"
    assert engine.leads.leads["lead-1"].tags == []
    metrics = await engine.metrics(workflow.id)
    assert metrics["currently_active"] == 0
    assert metrics["completed"] == 0
    assert metrics["exited"] == 0


async def test_failing_action_with_continue_policy_proceeds(engine):
    engine.webhooks.status = 500
    _, participant = await enroll(
        engine,
        workflow_payload(
            [
                node("t", "trigger"),
                node("hook", "send_webhook", url="https://hooks.test/x"),
                node("tag", "add_tag", tags=["after"]),
            ],
            chain("t", "hook", "tag"),
        ),
    )

    await engine.drain()

    state = await engine.participants.get_state(participant.id)
    assert state.status == ParticipantStatus.COMPLETED
    hook_entry = next(entry for entry in state.log if entry.node_id == "hook")
    assert hook_entry.error == "Webhook returned 500"
    assert engine.leads.leads["lead-1"].tags == ["after"]


async def test_lead_deleted_after_enrollment_fails_participant(engine):
    _, participant = await enroll(
        engine,
        workflow_payload([node("t", "trigger"), node("a", "add_tag", tags=["x"])], chain("t", "a")),
    )
    del engine.leads.leads["lead-1"]

    [outcome] = await engine.drain()

    assert outcome.status == ParticipantStatus.FAILED
    state = await engine.participants.get_state(participant.id)
    assert state.exit_reason == "Error: Lead not found"


async def test_lead_store_outage_propagates_for_queue_retry(engine):
    _, participant = await enroll(
        engine,
        workflow_payload([node("t", "trigger"), node("a", "add_tag", tags=["x"])], chain("t", "a")),
    )
    engine.leads.get_error = RuntimeError("lead service down")

    with pytest.raises(RuntimeError, match="lead service down"):
        await engine.executor.execute_step(participant.id)

    state = await engine.participants.get_state(participant.id)
    assert state.status == ParticipantStatus.ACTIVE
    assert state.current_node_id == "a"


async def test_step_limit_queues_continuation(session_factory, clock):
    engine = build_engine_harness(session_factory, clock=clock, max_steps=2)
    _, participant = await enroll(
        engine,
        workflow_payload(
            [
                node("t", "trigger"),
                node("a", "add_tag", tags=["a"]),
                node("b", "add_tag", tags=["b"]),
                node("c", "add_tag", tags=["c"]),
            ],
            chain("t", "a", "b", "c"),
        ),
    )
    engine.jobs.ready.clear()

    outcome = await engine.executor.execute_step(participant.id)

    assert outcome.continued
    assert outcome.steps == 2
    [job] = engine.jobs.ready
    assert job.reason == "continuation"
    assert job.participant_id == participant.id

    await engine.drain()
    state = await engine.participants.get_state(participant.id)
    assert state.status == ParticipantStatus.COMPLETED
    assert engine.leads.leads["lead-1"].tags == ["a", "b", "c"]


async def test_stale_commit_is_rejected(engine):
    _, participant = await enroll(
        engine,
        workflow_payload([node("t", "trigger"), node("a", "add_tag", tags=["x"])], chain("t", "a")),
    )
    stale = await engine.participants.get_state(participant.id)
    fresh = await engine.participants.commit(stale.model_copy(deep=True))

    assert fresh.version == stale.version + 1
    with pytest.raises(ConcurrentModificationError):
        await engine.participants.commit(stale)


async def test_concurrent_writer_stops_execution(engine, monkeypatch):
    _, participant = await enroll(
        engine,
        workflow_payload(
            [node("t", "trigger"), node("a", "add_tag", tags=["x"]), node("b", "exit")],
            chain("t", "a", "b"),
        ),
    )
    original = engine.handlers.run

    async def racing_run(node_def, ctx):
        current = await engine.participants.get_state(ctx.participant.id)
        await engine.participants.commit(current)
        return await original(node_def, ctx)

    monkeypatch.setattr(engine.handlers, "run", racing_run)

    outcome = await engine.executor.execute_step(participant.id)

    assert outcome.conflict
    assert outcome.steps == 0
    state = await engine.participants.get_state(participant.id)
    assert state.status == ParticipantStatus.ACTIVE
    assert state.current_node_id == "a"


async def test_paused_workflow_holds_participants(engine):
    workflow, participant = await enroll(
        engine,
        workflow_payload([node("t", "trigger"), node("a", "add_tag", tags=["x"])], chain("t", "a")),
    )
    await engine.workflows.set_status(workflow.id, WorkflowStatus.PAUSED)

    outcome = await engine.executor.execute_step(participant.id)

    assert outcome.reason == "Workflow is paused"
    assert outcome.steps == 0
    state = await engine.participants.get_state(participant.id)
    assert state.status == ParticipantStatus.ACTIVE
    assert len(state.log) == 1

    await engine.workflows.set_status(workflow.id, WorkflowStatus.ACTIVE)
    outcome = await engine.executor.execute_step(participant.id)
    assert outcome.status == ParticipantStatus.COMPLETED


async def test_node_removed_while_participant_in_flight(engine):
    workflow, participant = await enroll(
        engine,
        workflow_payload(
            [node("t", "trigger"), node("a", "add_tag", tags=["x"]), node("b", "exit")],
            chain("t", "a", "b"),
        ),
    )
    await engine.workflows.set_status(workflow.id, WorkflowStatus.PAUSED)
    await engine.workflows.update(
        workflow.id,
        WorkflowUpdate.model_validate(
            {"nodes": [node("t", "trigger"), node("b", "exit")], "edges": chain("t", "b")}
        ),
    )
    await engine.workflows.set_status(workflow.id, WorkflowStatus.ACTIVE)

    [outcome] = await engine.drain()

    assert outcome.status == ParticipantStatus.FAILED
    state = await engine.participants.get_state(participant.id)
    assert state.exit_reason == "Error: Node a not found in workflow"


async def test_active_workflow_graph_is_frozen_for_waiting_participants(engine):
    workflow, participant = await enroll(
        engine,
        workflow_payload(
            [node("t", "trigger"), node("w", "wait", duration=1, unit="hours"), node("x", "exit")],
            chain("t", "w", "x"),
        ),
    )
    await engine.drain()
    assert (await engine.participants.get_state(participant.id)).current_node_id == "w"

    with pytest.raises(DefinitionError, match="pause it first"):
        await engine.workflows.update(
            workflow.id,
            WorkflowUpdate.model_validate(
                {"nodes": [node("t", "trigger"), node("x", "exit")], "edges": chain("t", "x")}
            ),
        )

    definition = await engine.workflows.get_definition(workflow.id)
    state = await engine.participants.get_state(participant.id)
    assert state.status == ParticipantStatus.WAITING
    assert state.current_node_id in {n.id for n in definition.nodes}
    assert definition.version == 1

    renamed = await engine.workflows.update(
        workflow.id, WorkflowUpdate.model_validate({"name": "Renamed"})
    )
    assert renamed.name == "Renamed"
    assert renamed.status == WorkflowStatus.ACTIVE


async def test_unknown_participant_is_reported(engine):
    outcome = await engine.executor.execute_step(uuid4())
    assert outcome.status is None
    assert outcome.reason == "Participant not found"


async def test_exit_participant_is_idempotent(engine):
    workflow, participant = await enroll(
        engine,
        workflow_payload(
            [node("t", "trigger"), node("w", "wait", duration=1, unit="days"), node("b", "exit")],
            chain("t", "w", "b"),
        ),
    )
    await engine.drain()

    exited = await engine.executor.exit_participant(participant.id)
    again = await engine.executor.exit_participant(participant.id, "Second try")

    assert exited.status == ParticipantStatus.EXITED
    assert exited.exit_reason == MANUAL_EXIT_REASON
    assert exited.waiting_until is None
    assert again.exit_reason == MANUAL_EXIT_REASON
    assert again.version == exited.version
    metrics = await engine.metrics(workflow.id)
    assert metrics["exited"] == 1
    assert metrics["currently_active"] == 0

    with pytest.raises(ParticipantNotFoundError):
        await engine.executor.exit_participant(uuid4())
