"""End-to-end journeys through triggers, execution and the sweep."""

from datetime import timedelta

from conftest import START, chain, edge, node, workflow_payload
from lead_workflows.core.nodes import EXIT_NODE_REASON, GOAL_ACHIEVED_REASON
from lead_workflows.models import ParticipantStatus, TriggerType
from lead_workflows.schemas import DomainEvent, LogAction


async def test_welcome_journey_waits_then_emails(engine, clock):
    engine.leads.add("lead-1", first_name="Ada")
    engine.templates.add("T1", subject="Welcome {{first_name}}")
    workflow = await engine.create_active(
        workflow_payload(
            [
                node("t", "trigger"),
                node("tag", "add_tag", tags=["started"]),
                node("wait", "wait", duration=1, unit="hours"),
                node("mail", "send_email", template_id="T1"),
                node("done", "exit"),
            ],
            chain("t", "tag", "wait", "mail", "done"),
            trigger_type=TriggerType.FORM_SUBMITTED,
            trigger_config={"form_id": "signup"},
        )
    )

    report = await engine.dispatcher.handle_event(
        DomainEvent(
            event_type=TriggerType.FORM_SUBMITTED, lead_id="lead-1", data={"formId": "signup"}
        )
    )
    [participant] = report.enrolled
    await engine.drain()

    state = await engine.participants.get_state(participant.id)
    assert state.status == ParticipantStatus.WAITING
    assert state.waiting_until == START + timedelta(hours=1)
    assert engine.leads.leads["lead-1"].tags == ["started"]
    assert engine.email.sent == []

    clock.advance(hours=1)
    await engine.scheduler.sweep()
    await engine.drain()

    state = await engine.participants.get_state(participant.id)
    assert state.status == ParticipantStatus.EXITED
    assert state.exit_reason == EXIT_NODE_REASON
    [message] = engine.email.sent
    assert message.subject == "Welcome Ada"
    assert [entry.action for entry in state.log] == [
        LogAction.ENTERED,
        LogAction.EXECUTED,
        LogAction.WAITING,
        LogAction.RESUMED,
        LogAction.EXECUTED,
        LogAction.EXECUTED,
        LogAction.EXITED,
    ]
    metrics = await engine.metrics(workflow.id)
    assert metrics == {
        "total_entered": 1,
        "currently_active": 0,
        "completed": 0,
        "exited": 1,
        "goal_achieved": 0,
    }


async def test_score_condition_routes_hot_and_cold_leads(engine):
    engine.leads.add("hot-lead", score=80)
    engine.leads.add("cold-lead", score=10)
    workflow = await engine.create_active(
        workflow_payload(
            [
                node("t", "trigger"),
                node("check", "condition", field="score", operator="greater_than", value=50),
                node("sales", "create_task", title="Call {{first_name}}"),
                node("nurture", "enroll_sequence", sequence_id="nurture"),
            ],
            [
                edge("t", "check"),
                edge("check", "sales", "yes"),
                edge("check", "nurture", "no"),
            ],
        )
    )

    hot = await engine.enrollment.enroll(workflow, "hot-lead")
    cold = await engine.enrollment.enroll(workflow, "cold-lead")
    await engine.drain()

    hot_state = await engine.participants.get_state(hot.id)
    cold_state = await engine.participants.get_state(cold.id)
    assert hot_state.branch_path == ["yes"]
    assert cold_state.branch_path == ["no"]
    assert len(engine.tasks.tasks) == 1
    assert engine.sequences.enrollments == [("cold-lead", "nurture")]
    metrics = await engine.metrics(workflow.id)
    assert metrics["completed"] == 2


async def test_goal_reached_exits_early(engine):
    engine.leads.add("lead-1", tags=["purchased"])
    workflow = await engine.create_active(
        workflow_payload(
            [
                node("t", "trigger"),
                node("goal", "goal", goal_type="tag_added", tag_name="purchased"),
                node("upsell", "send_email", template_id="T2"),
            ],
            chain("t", "goal", "upsell"),
        )
    )

    participant = await engine.enrollment.enroll(workflow, "lead-1")
    await engine.drain()

    state = await engine.participants.get_state(participant.id)
    assert state.status == ParticipantStatus.EXITED
    assert state.exit_reason == GOAL_ACHIEVED_REASON
    assert state.goal_achieved
    assert state.goal_achieved_at == START
    assert engine.email.sent == []
    metrics = await engine.metrics(workflow.id)
    assert metrics["goal_achieved"] == 1
    assert metrics["exited"] == 1


async def test_reentry_rules_over_time(engine, clock):
    engine.leads.add("lead-1")
    workflow = await engine.create_active(
        workflow_payload(
            [node("t", "trigger"), node("a", "add_tag", tags=["vip-welcome"])],
            chain("t", "a"),
            trigger_type=TriggerType.TAG_ADDED,
            trigger_config={"tag_name": "vip"},
            settings={"allow_reentry": True, "reentry_delay_days": 7, "max_enrollments": 2},
        )
    )

    def vip_event():
        return DomainEvent(
            event_type=TriggerType.TAG_ADDED, lead_id="lead-1", data={"tag_name": "vip"}
        )

    first = await engine.dispatcher.handle_event(vip_event())
    assert len(first.enrolled) == 1
    await engine.drain()

    clock.advance(days=3)
    too_soon = await engine.dispatcher.handle_event(vip_event())
    assert too_soon.enrolled == []

    clock.advance(days=5)
    second = await engine.dispatcher.handle_event(vip_event())
    [participant] = second.enrolled
    assert participant.enrollment_count == 2
    await engine.drain()

    clock.advance(days=30)
    capped = await engine.dispatcher.handle_event(vip_event())
    assert capped.enrolled == []
    metrics = await engine.metrics(workflow.id)
    assert metrics["total_entered"] == 2
    assert metrics["completed"] == 2
