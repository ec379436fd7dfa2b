import itertools

from lambda_e2e.errors import ErrorKind
from lambda_e2e.models import Expectation, SessionDeadline, Step, StepType, Workflow
from lambda_e2e.placeholders import PlaceholderExpander
from lambda_e2e.workflow import DEADLINE_REASON, WorkflowOrchestrator, WorkflowState


def make_expander(fixed_clock):
    counter = itertools.count(1)
    return PlaceholderExpander("42-1a2b3c4", "42", clock=fixed_clock,
                               id_generator=lambda: f"order-{next(counter)}")


def submit_and_retrieve():
    return Workflow(
        name="submit-and-retrieve",
        description="Store a record, then read it back",
        steps=(
            Step(name="submit", type=StepType.INVOKE, payload={"action": "create", "id": "${uuid}"},
                 expect=Expectation(status_code=201)),
            Step(name="settle", type=StepType.WAIT, seconds=2),
            Step(name="retrieve", type=StepType.INVOKE, payload={"action": "get", "id": "${uuid}"},
                 expect=Expectation(status_code=200, body_contains=("${uuid}",))),
        ),
    )


def test_all_steps_pass(fixed_clock, target, make_outcome, scripted_invoker):
    invoker = scripted_invoker([
        make_outcome(201, {"id": "order-1"}),
        make_outcome(200, {"id": "order-1", "status": "stored"}),
    ])
    sleeps = []
    orchestrator = WorkflowOrchestrator(invoker, target, make_expander(fixed_clock), sleep=sleeps.append)

    result = orchestrator.run(submit_and_retrieve())

    assert result.passed is True
    assert result.state == WorkflowState.COMPLETED.value
    assert result.kind == "workflow"
    assert [s.passed for s in result.steps] == [True, True, True]
    assert sleeps == [2]
    # Both invocations saw the same templated id.
    assert invoker.calls == [{"action": "create", "id": "order-1"}, {"action": "get", "id": "order-1"}]


def test_failed_step_does_not_stop_later_steps(fixed_clock, target, make_outcome, scripted_invoker):
    invoker = scripted_invoker([
        make_outcome(None, None, error_kind=ErrorKind.CLIENT_ERROR,
                     error_message="TooManyRequestsException: Rate exceeded"),
        make_outcome(404, {"error": "NOT_FOUND"}),
    ])
    orchestrator = WorkflowOrchestrator(invoker, target, make_expander(fixed_clock), sleep=lambda s: None)

    result = orchestrator.run(submit_and_retrieve())

    assert len(invoker.calls) == 2
    assert result.passed is False
    assert result.state == WorkflowState.FAILED.value
    assert [s.passed for s in result.steps] == [False, True, False]
    assert result.reason.startswith("Step 'submit' failed")
    assert "Status code mismatch: expected 200, got 404" in result.steps[2].reason


def test_body_contains_placeholder_is_expanded(fixed_clock, target, make_outcome, scripted_invoker):
    invoker = scripted_invoker([
        make_outcome(201, {}),
        make_outcome(200, {"id": "some-other-order"}),
    ])
    orchestrator = WorkflowOrchestrator(invoker, target, make_expander(fixed_clock), sleep=lambda s: None)

    result = orchestrator.run(submit_and_retrieve())

    assert result.passed is False
    assert "'order-1'" in result.steps[2].reason


def test_step_without_expectation_needs_call_success(fixed_clock, target, make_outcome,
                                                     scripted_invoker, timeout_outcome):
    workflow = Workflow(name="ping", steps=(
        Step(name="first", type=StepType.INVOKE, payload={}),
        Step(name="second", type=StepType.INVOKE, payload={}),
    ))
    invoker = scripted_invoker([make_outcome(200, "whatever"), timeout_outcome])
    orchestrator = WorkflowOrchestrator(invoker, target, make_expander(fixed_clock))

    result = orchestrator.run(workflow)

    assert [s.passed for s in result.steps] == [True, False]
    assert result.passed is False


def test_server_error_fails_step_without_expectation(fixed_clock, target, make_outcome, scripted_invoker):
    workflow = Workflow(name="ping", steps=(Step(name="only", type=StepType.INVOKE, payload={}),))
    invoker = scripted_invoker([make_outcome(502, {"message": "Internal server error"},
                                             error_kind=ErrorKind.INVOCATION_ERROR,
                                             error_message="HTTP 502: Internal server error")])
    orchestrator = WorkflowOrchestrator(invoker, target, make_expander(fixed_clock))

    result = orchestrator.run(workflow)

    [step] = result.steps
    assert step.passed is False
    assert step.outcome.status_code == 502
    assert result.passed is False


def test_each_run_binds_fresh_placeholders(fixed_clock, target, make_outcome, scripted_invoker):
    workflow = Workflow(name="one", steps=(Step(name="s", type=StepType.INVOKE, payload={"id": "${uuid}"}),))
    invoker = scripted_invoker([make_outcome(200, {})])
    orchestrator = WorkflowOrchestrator(invoker, target, make_expander(fixed_clock))

    orchestrator.run(workflow)
    orchestrator.run(workflow)

    assert invoker.calls == [{"id": "order-1"}, {"id": "order-2"}]


def test_expired_deadline_fails_remaining_steps(fixed_clock, target, make_outcome, scripted_invoker):
    ticks = iter([0, 0, 100])
    deadline = SessionDeadline(60, clock=lambda: next(ticks))
    invoker = scripted_invoker([make_outcome(201, {"id": "order-1"})])
    orchestrator = WorkflowOrchestrator(invoker, target, make_expander(fixed_clock),
                                        sleep=lambda s: None, deadline=deadline)
    workflow = Workflow(name="slow", steps=(
        Step(name="submit", type=StepType.INVOKE, payload={}, expect=Expectation(status_code=201)),
        Step(name="retrieve", type=StepType.INVOKE, payload={}),
    ))

    result = orchestrator.run(workflow)

    assert len(invoker.calls) == 1
    assert result.steps[1].reason == DEADLINE_REASON
    assert result.state == WorkflowState.FAILED.value
