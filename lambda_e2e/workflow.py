"""
Integration workflow execution.

Each workflow moves Pending -> Running -> Completed | Failed. Steps run in
order and a failed step does not stop the steps after it: later steps often
give extra diagnostic signal. The workflow is Failed as soon as any step
fails. Placeholders are bound once per workflow run so that every step sees
the same ``${uuid}``.
"""

import logging
import time
from dataclasses import replace
from enum import Enum
from typing import Callable, Optional

from lambda_e2e.analyzer import analyze, validate
from lambda_e2e.models import (
    Expectation,
    FunctionTarget,
    SessionDeadline,
    Step,
    StepResult,
    StepType,
    TestResult,
    Workflow,
)
from lambda_e2e.placeholders import PlaceholderExpander

logger = logging.getLogger(__name__)

DEADLINE_REASON = 'Session time limit exceeded'


def expand_expectation(expander: PlaceholderExpander, expectation: Optional[Expectation],
                       table) -> Optional[Expectation]:
    """Expand placeholders inside required body substrings."""
    if expectation is None or not expectation.body_contains:
        return expectation
    expanded = expander.expand(list(expectation.body_contains), table)
    return replace(expectation, body_contains=tuple(expanded))


class WorkflowState(str, Enum):
    PENDING = 'Pending'
    RUNNING = 'Running'
    COMPLETED = 'Completed'
    FAILED = 'Failed'


class WorkflowOrchestrator:
    """Runs workflows step by step against one target."""

    def __init__(self, invoker, target: FunctionTarget, expander: PlaceholderExpander,
                 sleep: Callable[[float], None] = time.sleep,
                 deadline: Optional[SessionDeadline] = None):
        self.invoker = invoker
        self.target = target
        self.expander = expander
        self.sleep = sleep
        self.deadline = deadline

    def run(self, workflow: Workflow) -> TestResult:
        """
        Execute every step of ``workflow``.

        Returns:
            TestResult of kind ``workflow`` with one StepResult per step
        """
        state = WorkflowState.PENDING
        logger.info(f"Workflow {workflow.name}: {state.value} ({len(workflow.steps)} steps)")
        if workflow.description:
            logger.info(f"  {workflow.description}")

        table = self.expander.bind()
        state = WorkflowState.RUNNING
        step_results = []
        first_failure = None

        for index, step in enumerate(workflow.steps, 1):
            if self.deadline is not None and self.deadline.expired:
                result = StepResult(name=step.name, step_type=step.type, passed=False,
                                    reason=DEADLINE_REASON)
            else:
                result = self._run_step(step, table)

            step_results.append(result)
            mark = "✓" if result.passed else "✗"
            logger.info(f"  {mark} [{index}/{len(workflow.steps)}] {step.name}: {result.reason}")

            if not result.passed and first_failure is None:
                state = WorkflowState.FAILED
                first_failure = f"Step '{step.name}' failed: {result.reason}"

        if state is WorkflowState.RUNNING:
            state = WorkflowState.COMPLETED

        duration_ms = sum(r.outcome.duration_ms for r in step_results if r.outcome is not None)
        logger.info(f"Workflow {workflow.name}: {state.value}")
        return TestResult(
            name=workflow.name,
            kind='workflow',
            passed=state is WorkflowState.COMPLETED,
            reason=first_failure or f"All {len(step_results)} steps passed",
            duration_ms=duration_ms,
            steps=step_results,
            state=state.value,
        )

    def _run_step(self, step: Step, table) -> StepResult:
        if step.type is StepType.WAIT:
            logger.info(f"  Waiting {step.seconds}s...")
            self.sleep(step.seconds)
            return StepResult(name=step.name, step_type=step.type, passed=True,
                              reason=f"Waited {step.seconds}s")

        payload = self.expander.expand(step.payload, table)
        outcome = self.invoker.invoke(self.target, payload)
        analyze(outcome)
        passed, reason = validate(outcome, expand_expectation(self.expander, step.expect, table))
        return StepResult(name=step.name, step_type=step.type, passed=passed,
                          reason=reason, outcome=outcome)
