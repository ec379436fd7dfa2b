"""
End-to-end test runner for a deployed Lambda function.

Drives one session: loads test definitions, resolves the target, runs unit
scenarios (plus the optional performance test) and integration workflows
(inside an ephemeral-resource scope), pulls execution logs and writes the
reports for each phase.
"""

import logging
import time
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from lambda_e2e.analyzer import analyze, validate
from lambda_e2e.aws import AwsClients
from lambda_e2e.config import HarnessSettings, load_integration_suite, load_unit_suite
from lambda_e2e.errors import AccessError, LogExtractionFailed, ProvisionError
from lambda_e2e.invoker import HttpInvoker, LambdaInvoker
from lambda_e2e.logs import LogExtractor
from lambda_e2e.models import (
    FunctionTarget,
    IntegrationSuite,
    PhaseResults,
    SessionDeadline,
    TestResult,
    TestSession,
    UnitSuite,
    Workflow,
    utc_now,
)
from lambda_e2e.performance import performance_test_result, run_performance_test
from lambda_e2e.placeholders import PlaceholderExpander
from lambda_e2e.reporting import ReportGenerator
from lambda_e2e.resolver import TargetResolver
from lambda_e2e.resources import EphemeralResourceManager
from lambda_e2e.workflow import DEADLINE_REASON, WorkflowOrchestrator, WorkflowState, expand_expectation

logger = logging.getLogger(__name__)

PHASES = ('unit', 'integration', 'all')

# Clock skew allowance when querying the log backend.
LOG_WINDOW_SLACK = timedelta(seconds=30)


class HarnessRunner:
    """Runs the test phases for one session and writes their reports."""

    def __init__(self, settings: HarnessSettings, clients: Optional[AwsClients] = None,
                 invoker=None, session: Optional[TestSession] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], datetime] = utc_now,
                 collect_logs: bool = True):
        self.settings = settings
        self.clients = clients or AwsClients(settings.region, settings.invoke_timeout_seconds)
        self.session = session or TestSession.create(
            region=settings.region,
            results_dir=settings.results_dir,
            build_id=settings.build_id,
            commit=settings.commit,
        )
        self._invoker = invoker
        self.sleep = sleep
        self.clock = clock
        self.collect_logs = collect_logs
        self.deadline = SessionDeadline(settings.run_timeout_seconds)
        self.reporter = ReportGenerator(self.session, clock=clock)
        self.target: Optional[FunctionTarget] = None

        logger.info(f"Initialized session {self.session.run_id} in {self.session.region}")
        logger.info(f"Results directory: {self.session.results_dir}")

    @property
    def invoker(self):
        if self._invoker is None:
            if self.settings.function_url:
                self._invoker = HttpInvoker(self.settings.function_url, self.settings.invoke_timeout_seconds)
            else:
                self._invoker = LambdaInvoker(self.clients.lambda_)
        return self._invoker

    def expander(self, extra: Optional[Dict[str, str]] = None) -> PlaceholderExpander:
        return PlaceholderExpander(
            run_id=self.session.run_id,
            build_id=self.session.build_id,
            clock=self.clock,
            extra=extra,
        )

    def resolve_target(self) -> FunctionTarget:
        """
        Resolve the function under test.

        With only ``FUNCTION_URL`` configured the target is addressed by URL
        and no Lambda metadata is read.

        Raises:
            TargetNotFoundError: Nothing matched the configured name or pattern
            AccessError: The function's configuration could not be read
        """
        settings = self.settings
        if settings.function_url and not (settings.target_function or settings.function_pattern):
            self.target = FunctionTarget(name=settings.function_url, url=settings.function_url)
            logger.info(f"Using HTTP endpoint {settings.function_url}")
            return self.target

        resolver = TargetResolver(self.clients.lambda_)
        target = resolver.resolve(name=settings.target_function, pattern=settings.function_pattern)
        if not resolver.verify_access(target):
            raise AccessError(f"Resolved {target.name} but its metadata is not readable")
        if settings.function_url:
            target = replace(target, url=settings.function_url)
        self.target = target
        return target

    def run(self, phase: str) -> List[PhaseResults]:
        """
        Run ``phase`` (unit, integration or all).

        Test definitions are loaded and the target is resolved before any
        invocation, so configuration and resolution errors abort the run
        before it touches the function.

        Returns:
            One PhaseResults per executed phase, already reported
        """
        if phase not in PHASES:
            raise ValueError(f"Unknown phase: {phase}")

        logger.info("=" * 80)
        logger.info(f"Starting Lambda end-to-end tests ({phase})")
        logger.info("=" * 80)

        unit_suite = load_unit_suite(self.settings.scenarios_file) if phase in ('unit', 'all') else None
        integration_suite = (load_integration_suite(self.settings.workflows_file)
                             if phase in ('integration', 'all') else None)

        self.resolve_target()

        phase_results = []
        if unit_suite is not None:
            phase_results.append(self._run_phase('unit', lambda: self.run_unit(unit_suite)))
        if integration_suite is not None:
            phase_results.append(self._run_phase('integration', lambda: self.run_integration(integration_suite)))
        return phase_results

    def _run_phase(self, name: str, execute: Callable[[], PhaseResults]) -> PhaseResults:
        started = self.clock()
        logger.info(f"\n[1/3] Running {name} tests...")
        results = execute()

        logger.info(f"\n[2/3] Collecting {name} logs...")
        if self.collect_logs:
            self.extract_logs(results, started - LOG_WINDOW_SLACK, self.clock() + LOG_WINDOW_SLACK)
        else:
            results.log_summary = {'status': 'skipped'}

        logger.info(f"\n[3/3] Generating {name} report...")
        self.report(results)
        return results

    def run_unit(self, suite: UnitSuite) -> PhaseResults:
        """Run every scenario once, then the performance test if configured."""
        results = PhaseResults(phase='unit', target=self.target)
        expander = self.expander()

        for index, scenario in enumerate(suite.scenarios, 1):
            if self.deadline.expired:
                results.results.append(TestResult(name=scenario.name, kind='scenario',
                                                  passed=False, reason=DEADLINE_REASON))
                continue

            logger.info(f"Scenario [{index}/{len(suite.scenarios)}] {scenario.name}")
            table = expander.bind()
            payload = expander.expand(scenario.event, table)
            outcome = self.invoker.invoke(self.target, payload)
            analyze(outcome)
            passed, reason = validate(outcome, expand_expectation(expander, scenario.expected, table))
            tail = LogExtractor.capture_immediate(outcome)
            if tail:
                logger.debug(f"Log tail for {scenario.name}:\n{tail}")
            results.results.append(TestResult(
                name=scenario.name,
                kind='scenario',
                passed=passed,
                reason=reason,
                duration_ms=outcome.duration_ms,
                outcome=outcome,
            ))
            if passed:
                logger.info(f"✓ {scenario.name} passed ({outcome.duration_ms}ms)")
            else:
                logger.error(f"✗ {scenario.name} failed: {reason}")

        if suite.performance is not None:
            if self.deadline.expired:
                results.results.append(TestResult(name='performance', kind='performance',
                                                  passed=False, reason=DEADLINE_REASON))
            else:
                payload = expander.expand(suite.performance.event)
                performance = run_performance_test(self.invoker, self.target, suite.performance, payload)
                results.performance = performance
                results.results.append(performance_test_result(performance))

        return results

    def run_integration(self, suite: IntegrationSuite) -> PhaseResults:
        """
        Provision the suite's ephemeral resources, run every workflow and
        tear the resources down again, whatever happens in between.
        """
        results = PhaseResults(phase='integration', target=self.target)
        manager = EphemeralResourceManager(
            session_id=self.session.run_id,
            session_slug=self.session.slug,
            s3_client=self.clients.s3 if suite.resources else None,
            dynamodb_client=self.clients.dynamodb if suite.resources else None,
            clock=self.clock,
            declared=[spec.name for spec in suite.resources],
        )

        with manager:
            failed_resources: Dict[str, str] = {}
            for spec in suite.resources:
                try:
                    manager.provision(spec)
                except ProvisionError as e:
                    failed_resources[spec.name] = str(e)

            expander = self.expander(extra=manager.placeholder_values())
            orchestrator = WorkflowOrchestrator(self.invoker, self.target, expander,
                                                sleep=self.sleep, deadline=self.deadline)

            for workflow in suite.workflows:
                blocked = self._blocked_by(workflow, expander, failed_resources)
                if blocked:
                    name = blocked[0]
                    reason = f"Required resource '{name}' was not provisioned: {failed_resources[name]}"
                    logger.error(f"✗ Skipping workflow {workflow.name}: {reason}")
                    results.results.append(TestResult(name=workflow.name, kind='workflow', passed=False,
                                                       reason=reason, state=WorkflowState.FAILED.value))
                elif self.deadline.expired:
                    results.results.append(TestResult(name=workflow.name, kind='workflow', passed=False,
                                                      reason=DEADLINE_REASON, state=WorkflowState.FAILED.value))
                else:
                    results.results.append(orchestrator.run(workflow))

        results.orphans = list(manager.orphans)
        return results

    @staticmethod
    def _blocked_by(workflow: Workflow, expander: PlaceholderExpander,
                    failed_resources: Dict[str, str]) -> List[str]:
        if not failed_resources:
            return []
        used = set()
        for step in workflow.steps:
            used |= expander.references(step.payload)
            if step.expect is not None:
                used |= expander.references(list(step.expect.body_contains))
        return [name for name in failed_resources if f"resource.{name}" in used]

    def extract_logs(self, results: PhaseResults, start: datetime, end: datetime) -> None:
        """Query the target's logs for the phase window; failures are annotated, not raised."""
        if self.target is None or (self.target.arn is None and self.target.url):
            results.log_summary = {'status': 'skipped', 'reason': 'No Lambda log group for an HTTP-only target'}
            return

        extractor = LogExtractor(self.clients.logs, self.settings.log_window_minutes, clock=self.clock)
        try:
            bundle = extractor.query_window(self.target, start, end)
        except LogExtractionFailed as e:
            logger.warning(f"⚠ LogExtractionFailed: {e}")
            results.log_summary = {'status': 'LogExtractionFailed', 'error': str(e)}
            return

        extractor.persist(bundle, self.session.phase_dir(results.phase))
        results.log_bundle = bundle
        results.log_summary = {
            'status': 'ok',
            'log_group': bundle.log_group,
            'event_count': len(bundle.events),
            'counts': dict(bundle.counts),
        }

    def report(self, results: PhaseResults) -> Dict[str, object]:
        paths = self.reporter.write_all(results)
        summary_text = self.reporter.render_text(results)

        print("\n" + "=" * 80)
        print(f"{results.phase.upper()} TEST SUMMARY")
        print("=" * 80)
        print(summary_text)
        print("=" * 80 + "\n")

        if results.passed:
            logger.info(f"✓ All {len(results.results)} {results.phase} tests passed")
        else:
            logger.error(f"✗ {len(results.failures)} of {len(results.results)} {results.phase} tests failed")
        return paths

