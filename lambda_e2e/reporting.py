"""
Report generation.

All writers are pure functions of the phase results plus the session and
a generation timestamp. Given the same inputs the JSON and JUnit documents
are byte-identical apart from the ``generated_at`` field.
"""

import json
import logging
import re
import xml.etree.ElementTree as ET
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List

from lambda_e2e.models import PhaseResults, TestSession, isoformat, utc_now

logger = logging.getLogger(__name__)

SUMMARY_FILENAME = 'summary.json'
JUNIT_FILENAME = 'junit-results.xml'
TEXT_FILENAME = 'summary.txt'
ORPHANS_FILENAME = 'orphans.json'


def _safe_filename(name: str) -> str:
    return re.sub(r'[^A-Za-z0-9._-]+', '_', name).strip('_') or 'unnamed'


class ReportGenerator:
    """Writes the machine, CI and human reports for one phase."""

    def __init__(self, session: TestSession, clock: Callable[[], datetime] = utc_now):
        self.session = session
        self.clock = clock

    def _phase_dir(self, results: PhaseResults) -> Path:
        directory = self.session.phase_dir(results.phase)
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def totals(self, results: PhaseResults) -> Dict[str, Any]:
        total = len(results.results)
        passed = sum(1 for r in results.results if r.passed)
        return {
            'total': total,
            'passed': passed,
            'failed': total - passed,
            'success_rate': round(passed / total * 100, 1) if total else 0.0,
        }

    def build_summary(self, results: PhaseResults) -> Dict[str, Any]:
        """Assemble the structured summary document."""
        return {
            'generated_at': isoformat(self.clock()),
            'phase': results.phase,
            'session': self.session.to_dict(),
            'target': results.target.to_dict() if results.target else None,
            'totals': self.totals(results),
            'tests': [result.to_dict() for result in results.results],
            'performance': results.performance.to_dict() if results.performance else None,
            'logs': results.log_summary,
            'orphans': list(results.orphans),
        }

    def write_machine_report(self, results: PhaseResults) -> Path:
        path = self._phase_dir(results) / SUMMARY_FILENAME
        with open(path, 'w') as f:
            json.dump(self.build_summary(results), f, indent=2, sort_keys=True, default=str)
            f.write('\n')
        logger.info(f"  Summary saved to: {path}")
        return path

    def write_ci_report(self, results: PhaseResults) -> Path:
        """Write a JUnit XML document with one testcase per scenario or workflow."""
        path = self._phase_dir(results) / JUNIT_FILENAME
        totals = self.totals(results)
        suite = ET.Element(
            'testsuite',
            name=f"lambda-e2e-{results.phase}",
            tests=str(totals['total']),
            failures=str(totals['failed']),
            errors='0',
            time=f"{sum(r.duration_ms for r in results.results) / 1000:.3f}",
        )
        for result in results.results:
            case = ET.SubElement(
                suite,
                'testcase',
                name=result.name,
                classname=f"{results.phase}.{result.kind}",
                time=f"{result.duration_ms / 1000:.3f}",
            )
            if not result.passed:
                failure = ET.SubElement(case, 'failure', message=result.reason)
                details = [f"Test: {result.name}", f"Reason: {result.reason}"]
                for step in result.steps:
                    mark = 'PASS' if step.passed else 'FAIL'
                    details.append(f"  [{mark}] {step.name}: {step.reason}")
                failure.text = '\n'.join(details)

        tree = ET.ElementTree(suite)
        ET.indent(tree, space='  ')
        tree.write(path, encoding='utf-8', xml_declaration=True)
        logger.info(f"  JUnit results saved to: {path}")
        return path

    def render_text(self, results: PhaseResults) -> str:
        totals = self.totals(results)
        lines = []

        lines.append(f"Lambda End-to-End Test Results ({results.phase})")
        lines.append(f"Generated: {isoformat(self.clock())}")
        lines.append("")

        lines.append("CONFIGURATION")
        lines.append("-" * 40)
        lines.append(f"Run ID: {self.session.run_id}")
        lines.append(f"Region: {self.session.region}")
        if results.target:
            lines.append(f"Function: {results.target.name}")
            lines.append(f"Runtime: {results.target.runtime or 'N/A'}")
            lines.append(f"Memory: {results.target.memory_mb or 'N/A'}MB")
            lines.append(f"Timeout: {results.target.timeout_seconds or 'N/A'}s")
        lines.append("")

        lines.append("SUMMARY")
        lines.append("-" * 40)
        lines.append(f"Total Tests: {totals['total']}")
        lines.append(f"Passed: {totals['passed']}")
        lines.append(f"Failed: {totals['failed']}")
        lines.append(f"Success Rate: {totals['success_rate']}%")
        lines.append("")

        lines.append("TESTS")
        lines.append("-" * 40)
        for result in results.results:
            status = 'PASS' if result.passed else 'FAIL'
            lines.append(f"[{status}] {result.name} ({result.duration_ms}ms): {result.reason}")
            for step in result.steps:
                step_status = 'PASS' if step.passed else 'FAIL'
                lines.append(f"    [{step_status}] {step.name}: {step.reason}")
        lines.append("")

        if results.performance:
            perf = results.performance
            lines.append("PERFORMANCE")
            lines.append("-" * 40)
            lines.append(f"Mode: {perf.mode}")
            lines.append(f"Iterations: {perf.iterations} (successful: {perf.successful})")
            lines.append(f"Average Duration: {perf.average_ms}ms (expected <= {perf.expected_response_time_ms}ms)")
            lines.append(f"Min Duration: {perf.min_ms}ms")
            lines.append(f"Max Duration: {perf.max_ms}ms")
            for failure in perf.failed_iterations:
                lines.append(f"Iteration {failure['iteration']} failed: "
                             f"{failure['error_kind']}: {failure['error_message']}")
            lines.append("")

        if results.log_summary:
            logs = results.log_summary
            lines.append("LOGS")
            lines.append("-" * 40)
            lines.append(f"Status: {logs.get('status', 'unknown')}")
            if logs.get('log_group'):
                lines.append(f"Log Group: {logs['log_group']}")
            if logs.get('counts'):
                counts = logs['counts']
                lines.append(f"Events: {logs.get('event_count', 0)} "
                             f"(INFO={counts.get('INFO', 0)}, WARN={counts.get('WARN', 0)}, "
                             f"ERROR={counts.get('ERROR', 0)})")
            if logs.get('error'):
                lines.append(f"Error: {logs['error']}")
            lines.append("")

        if results.orphans:
            lines.append("ORPHANED RESOURCES")
            lines.append("-" * 40)
            for orphan in results.orphans:
                lines.append(f"{orphan.get('kind')} {orphan.get('identifier')}: {orphan.get('error')}")
            lines.append(f"Run 'lambda-e2e sweep {self.session.run_id}' to remove them.")
            lines.append("")

        failures = results.failures
        if failures:
            lines.append("FAILURES")
            lines.append("-" * 40)
            for result in failures:
                lines.append(f"{result.name}: {result.reason}")
            lines.append("")

        return "\n".join(lines)

    def write_human_report(self, results: PhaseResults) -> Path:
        path = self._phase_dir(results) / TEXT_FILENAME
        with open(path, 'w') as f:
            f.write(self.render_text(results))
        logger.info(f"  Report saved to: {path}")
        return path

    def write_outcome_artifacts(self, results: PhaseResults) -> List[Path]:
        """Write one raw outcome document per scenario and per workflow step."""
        directory = self._phase_dir(results)
        paths = []
        run_id = self.session.run_id

        def dump(name: str, document: Dict[str, Any]) -> None:
            path = directory / f"{_safe_filename(name)}-{_safe_filename(run_id)}.json"
            with open(path, 'w') as f:
                json.dump(document, f, indent=2, sort_keys=True, default=str)
            paths.append(path)

        for result in results.results:
            if result.outcome is not None:
                dump(result.name, {
                    'name': result.name,
                    'run_id': run_id,
                    'passed': result.passed,
                    'reason': result.reason,
                    'outcome': result.outcome.to_dict(),
                })
            for step in result.steps:
                if step.outcome is None:
                    continue
                dump(f"{result.name}-{step.name}", {
                    'name': step.name,
                    'workflow': result.name,
                    'run_id': run_id,
                    'passed': step.passed,
                    'reason': step.reason,
                    'outcome': step.outcome.to_dict(),
                })
        return paths

    def write_orphans(self, results: PhaseResults) -> Path:
        path = self._phase_dir(results) / ORPHANS_FILENAME
        with open(path, 'w') as f:
            json.dump({'session_id': self.session.run_id,
                       'session_slug': self.session.slug,
                       'resources': results.orphans}, f, indent=2, sort_keys=True, default=str)
        logger.warning(f"  Orphaned resources recorded in: {path}")
        return path

    def write_all(self, results: PhaseResults) -> Dict[str, Path]:
        paths = {
            'summary': self.write_machine_report(results),
            'junit': self.write_ci_report(results),
            'text': self.write_human_report(results),
        }
        self.write_outcome_artifacts(results)
        if results.orphans:
            paths['orphans'] = self.write_orphans(results)
        return paths
