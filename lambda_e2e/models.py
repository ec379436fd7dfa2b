"""
Data model shared by the harness components.

Everything here is a plain dataclass. Definitions loaded from configuration
(Scenario, Workflow, Step, Expectation) are frozen; results are built up by
the runner and handed to the report generator as a PhaseResults value.
"""

import json
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from lambda_e2e.errors import ErrorKind


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def session_slug(run_id: str) -> str:
    """Run id reduced to characters valid in bucket and table names."""
    slug = re.sub(r'[^a-z0-9-]+', '-', run_id.lower()).strip('-')
    return slug[:40] or 'session'


def isoformat(moment: Optional[datetime]) -> Optional[str]:
    if moment is None:
        return None
    return moment.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


@dataclass(frozen=True)
class TestSession:
    """One end-to-end execution of the harness."""

    __test__ = False

    run_id: str
    region: str
    results_dir: Path
    started_at: datetime
    build_id: str = 'local'

    @classmethod
    def create(cls, region: str, results_dir: Path, build_id: Optional[str] = None,
               commit: Optional[str] = None, now: Optional[datetime] = None) -> 'TestSession':
        """
        Derive the run id from the build identifier plus the short commit,
        falling back to a timestamp when no commit is known.
        """
        started_at = now or utc_now()
        build = build_id or 'local'
        suffix = commit[:7] if commit else started_at.strftime('%Y%m%d%H%M%S')
        return cls(
            run_id=f"{build}-{suffix}",
            region=region,
            results_dir=Path(results_dir),
            started_at=started_at,
            build_id=build,
        )

    @property
    def slug(self) -> str:
        return session_slug(self.run_id)

    def phase_dir(self, phase: str) -> Path:
        return self.results_dir / phase

    def to_dict(self) -> Dict[str, Any]:
        return {
            'run_id': self.run_id,
            'build_id': self.build_id,
            'region': self.region,
            'results_dir': str(self.results_dir),
            'started_at': isoformat(self.started_at),
        }


@dataclass(frozen=True)
class FunctionTarget:
    """Resolved identity of the function under test."""

    name: str
    arn: Optional[str] = None
    runtime: Optional[str] = None
    memory_mb: Optional[int] = None
    timeout_seconds: Optional[int] = None
    last_modified: Optional[str] = None
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'arn': self.arn,
            'runtime': self.runtime,
            'memory_mb': self.memory_mb,
            'timeout_seconds': self.timeout_seconds,
            'last_modified': self.last_modified,
            'url': self.url,
        }


@dataclass(frozen=True)
class Expectation:
    status_code: Optional[int] = None
    body_contains: Tuple[str, ...] = ()
    error_kind: Optional[ErrorKind] = None
    requires_db_connection: bool = False
    min_records: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return (self.status_code is None and not self.body_contains
                and self.error_kind is None and not self.requires_db_connection
                and self.min_records is None)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.status_code is not None:
            data['statusCode'] = self.status_code
        if self.body_contains:
            data['bodyContains'] = list(self.body_contains)
        if self.error_kind is not None:
            data['errorType'] = self.error_kind.value
        if self.requires_db_connection:
            data['requiresDbConnection'] = True
        if self.min_records is not None:
            data['minRecords'] = self.min_records
        return data


@dataclass(frozen=True)
class Scenario:
    """A named unit test: one event, one expectation set."""

    name: str
    event: Any
    expected: Expectation = field(default_factory=Expectation)


class StepType(str, Enum):
    INVOKE = 'invoke_lambda'
    WAIT = 'wait'


@dataclass(frozen=True)
class Step:
    name: str
    type: StepType
    payload: Any = None
    expect: Optional[Expectation] = None
    seconds: float = 0


@dataclass(frozen=True)
class Workflow:
    name: str
    steps: Tuple[Step, ...]
    description: str = ''


@dataclass(frozen=True)
class PerformanceConfig:
    event: Any
    iterations: int = 5
    expected_response_time_ms: int = 1000
    workers: int = 1


@dataclass(frozen=True)
class ResourceSpec:
    """Declarative description of an ephemeral resource to provision."""

    name: str
    kind: str
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UnitSuite:
    scenarios: Tuple[Scenario, ...]
    performance: Optional[PerformanceConfig] = None


@dataclass(frozen=True)
class IntegrationSuite:
    workflows: Tuple[Workflow, ...]
    resources: Tuple[ResourceSpec, ...] = ()


@dataclass
class AnalysisFlags:
    """Advisory signals derived from a response body."""

    data_returned: bool = False
    record_count: int = 0
    looks_successful: bool = False
    looks_erroneous: bool = False
    confidence: str = 'heuristic'
    contract_kind: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'data_returned': self.data_returned,
            'record_count': self.record_count,
            'looks_successful': self.looks_successful,
            'looks_erroneous': self.looks_erroneous,
            'confidence': self.confidence,
            'contract_kind': self.contract_kind,
        }


@dataclass
class InvocationOutcome:
    """
    Result of one call to the target.

    ``response`` is the top-level document the transport returned (parsed
    JSON, or the raw text when it is not JSON). ``body`` is the unwrapped
    application body when the response uses API Gateway style wrapping,
    otherwise the same object as ``response``.
    """

    success: bool
    status_code: Optional[int]
    duration_ms: int
    response: Any = None
    body: Any = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    log_tail: Optional[str] = None
    analysis: Optional[AnalysisFlags] = None

    def body_text(self) -> str:
        target = self.body if self.body is not None else self.response
        if target is None:
            return ''
        if isinstance(target, str):
            return target
        return json.dumps(target, sort_keys=True, ensure_ascii=False, default=str)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'status_code': self.status_code,
            'duration_ms': self.duration_ms,
            'response': self.response,
            'body': self.body,
            'error_kind': self.error_kind.value if self.error_kind else None,
            'error_message': self.error_message,
            'log_tail': self.log_tail,
            'analysis': self.analysis.to_dict() if self.analysis else None,
        }


@dataclass
class StepResult:
    name: str
    step_type: StepType
    passed: bool
    reason: str = ''
    outcome: Optional[InvocationOutcome] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'type': self.step_type.value,
            'passed': self.passed,
            'reason': self.reason,
            'duration_ms': self.outcome.duration_ms if self.outcome else 0,
            'error_kind': (self.outcome.error_kind.value
                           if self.outcome and self.outcome.error_kind else None),
        }


@dataclass
class TestResult:
    """One entry of a phase report: a scenario, a workflow or a perf run."""

    __test__ = False

    name: str
    kind: str
    passed: bool
    reason: str = ''
    duration_ms: int = 0
    outcome: Optional[InvocationOutcome] = None
    steps: List[StepResult] = field(default_factory=list)
    state: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            'name': self.name,
            'type': self.kind,
            'passed': self.passed,
            'reason': self.reason,
            'duration_ms': self.duration_ms,
        }
        if self.outcome is not None:
            entry['status_code'] = self.outcome.status_code
            entry['error_kind'] = self.outcome.error_kind.value if self.outcome.error_kind else None
            if self.outcome.analysis is not None:
                entry['analysis'] = self.outcome.analysis.to_dict()
        if self.steps:
            entry['steps'] = [step.to_dict() for step in self.steps]
        if self.state is not None:
            entry['state'] = self.state
        return entry


@dataclass
class PerformanceResult:
    iterations: int
    mode: str
    durations_ms: List[int]
    failed_iterations: List[Dict[str, Any]]
    expected_response_time_ms: int

    @property
    def successful(self) -> int:
        return self.iterations - len(self.failed_iterations)

    @property
    def average_ms(self) -> int:
        return int(sum(self.durations_ms) / len(self.durations_ms)) if self.durations_ms else 0

    @property
    def min_ms(self) -> int:
        return min(self.durations_ms) if self.durations_ms else 0

    @property
    def max_ms(self) -> int:
        return max(self.durations_ms) if self.durations_ms else 0

    @property
    def passed(self) -> bool:
        return (not self.failed_iterations and bool(self.durations_ms)
                and self.average_ms <= self.expected_response_time_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'iterations': self.iterations,
            'mode': self.mode,
            'successful': self.successful,
            'failed_iterations': list(self.failed_iterations),
            'average_ms': self.average_ms,
            'min_ms': self.min_ms,
            'max_ms': self.max_ms,
            'expected_response_time_ms': self.expected_response_time_ms,
            'passed': self.passed,
        }


@dataclass
class LogBundle:
    """Log events collected for a time window."""

    log_group: str
    start: datetime
    end: datetime
    events: List[Tuple[int, str]] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'log_group': self.log_group,
            'start': isoformat(self.start),
            'end': isoformat(self.end),
            'event_count': len(self.events),
            'counts': dict(self.counts),
            'events': [{'timestamp': ts, 'message': message} for ts, message in self.events],
        }


@dataclass
class EphemeralResource:
    name: str
    kind: str
    identifier: str
    created_at: datetime
    tags: Dict[str, str] = field(default_factory=dict)
    parent: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'kind': self.kind,
            'identifier': self.identifier,
            'parent': self.parent,
            'created_at': isoformat(self.created_at),
            'tags': dict(self.tags),
        }


@dataclass
class PhaseResults:
    """Everything one test phase produced, threaded into the report generator."""

    phase: str
    target: Optional[FunctionTarget] = None
    results: List[TestResult] = field(default_factory=list)
    performance: Optional[PerformanceResult] = None
    log_summary: Optional[Dict[str, Any]] = None
    log_bundle: Optional[LogBundle] = None
    orphans: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(result.passed for result in self.results)

    @property
    def failures(self) -> List[TestResult]:
        return [result for result in self.results if not result.passed]


class SessionDeadline:
    """Overall time ceiling for a session."""

    def __init__(self, seconds: Optional[float], clock=time.monotonic):
        self._clock = clock
        self.seconds = seconds
        self._start = self._clock()

    @property
    def expired(self) -> bool:
        if not self.seconds:
            return False
        return self._clock() - self._start >= self.seconds
