"""
Repeated-invocation latency measurement.

With one worker the iterations run back to back and durations are isolated
call latencies. With more workers they run on a bounded thread pool and the
durations are wall time under concurrent load; the result records which
mode was used.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, List

from lambda_e2e.models import FunctionTarget, PerformanceConfig, PerformanceResult, TestResult

logger = logging.getLogger(__name__)

MAX_WORKERS = 10


class LatencyAccumulator:
    """Thread-safe collector for per-iteration durations and failures."""

    def __init__(self):
        self._lock = threading.Lock()
        self.durations_ms: List[int] = []
        self.failures: List[Dict[str, Any]] = []

    def record(self, iteration: int, outcome) -> None:
        with self._lock:
            if outcome.error_kind is None:
                self.durations_ms.append(outcome.duration_ms)
            else:
                self.failures.append({
                    'iteration': iteration,
                    'error_kind': outcome.error_kind.value,
                    'error_message': outcome.error_message,
                    'duration_ms': outcome.duration_ms,
                })


def run_performance_test(invoker, target: FunctionTarget, config: PerformanceConfig,
                         payload: Any = None) -> PerformanceResult:
    """
    Invoke ``target`` ``config.iterations`` times and aggregate latency.

    Args:
        invoker: Transport used for the calls
        target: Function under test
        config: Iteration count, worker count and latency threshold
        payload: Event to send; defaults to ``config.event``

    Returns:
        PerformanceResult; failed iterations are listed by 1-based index
    """
    payload = config.event if payload is None else payload
    workers = max(1, min(config.workers, MAX_WORKERS))
    mode = 'sequential' if workers == 1 else 'concurrent'
    accumulator = LatencyAccumulator()

    logger.info(f"Running performance test: {config.iterations} iterations, {mode} "
                f"({workers} worker{'s' if workers > 1 else ''})")

    def invoke_once(iteration: int) -> int:
        outcome = invoker.invoke(target, payload)
        accumulator.record(iteration, outcome)
        status = "✓" if outcome.error_kind is None else "✗"
        logger.info(f"  {status} Iteration {iteration}: {outcome.duration_ms}ms")
        return iteration

    if workers == 1:
        for iteration in range(1, config.iterations + 1):
            invoke_once(iteration)
    else:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(invoke_once, i) for i in range(1, config.iterations + 1)]
            for future in as_completed(futures):
                future.result()

    result = PerformanceResult(
        iterations=config.iterations,
        mode=mode,
        durations_ms=list(accumulator.durations_ms),
        failed_iterations=sorted(accumulator.failures, key=lambda f: f['iteration']),
        expected_response_time_ms=config.expected_response_time_ms,
    )
    logger.info(f"  Average duration: {result.average_ms}ms "
                f"(threshold {config.expected_response_time_ms}ms)")
    logger.info(f"  Min/Max: {result.min_ms}ms / {result.max_ms}ms")
    return result


def performance_test_result(result: PerformanceResult) -> TestResult:
    """Summarize a performance run as a report entry."""
    if result.failed_iterations:
        failed = ', '.join(f"#{f['iteration']} ({f['error_kind']})" for f in result.failed_iterations)
        reason = f"Failed iterations: {failed}"
    elif not result.durations_ms:
        reason = 'No successful iterations'
    elif result.average_ms > result.expected_response_time_ms:
        reason = (f"Average response time {result.average_ms}ms exceeds "
                  f"expected {result.expected_response_time_ms}ms")
    else:
        reason = (f"Average response time {result.average_ms}ms within "
                  f"expected {result.expected_response_time_ms}ms")
    return TestResult(
        name='performance',
        kind='performance',
        passed=result.passed,
        reason=reason,
        duration_ms=sum(result.durations_ms),
    )
