import threading

from lambda_e2e.errors import ErrorKind
from lambda_e2e.models import PerformanceConfig
from lambda_e2e.performance import LatencyAccumulator, performance_test_result, run_performance_test


def test_fast_target_passes(target, make_outcome, scripted_invoker):
    invoker = scripted_invoker([make_outcome(200, {}, duration_ms=d) for d in (80, 95, 60, 100, 70)])
    config = PerformanceConfig(event={"test": "health"}, iterations=5, expected_response_time_ms=100)

    result = run_performance_test(invoker, target, config)

    assert result.mode == "sequential"
    assert result.successful == 5
    assert result.average_ms == 81
    assert result.min_ms == 60
    assert result.max_ms == 100
    assert result.average_ms <= config.expected_response_time_ms
    assert result.passed is True
    assert invoker.calls == [{"test": "health"}] * 5


def test_timeout_on_fifth_call_is_identified(target, make_outcome, scripted_invoker, timeout_outcome):
    outcomes = [make_outcome(200, {}, duration_ms=50) for _ in range(4)] + [timeout_outcome]
    config = PerformanceConfig(event={}, iterations=5, expected_response_time_ms=100)

    result = run_performance_test(scripted_invoker(outcomes), target, config)
    entry = performance_test_result(result)

    assert result.passed is False
    assert result.failed_iterations[0]["iteration"] == 5
    assert result.failed_iterations[0]["error_kind"] == "Timeout"
    assert entry.passed is False
    assert "#5 (Timeout)" in entry.reason


def test_slow_average_fails(target, make_outcome, scripted_invoker):
    config = PerformanceConfig(event={}, iterations=3, expected_response_time_ms=100)

    result = run_performance_test(scripted_invoker([make_outcome(200, {}, duration_ms=250)]), target, config)

    assert result.passed is False
    assert "exceeds" in performance_test_result(result).reason


def test_concurrent_mode_records_every_iteration(target, make_outcome):
    class CountingInvoker:
        def __init__(self):
            self.lock = threading.Lock()
            self.count = 0

        def invoke(self, target, payload):
            with self.lock:
                self.count += 1
                n = self.count
            if n == 3:
                return make_outcome(None, None, duration_ms=10, error_kind=ErrorKind.CLIENT_ERROR,
                                    error_message="TooManyRequestsException")
            return make_outcome(200, {}, duration_ms=20)

    invoker = CountingInvoker()
    config = PerformanceConfig(event={}, iterations=12, expected_response_time_ms=100, workers=4)

    result = run_performance_test(invoker, target, config)

    assert result.mode == "concurrent"
    assert invoker.count == 12
    assert len(result.durations_ms) == 11
    assert len(result.failed_iterations) == 1
    assert result.passed is False


def test_accumulator_is_thread_safe(make_outcome):
    accumulator = LatencyAccumulator()
    outcome = make_outcome(200, {}, duration_ms=5)

    threads = [threading.Thread(target=lambda: [accumulator.record(i, outcome) for i in range(500)])
               for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(accumulator.durations_ms) == 4000
