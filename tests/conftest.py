import os
from datetime import datetime, timezone

import pytest

from lambda_e2e.errors import ErrorKind
from lambda_e2e.models import FunctionTarget, InvocationOutcome, TestSession

FIXED_NOW = datetime(2024, 3, 1, 12, 30, 45, tzinfo=timezone.utc)


@pytest.fixture(scope="session", autouse=True)
def setup_global_test_environment():
    """Dummy credentials so no test can reach a real AWS account."""
    if "AWS_PROFILE" in os.environ:
        del os.environ["AWS_PROFILE"]

    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"
    yield


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


@pytest.fixture
def target():
    return FunctionTarget(
        name="orders-service-dev",
        arn="arn:aws:lambda:us-east-1:123456789012:function:orders-service-dev",
        runtime="python3.12",
        memory_mb=256,
        timeout_seconds=30,
        last_modified="2024-02-28T10:00:00.000+0000",
    )


@pytest.fixture
def session(tmp_path):
    return TestSession.create(
        region="us-east-1",
        results_dir=tmp_path / "results",
        build_id="42",
        commit="1a2b3c4d5e6f",
        now=FIXED_NOW,
    )


def outcome(status_code=200, body=None, duration_ms=50, error_kind=None, error_message=None):
    return InvocationOutcome(
        success=error_kind is None,
        status_code=status_code,
        duration_ms=duration_ms,
        response=body,
        body=body,
        error_kind=error_kind,
        error_message=error_message,
    )


class ScriptedInvoker:
    """Returns queued outcomes in order and records every payload it was sent."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def invoke(self, target, payload):
        self.calls.append(payload)
        result = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        return result() if callable(result) else result


@pytest.fixture
def make_outcome():
    return outcome


@pytest.fixture
def scripted_invoker():
    return ScriptedInvoker


@pytest.fixture
def timeout_outcome():
    return outcome(status_code=None, duration_ms=30000, error_kind=ErrorKind.TIMEOUT,
                   error_message="Read timeout on endpoint URL")
