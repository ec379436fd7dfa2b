import json
from pathlib import Path

import pytest

from lambda_e2e.config import (
    DEFAULT_SCENARIOS,
    HarnessSettings,
    load_integration_suite,
    load_unit_suite,
)
from lambda_e2e.errors import ConfigError, ErrorKind
from lambda_e2e.models import StepType


def write_json(path, document):
    path.write_text(json.dumps(document))
    return path


def test_missing_scenarios_file_writes_default(tmp_path):
    path = tmp_path / "config" / "test-scenarios.json"

    suite = load_unit_suite(path)

    assert path.exists()
    assert json.loads(path.read_text()) == DEFAULT_SCENARIOS
    assert [s.name for s in suite.scenarios] == ["health-check"]
    assert suite.scenarios[0].event == {"test": "health"}
    assert suite.scenarios[0].expected.status_code == 200
    assert suite.performance is None


def test_missing_workflows_file_writes_default(tmp_path):
    path = tmp_path / "workflows.json"

    suite = load_integration_suite(path)

    assert path.exists()
    assert len(suite.workflows) == 1
    assert len(suite.workflows[0].steps) == 1
    assert suite.workflows[0].steps[0].type is StepType.INVOKE
    assert suite.resources == ()

    # The persisted default loads identically on the next run.
    assert load_integration_suite(path) == suite


def test_scenario_expectations_are_parsed(tmp_path):
    path = write_json(tmp_path / "s.json", {
        "scenarios": [
            {
                "name": "create-missing-field",
                "event": {"action": "create"},
                "expected": {"statusCode": 400, "bodyContains": ["error", "name"]},
            },
            {
                "name": "throttled",
                "event": {},
                "expected": {"errorType": "ClientError"},
            },
            {
                "name": "list",
                "event": {"action": "list"},
                "expected": {"requiresDbConnection": True, "minRecords": 3},
            },
        ],
        "performance": {"event": {"test": "health"}, "iterations": 10,
                        "expected_response_time_ms": 250, "workers": 4},
    })

    suite = load_unit_suite(path)

    first, second, third = suite.scenarios
    assert first.expected.status_code == 400
    assert first.expected.body_contains == ("error", "name")
    assert second.expected.error_kind is ErrorKind.CLIENT_ERROR
    assert third.expected.requires_db_connection is True
    assert third.expected.min_records == 3
    assert suite.performance.iterations == 10
    assert suite.performance.expected_response_time_ms == 250
    assert suite.performance.workers == 4


def test_workflow_steps_and_resources_are_parsed(tmp_path):
    path = write_json(tmp_path / "w.json", {
        "resources": [
            {"name": "staging", "kind": "s3_bucket"},
            {"name": "input", "kind": "s3_object", "bucket": "staging", "key": "in.json", "body": {"a": 1}},
        ],
        "workflows": [
            {
                "name": "submit-and-retrieve",
                "description": "round trip",
                "steps": [
                    {"name": "submit", "type": "invoke_lambda", "payload": {"id": "${uuid}"},
                     "expect": {"statusCode": 201}},
                    {"name": "settle", "type": "wait", "seconds": 2},
                    {"name": "retrieve", "type": "invoke_lambda", "payload": {"id": "${uuid}"}},
                ],
            }
        ],
    })

    suite = load_integration_suite(path)

    workflow = suite.workflows[0]
    assert workflow.description == "round trip"
    submit, settle, retrieve = workflow.steps
    assert submit.expect.status_code == 201
    assert settle.type is StepType.WAIT
    assert settle.seconds == 2
    assert retrieve.expect is None
    assert [r.kind for r in suite.resources] == ["s3_bucket", "s3_object"]
    assert suite.resources[1].options == {"bucket": "staging", "key": "in.json", "body": {"a": 1}}


@pytest.mark.parametrize("document", [
    {"scenarios": []},
    {"scenarios": [{"event": {}}]},
    {"scenarios": [{"name": "a", "expected": {"statusCode": "200"}}]},
    {"scenarios": [{"name": "a", "expected": {"bodyContains": "error"}}]},
    {"scenarios": [{"name": "a", "expected": {"errorType": "Boom"}}]},
    {"scenarios": [{"name": "a"}, {"name": "a"}]},
    {"workflows": []},
    ["not", "an", "object"],
])
def test_schema_violations_raise_config_error(tmp_path, document):
    path = write_json(tmp_path / "bad.json", document)
    loader = load_integration_suite if isinstance(document, dict) and "workflows" in document else load_unit_suite

    with pytest.raises(ConfigError):
        loader(path)


@pytest.mark.parametrize("step", [
    {"name": "s", "type": "sleep"},
    {"name": "s", "type": "wait"},
    {"name": "s", "type": "wait", "seconds": -1},
])
def test_invalid_steps_raise_config_error(tmp_path, step):
    path = write_json(tmp_path / "w.json", {"workflows": [{"name": "w", "steps": [step]}]})

    with pytest.raises(ConfigError):
        load_integration_suite(path)


def test_unparseable_json_raises_config_error(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{\"scenarios\": [")

    with pytest.raises(ConfigError, match="Invalid JSON"):
        load_unit_suite(path)


def test_unknown_resource_kind_raises_config_error(tmp_path):
    path = write_json(tmp_path / "w.json", {
        "resources": [{"name": "q", "kind": "sqs_queue"}],
        "workflows": [{"name": "w", "steps": [{"name": "s", "type": "invoke_lambda"}]}],
    })

    with pytest.raises(ConfigError, match="kind"):
        load_integration_suite(path)


def test_settings_from_env():
    settings = HarnessSettings.from_env({
        "AWS_REGION": "eu-west-1",
        "BUILD_NUMBER": "118",
        "GIT_COMMIT": "abcdef123456",
        "RESULTS_DIR": "out",
        "TARGET_FUNCTION": "orders",
        "RUN_TIMEOUT_SECONDS": "120",
    })

    assert settings.region == "eu-west-1"
    assert settings.build_id == "118"
    assert settings.commit == "abcdef123456"
    assert settings.results_dir == Path("out")
    assert settings.target_function == "orders"
    assert settings.run_timeout_seconds == 120
    assert settings.log_window_minutes == 5


def test_settings_overrides_win_and_none_is_ignored():
    settings = HarnessSettings.from_env(
        {"TARGET_FUNCTION": "from-env", "RESULTS_DIR": "env-results"},
        target_function="from-cli",
        results_dir=None,
    )

    assert settings.target_function == "from-cli"
    assert settings.results_dir == Path("env-results")


def test_settings_reject_non_numeric_values():
    with pytest.raises(ConfigError, match="LOG_WINDOW_MINUTES"):
        HarnessSettings.from_env({"LOG_WINDOW_MINUTES": "five"})
