"""
Settings and test-definition loading.

Settings come from the environment (overridable from the command line).
Test definitions are JSON documents holding either ``scenarios`` or
``workflows``; when a definition file is missing a minimal default is
written in its place so the next run sees the same suite.
"""

import json
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from lambda_e2e.errors import ConfigError, ErrorKind
from lambda_e2e.models import (
    Expectation,
    IntegrationSuite,
    PerformanceConfig,
    ResourceSpec,
    Scenario,
    Step,
    StepType,
    UnitSuite,
    Workflow,
)

logger = logging.getLogger(__name__)

RESOURCE_KINDS = ('s3_bucket', 's3_object', 'dynamodb_table')

DEFAULT_SCENARIOS = {
    'scenarios': [
        {
            'name': 'health-check',
            'event': {'test': 'health'},
            'expected': {'statusCode': 200},
        }
    ]
}

DEFAULT_WORKFLOWS = {
    'workflows': [
        {
            'name': 'basic-invocation',
            'description': 'Single invocation of the target function',
            'steps': [
                {
                    'name': 'invoke',
                    'type': 'invoke_lambda',
                    'payload': {'test': 'health', 'requestId': '${uuid}'},
                    'expect': {'statusCode': 200},
                }
            ],
        }
    ]
}


@dataclass(frozen=True)
class HarnessSettings:
    """Run settings resolved from the environment."""

    region: str = 'us-east-1'
    build_id: Optional[str] = None
    commit: Optional[str] = None
    results_dir: Path = Path('test-results')
    target_function: Optional[str] = None
    function_pattern: Optional[str] = None
    function_url: Optional[str] = None
    scenarios_file: Path = Path('config/test-scenarios.json')
    workflows_file: Path = Path('config/integration-workflows.json')
    log_window_minutes: int = 5
    run_timeout_seconds: int = 900
    invoke_timeout_seconds: int = 60

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> 'HarnessSettings':
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read from (defaults to ``os.environ``)
            **overrides: Values that win over the environment; ``None`` is ignored

        Returns:
            Resolved settings

        Raises:
            ConfigError: A numeric variable does not parse
        """
        env = os.environ if environ is None else environ
        settings = cls(
            region=env.get('AWS_REGION') or env.get('AWS_DEFAULT_REGION') or 'us-east-1',
            build_id=env.get('BUILD_ID') or env.get('BUILD_NUMBER'),
            commit=env.get('GIT_COMMIT'),
            results_dir=Path(env.get('RESULTS_DIR', 'test-results')),
            target_function=env.get('TARGET_FUNCTION') or None,
            function_pattern=env.get('FUNCTION_PATTERN') or None,
            function_url=env.get('FUNCTION_URL') or None,
            scenarios_file=Path(env.get('SCENARIOS_FILE', 'config/test-scenarios.json')),
            workflows_file=Path(env.get('WORKFLOWS_FILE', 'config/integration-workflows.json')),
            log_window_minutes=_env_int(env, 'LOG_WINDOW_MINUTES', 5),
            run_timeout_seconds=_env_int(env, 'RUN_TIMEOUT_SECONDS', 900),
            invoke_timeout_seconds=_env_int(env, 'INVOKE_TIMEOUT_SECONDS', 60),
        )
        updates = {key: value for key, value in overrides.items() if value is not None}
        for key in ('results_dir', 'scenarios_file', 'workflows_file'):
            if key in updates:
                updates[key] = Path(updates[key])
        return replace(settings, **updates)


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw in (None, ''):
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _read_document(path: Path, default: Dict[str, Any]) -> Dict[str, Any]:
    if not path.exists():
        logger.warning(f"Test definition file not found: {path}; writing default")
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(default, f, indent=2)
        return json.loads(json.dumps(default))

    try:
        with open(path, 'r') as f:
            document = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}")

    if not isinstance(document, dict):
        raise ConfigError(f"{path}: top-level document must be an object")
    logger.info(f"Loaded test definitions from {path}")
    return document


def load_unit_suite(path: Path) -> UnitSuite:
    """
    Load unit scenarios (and the optional performance block).

    Raises:
        ConfigError: The file exists but does not match the scenario schema
    """
    path = Path(path)
    document = _read_document(path, DEFAULT_SCENARIOS)
    entries = document.get('scenarios')
    if not isinstance(entries, list) or not entries:
        raise ConfigError(f"{path}: 'scenarios' must be a non-empty list")

    scenarios = [parse_scenario(entry, f"{path}: scenarios[{i}]") for i, entry in enumerate(entries)]
    _check_unique([s.name for s in scenarios], f"{path}: scenario")

    performance = None
    if document.get('performance') is not None:
        performance = parse_performance(document['performance'], f"{path}: performance")

    return UnitSuite(scenarios=tuple(scenarios), performance=performance)


def load_integration_suite(path: Path) -> IntegrationSuite:
    """
    Load integration workflows and the ephemeral resources they rely on.

    Raises:
        ConfigError: The file exists but does not match the workflow schema
    """
    path = Path(path)
    document = _read_document(path, DEFAULT_WORKFLOWS)
    entries = document.get('workflows')
    if not isinstance(entries, list) or not entries:
        raise ConfigError(f"{path}: 'workflows' must be a non-empty list")

    workflows = [parse_workflow(entry, f"{path}: workflows[{i}]") for i, entry in enumerate(entries)]
    _check_unique([w.name for w in workflows], f"{path}: workflow")

    resources: List[ResourceSpec] = []
    raw_resources = document.get('resources', [])
    if not isinstance(raw_resources, list):
        raise ConfigError(f"{path}: 'resources' must be a list")
    for i, entry in enumerate(raw_resources):
        resources.append(parse_resource(entry, f"{path}: resources[{i}]"))
    _check_unique([r.name for r in resources], f"{path}: resource")

    return IntegrationSuite(workflows=tuple(workflows), resources=tuple(resources))


def _check_unique(names: List[str], label: str) -> None:
    seen = set()
    for name in names:
        if name in seen:
            raise ConfigError(f"{label} name {name!r} is defined more than once")
        seen.add(name)


def _require_name(entry: Any, where: str) -> str:
    if not isinstance(entry, dict):
        raise ConfigError(f"{where}: expected an object")
    name = entry.get('name')
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"{where}: 'name' must be a non-empty string")
    return name


def _optional_int(data: Dict[str, Any], key: str, where: str, minimum: Optional[int] = None) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{where}: '{key}' must be an integer")
    if minimum is not None and value < minimum:
        raise ConfigError(f"{where}: '{key}' must be >= {minimum}")
    return value


def parse_expectation(data: Any, where: str) -> Expectation:
    if data is None:
        return Expectation()
    if not isinstance(data, dict):
        raise ConfigError(f"{where}: expectation must be an object")

    body_contains = data.get('bodyContains') or []
    if not isinstance(body_contains, list) or not all(isinstance(s, str) for s in body_contains):
        raise ConfigError(f"{where}: 'bodyContains' must be a list of strings")

    error_kind = None
    if data.get('errorType') is not None:
        try:
            error_kind = ErrorKind.parse(data['errorType'])
        except ValueError:
            allowed = ', '.join(kind.value for kind in ErrorKind)
            raise ConfigError(f"{where}: 'errorType' must be one of {allowed}")

    requires_db = data.get('requiresDbConnection', False)
    if not isinstance(requires_db, bool):
        raise ConfigError(f"{where}: 'requiresDbConnection' must be a boolean")

    return Expectation(
        status_code=_optional_int(data, 'statusCode', where),
        body_contains=tuple(body_contains),
        error_kind=error_kind,
        requires_db_connection=requires_db,
        min_records=_optional_int(data, 'minRecords', where, minimum=0),
    )


def parse_scenario(entry: Any, where: str) -> Scenario:
    name = _require_name(entry, where)
    return Scenario(
        name=name,
        event=entry.get('event', {}),
        expected=parse_expectation(entry.get('expected'), f"{where} ({name})"),
    )


def parse_step(entry: Any, where: str) -> Step:
    name = _require_name(entry, where)
    try:
        step_type = StepType(entry.get('type'))
    except ValueError:
        raise ConfigError(f"{where} ({name}): 'type' must be 'invoke_lambda' or 'wait'")

    if step_type is StepType.WAIT:
        seconds = entry.get('seconds')
        if isinstance(seconds, bool) or not isinstance(seconds, (int, float)) or seconds < 0:
            raise ConfigError(f"{where} ({name}): wait step needs a non-negative 'seconds'")
        return Step(name=name, type=step_type, seconds=seconds)

    expect = None
    if entry.get('expect') is not None:
        expect = parse_expectation(entry['expect'], f"{where} ({name})")
    return Step(name=name, type=step_type, payload=entry.get('payload', {}), expect=expect)


def parse_workflow(entry: Any, where: str) -> Workflow:
    name = _require_name(entry, where)
    raw_steps = entry.get('steps')
    if not isinstance(raw_steps, list) or not raw_steps:
        raise ConfigError(f"{where} ({name}): 'steps' must be a non-empty list")
    steps = [parse_step(step, f"{where}.steps[{i}]") for i, step in enumerate(raw_steps)]
    _check_unique([step.name for step in steps], f"{where} ({name}): step")
    description = entry.get('description') or ''
    if not isinstance(description, str):
        raise ConfigError(f"{where} ({name}): 'description' must be a string")
    return Workflow(name=name, steps=tuple(steps), description=description)


def parse_resource(entry: Any, where: str) -> ResourceSpec:
    name = _require_name(entry, where)
    kind = entry.get('kind')
    if kind not in RESOURCE_KINDS:
        raise ConfigError(f"{where} ({name}): 'kind' must be one of {', '.join(RESOURCE_KINDS)}")
    if kind == 's3_object' and not (entry.get('bucket') and entry.get('key')):
        raise ConfigError(f"{where} ({name}): s3_object needs 'bucket' and 'key'")
    options = {key: value for key, value in entry.items() if key not in ('name', 'kind')}
    return ResourceSpec(name=name, kind=kind, options=options)


def parse_performance(data: Any, where: str) -> PerformanceConfig:
    if not isinstance(data, dict):
        raise ConfigError(f"{where}: expected an object")
    return PerformanceConfig(
        event=data.get('event', {}),
        iterations=_optional_int(data, 'iterations', where, minimum=1) or 5,
        expected_response_time_ms=_optional_int(data, 'expected_response_time_ms', where, minimum=1) or 1000,
        workers=_optional_int(data, 'workers', where, minimum=1) or 1,
    )
