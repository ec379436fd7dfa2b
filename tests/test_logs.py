import json
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from lambda_e2e.errors import LogExtractionFailed
from lambda_e2e.logs import LogExtractor, classify


@pytest.fixture
def logs_client():
    with mock_aws():
        yield boto3.client("logs", region_name="us-east-1")


def seed_events(client, group, messages):
    client.create_log_group(logGroupName=group)
    client.create_log_stream(logGroupName=group, logStreamName="2024/03/01/[$LATEST]abc")
    now_ms = int(time.time() * 1000) - 1000
    client.put_log_events(
        logGroupName=group,
        logStreamName="2024/03/01/[$LATEST]abc",
        logEvents=[{"timestamp": now_ms + i, "message": m} for i, m in enumerate(messages)],
    )


def test_classify_counts_by_substring():
    counts = classify([
        "[INFO] request received",
        "[WARNING] slow query",
        "[ERROR] boom",
        "REPORT RequestId: 1 Duration: 12 ms",
        "[INFO] [ERROR] mixed",
    ])

    assert counts == {"INFO": 2, "WARN": 1, "ERROR": 2}


def test_query_window_returns_ordered_bundle(logs_client, target):
    group = f"/aws/lambda/{target.name}"
    seed_events(logs_client, group, ["[INFO] start\n", "[ERROR] failed to save", "[INFO] done"])
    extractor = LogExtractor(logs_client)
    now = datetime.now(timezone.utc)

    bundle = extractor.query_window(target, now - timedelta(minutes=5), now + timedelta(minutes=1))

    assert bundle.log_group == group
    assert [m for _, m in bundle.events] == ["[INFO] start", "[ERROR] failed to save", "[INFO] done"]
    assert bundle.counts == {"INFO": 2, "WARN": 0, "ERROR": 1}


def test_default_window_is_relative_to_now(target):
    client = MagicMock()
    client.get_paginator.return_value.paginate.return_value = [{"events": []}]
    end = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    extractor = LogExtractor(client, default_window_minutes=10, clock=lambda: end)

    bundle = extractor.query_window(target)

    assert bundle.start == end - timedelta(minutes=10)
    kwargs = client.get_paginator.return_value.paginate.call_args.kwargs
    assert kwargs["endTime"] - kwargs["startTime"] == 10 * 60 * 1000


def test_missing_log_group_raises_log_extraction_failed(logs_client, target):
    with pytest.raises(LogExtractionFailed):
        LogExtractor(logs_client).query_window(target)


def test_backend_error_raises_log_extraction_failed(target):
    client = MagicMock()
    client.get_paginator.return_value.paginate.side_effect = ClientError(
        {"Error": {"Code": "ThrottlingException", "Message": "slow down"}}, "FilterLogEvents")

    with pytest.raises(LogExtractionFailed, match="ThrottlingException"):
        LogExtractor(client).query_window(target)


def test_persist_writes_text_and_json(logs_client, target, tmp_path):
    seed_events(logs_client, f"/aws/lambda/{target.name}", ["[INFO] one", "[WARN] two"])
    bundle = LogExtractor(logs_client).query_window(target)

    text_path, json_path = LogExtractor.persist(bundle, tmp_path / "unit")

    lines = text_path.read_text().splitlines()
    assert len(lines) == 2
    assert lines[0].endswith("[INFO] one")
    document = json.loads(json_path.read_text())
    assert document["event_count"] == 2
    assert document["counts"]["WARN"] == 1


def test_capture_immediate_returns_inline_tail(make_outcome):
    outcome = make_outcome(200, {})
    outcome.log_tail = "START RequestId: 1\nEND RequestId: 1\n"

    assert LogExtractor.capture_immediate(outcome) == outcome.log_tail
