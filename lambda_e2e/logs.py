"""
Execution log extraction from CloudWatch Logs.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from lambda_e2e.errors import LogExtractionFailed
from lambda_e2e.models import FunctionTarget, InvocationOutcome, LogBundle

logger = logging.getLogger(__name__)

SEVERITIES = ('INFO', 'WARN', 'ERROR')
TEXT_FILENAME = 'cloudwatch_logs.txt'
JSON_FILENAME = 'cloudwatch_logs.json'


def classify(messages: Iterable[str]) -> Dict[str, int]:
    """Count messages per severity by substring match (WARNING counts as WARN)."""
    counts = {severity: 0 for severity in SEVERITIES}
    for message in messages:
        for severity in SEVERITIES:
            if severity in message:
                counts[severity] += 1
    return counts


def _epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


class LogExtractor:
    """Pulls a function's execution logs for a time window."""

    def __init__(self, logs_client, default_window_minutes: int = 5,
                 clock=lambda: datetime.now(timezone.utc)):
        self.client = logs_client
        self.default_window_minutes = default_window_minutes
        self.clock = clock

    @staticmethod
    def log_group(target: FunctionTarget) -> str:
        return f"/aws/lambda/{target.name}"

    @staticmethod
    def capture_immediate(outcome: InvocationOutcome) -> Optional[str]:
        """Return the log tail the transport returned inline, if any."""
        return outcome.log_tail

    def query_window(self, target: FunctionTarget, start: Optional[datetime] = None,
                     end: Optional[datetime] = None) -> LogBundle:
        """
        Fetch log events for ``target`` between ``start`` and ``end``.

        Args:
            target: Function whose log group is queried
            start: Window start; defaults to ``end`` minus the default window
            end: Window end; defaults to now

        Returns:
            LogBundle with events ordered by timestamp and severity counts

        Raises:
            LogExtractionFailed: The log backend could not be queried
        """
        end = end or self.clock()
        start = start or end - timedelta(minutes=self.default_window_minutes)
        group = self.log_group(target)
        logger.info(f"Querying {group} from {start.isoformat()} to {end.isoformat()}")

        events = []
        try:
            paginator = self.client.get_paginator('filter_log_events')
            for page in paginator.paginate(logGroupName=group,
                                           startTime=_epoch_ms(start),
                                           endTime=_epoch_ms(end)):
                for event in page.get('events', []):
                    events.append((event['timestamp'], event['message'].rstrip('\n')))
        except (ClientError, BotoCoreError) as e:
            raise LogExtractionFailed(f"Could not query {group}: {e}")

        events.sort(key=lambda item: item[0])
        bundle = LogBundle(log_group=group, start=start, end=end, events=events,
                           counts=classify(message for _, message in events))
        logger.info(f"  Retrieved {len(events)} log events "
                    f"(INFO={bundle.counts['INFO']}, WARN={bundle.counts['WARN']}, ERROR={bundle.counts['ERROR']})")
        return bundle

    @staticmethod
    def persist(bundle: LogBundle, directory: Path) -> Tuple[Path, Path]:
        """Write the bundle as line-oriented text and as a JSON document."""
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        text_path = directory / TEXT_FILENAME
        json_path = directory / JSON_FILENAME

        with open(text_path, 'w') as f:
            for timestamp, message in bundle.events:
                moment = datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)
                f.write(f"{moment.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3]}Z {message}\n")

        with open(json_path, 'w') as f:
            json.dump(bundle.to_dict(), f, indent=2)

        logger.info(f"  Logs saved to: {text_path}, {json_path}")
        return text_path, json_path
