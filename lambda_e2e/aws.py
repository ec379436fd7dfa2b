"""boto3 client factory shared by the harness components."""

import logging
from typing import Dict

import boto3
from botocore.config import Config

logger = logging.getLogger(__name__)


class AwsClients:
    """
    Lazily created boto3 clients bound to one region.

    The Lambda client gets a read timeout a little above the function's own
    timeout and no automatic retries, so each invocation is attempted once.
    """

    def __init__(self, region: str, invoke_timeout_seconds: int = 60):
        self.region = region
        self.invoke_timeout_seconds = invoke_timeout_seconds
        self._session = boto3.session.Session(region_name=region)
        self._clients: Dict[str, object] = {}

    def _client(self, service: str, config: Config = None):
        if service not in self._clients:
            logger.debug(f"Creating {service} client in {self.region}")
            self._clients[service] = self._session.client(service, config=config)
        return self._clients[service]

    @property
    def lambda_(self):
        return self._client('lambda', Config(
            read_timeout=self.invoke_timeout_seconds + 5,
            connect_timeout=10,
            retries={'max_attempts': 0},
        ))

    @property
    def logs(self):
        return self._client('logs', Config(retries={'max_attempts': 3, 'mode': 'standard'}))

    @property
    def s3(self):
        return self._client('s3')

    @property
    def dynamodb(self):
        return self._client('dynamodb')
