"""
Session-scoped ephemeral cloud resources.

Resources are named ``e2e-<session slug>-<name>`` and tagged with the session
id. Use the manager as a context manager: on exit every resource that was
created is torn down, whatever happened inside the block. A teardown failure
is logged and recorded as an orphan; ``sweep_orphans`` can later remove
leftovers by session.
"""

import json
import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlencode

from botocore.exceptions import BotoCoreError, ClientError

from lambda_e2e.errors import ProvisionError, TeardownError
from lambda_e2e.models import EphemeralResource, ResourceSpec, session_slug, utc_now

logger = logging.getLogger(__name__)

SESSION_TAG = 'e2e-session'
RESOURCE_TAG = 'e2e-resource'
MANAGED_BY_TAG = 'managed-by'
MANAGED_BY = 'lambda-e2e-harness'
NAME_PREFIX = 'e2e'


def resource_prefix(session_slug: str) -> str:
    return f"{NAME_PREFIX}-{session_slug}-"


class EphemeralResourceManager:
    """
    Creates and tears down resources for one session.

    Args:
        session_id: Run id recorded in every resource's tags
        session_slug: Name-safe form of the run id embedded in resource names
        s3_client: boto3 S3 client
        dynamodb_client: boto3 DynamoDB client
        declared: Logical names of every resource in the suite; an object whose
            bucket is one of them is only staged into that provisioned bucket
    """

    def __init__(self, session_id: str, session_slug: str, s3_client, dynamodb_client,
                 clock: Callable[[], datetime] = utc_now, declared: Iterable[str] = ()):
        self.session_id = session_id
        self.declared = set(declared)
        self.session_slug = session_slug
        self.s3 = s3_client
        self.dynamodb = dynamodb_client
        self.clock = clock
        self.provisioned: List[EphemeralResource] = []
        self.failed: Dict[str, str] = {}
        self.orphans: List[Dict[str, Any]] = []
        self.teardown_attempts = 0

    def __enter__(self) -> 'EphemeralResourceManager':
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.teardown_all(self.session_id)
        return False

    def physical_name(self, name: str) -> str:
        cleaned = re.sub(r'[^a-z0-9-]+', '-', name.lower()).strip('-')
        return (resource_prefix(self.session_slug) + cleaned)[:63].rstrip('-')

    def tags(self, name: str) -> Dict[str, str]:
        return {SESSION_TAG: self.session_id, RESOURCE_TAG: name, MANAGED_BY_TAG: MANAGED_BY}

    def get(self, name: str) -> Optional[EphemeralResource]:
        for resource in self.provisioned:
            if resource.name == name:
                return resource
        return None

    def placeholder_values(self) -> Dict[str, str]:
        """Substitution entries (``resource.<name>``) for provisioned resources."""
        return {f"resource.{r.name}": r.identifier for r in self.provisioned}

    def provision(self, spec: ResourceSpec) -> EphemeralResource:
        """
        Create the resource described by ``spec``.

        A resource whose creation call succeeded is registered for teardown
        even if a follow-up call (tagging, waiting) fails.

        Raises:
            ProvisionError: The resource could not be created or configured
        """
        logger.info(f"Provisioning {spec.kind} '{spec.name}'...")
        try:
            if spec.kind == 's3_bucket':
                resource = self._provision_bucket(spec)
            elif spec.kind == 's3_object':
                resource = self._provision_object(spec)
            elif spec.kind == 'dynamodb_table':
                resource = self._provision_table(spec)
            else:
                raise ProvisionError(f"Unsupported resource kind: {spec.kind}")
        except ProvisionError as e:
            self.failed[spec.name] = str(e)
            logger.error(f"✗ Provisioning {spec.name} failed: {e}")
            raise
        except (ClientError, BotoCoreError) as e:
            logger.error(f"✗ Provisioning {spec.name} failed: {e}")
            self.failed[spec.name] = f"Could not provision {spec.kind} '{spec.name}': {e}"
            raise ProvisionError(self.failed[spec.name])

        logger.info(f"✓ Provisioned {spec.kind} {resource.identifier}")
        return resource

    def _register(self, spec: ResourceSpec, identifier: str, parent: Optional[str] = None) -> EphemeralResource:
        resource = EphemeralResource(
            name=spec.name,
            kind=spec.kind,
            identifier=identifier,
            created_at=self.clock(),
            tags=self.tags(spec.name),
            parent=parent,
        )
        self.provisioned.append(resource)
        return resource

    def _provision_bucket(self, spec: ResourceSpec) -> EphemeralResource:
        bucket = self.physical_name(spec.name)
        region = self.s3.meta.region_name
        params: Dict[str, Any] = {'Bucket': bucket}
        if region and region != 'us-east-1':
            params['CreateBucketConfiguration'] = {'LocationConstraint': region}
        self.s3.create_bucket(**params)
        resource = self._register(spec, bucket)
        self.s3.put_bucket_tagging(
            Bucket=bucket,
            Tagging={'TagSet': [{'Key': k, 'Value': v} for k, v in resource.tags.items()]},
        )
        return resource

    def _provision_object(self, spec: ResourceSpec) -> EphemeralResource:
        options = spec.options
        parent = self.get(options['bucket'])
        if parent is None and (options['bucket'] in self.failed or options['bucket'] in self.declared):
            raise ProvisionError(f"Bucket resource '{options['bucket']}' was not provisioned")
        bucket = parent.identifier if parent else options['bucket']
        key = f"{self.session_slug}/{options['key'].lstrip('/')}"
        body = options.get('body', '')
        if not isinstance(body, (str, bytes)):
            body = json.dumps(body)
        if isinstance(body, str):
            body = body.encode('utf-8')

        tags = self.tags(spec.name)
        self.s3.put_object(
            Bucket=bucket,
            Key=key,
            Body=body,
            Tagging=urlencode(tags),
        )
        return self._register(spec, key, parent=bucket)

    def _provision_table(self, spec: ResourceSpec) -> EphemeralResource:
        table = self.physical_name(spec.name)
        hash_key = spec.options.get('hash_key', 'id')
        self.dynamodb.create_table(
            TableName=table,
            KeySchema=[{'AttributeName': hash_key, 'KeyType': 'HASH'}],
            AttributeDefinitions=[{'AttributeName': hash_key, 'AttributeType': 'S'}],
            BillingMode='PAY_PER_REQUEST',
            Tags=[{'Key': k, 'Value': v} for k, v in self.tags(spec.name).items()],
        )
        resource = self._register(spec, table)
        self.dynamodb.get_waiter('table_exists').wait(
            TableName=table, WaiterConfig={'Delay': 2, 'MaxAttempts': 30})
        return resource

    def teardown(self, resource: EphemeralResource) -> None:
        """
        Delete one resource.

        Raises:
            TeardownError: The delete call failed
        """
        try:
            if resource.kind == 's3_bucket':
                _delete_bucket(self.s3, resource.identifier)
            elif resource.kind == 's3_object':
                self.s3.delete_object(Bucket=resource.parent, Key=resource.identifier)
            elif resource.kind == 'dynamodb_table':
                self.dynamodb.delete_table(TableName=resource.identifier)
            else:
                raise TeardownError(f"Unsupported resource kind: {resource.kind}")
        except (ClientError, BotoCoreError) as e:
            raise TeardownError(f"Could not delete {resource.kind} {resource.identifier}: {e}")

    def teardown_all(self, session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Tear down every resource of the session, newest first.

        Failures are logged and kept in ``orphans``; they never propagate.

        Returns:
            Orphan records for resources that could not be deleted
        """
        session_id = session_id or self.session_id
        pending = [r for r in reversed(self.provisioned) if r.tags.get(SESSION_TAG) == session_id]
        if pending:
            logger.info(f"Tearing down {len(pending)} ephemeral resources for session {session_id}...")

        for resource in pending:
            self.teardown_attempts += 1
            try:
                self.teardown(resource)
                logger.info(f"  ✓ Deleted {resource.kind} {resource.identifier}")
            except TeardownError as e:
                logger.error(f"  ✗ {e} (left for orphan sweep)")
                orphan = resource.to_dict()
                orphan['error'] = str(e)
                self.orphans.append(orphan)
            self.provisioned.remove(resource)

        return list(self.orphans)


def _delete_bucket(s3_client, bucket: str) -> None:
    paginator = s3_client.get_paginator('list_objects_v2')
    for page in paginator.paginate(Bucket=bucket):
        keys = [{'Key': obj['Key']} for obj in page.get('Contents', [])]
        if keys:
            s3_client.delete_objects(Bucket=bucket, Delete={'Objects': keys, 'Quiet': True})
    s3_client.delete_bucket(Bucket=bucket)


def _tag_value(tags: List[Dict[str, str]], key: str) -> Optional[str]:
    for tag in tags:
        if tag.get('Key') == key:
            return tag.get('Value')
    return None


def _bucket_session(s3_client, bucket: str) -> Optional[str]:
    try:
        tag_set = s3_client.get_bucket_tagging(Bucket=bucket).get('TagSet', [])
    except ClientError as e:
        if e.response.get('Error', {}).get('Code') == 'NoSuchTagSet':
            return None
        raise
    return _tag_value(tag_set, SESSION_TAG)


def _table_session(dynamodb_client, table: str) -> Optional[str]:
    arn = dynamodb_client.describe_table(TableName=table)['Table']['TableArn']
    tags = dynamodb_client.list_tags_of_resource(ResourceArn=arn).get('Tags', [])
    return _tag_value(tags, SESSION_TAG)


def sweep_orphans(session_id: str, s3_client, dynamodb_client) -> Dict[str, List[str]]:
    """
    Delete buckets and tables left behind by a session.

    Candidates are found by the ``e2e-<session slug>-`` name prefix and only
    deleted when their ``e2e-session`` tag equals ``session_id``; a run id
    that is a prefix of another run id never matches that run's resources.

    Returns:
        ``{"deleted": [...], "failed": [...], "skipped": [...]}``
    """
    prefix = resource_prefix(session_slug(session_id))
    report: Dict[str, List[str]] = {'deleted': [], 'failed': [], 'skipped': []}
    logger.info(f"Sweeping resources of session {session_id} with prefix {prefix}...")

    for bucket in s3_client.list_buckets().get('Buckets', []):
        name = bucket['Name']
        if not name.startswith(prefix):
            continue
        try:
            owner = _bucket_session(s3_client, name)
            if owner != session_id:
                report['skipped'].append(f"s3://{name}")
                logger.info(f"  Skipping bucket {name} (session tag: {owner})")
                continue
            _delete_bucket(s3_client, name)
            report['deleted'].append(f"s3://{name}")
            logger.info(f"  ✓ Deleted bucket {name}")
        except (ClientError, BotoCoreError) as e:
            report['failed'].append(f"s3://{name}")
            logger.error(f"  ✗ Could not delete bucket {name}: {e}")

    paginator = dynamodb_client.get_paginator('list_tables')
    for page in paginator.paginate():
        for table in page.get('TableNames', []):
            if not table.startswith(prefix):
                continue
            try:
                owner = _table_session(dynamodb_client, table)
                if owner != session_id:
                    report['skipped'].append(f"dynamodb:{table}")
                    logger.info(f"  Skipping table {table} (session tag: {owner})")
                    continue
                dynamodb_client.delete_table(TableName=table)
                report['deleted'].append(f"dynamodb:{table}")
                logger.info(f"  ✓ Deleted table {table}")
            except (ClientError, BotoCoreError) as e:
                report['failed'].append(f"dynamodb:{table}")
                logger.error(f"  ✗ Could not delete table {table}: {e}")

    return report
