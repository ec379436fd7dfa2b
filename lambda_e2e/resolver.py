"""
Target discovery.

An explicit function name or ARN is looked up directly. A pattern is matched
against the account's function listing (substring, or shell-style glob when
the pattern contains wildcards) and the first match in listing order wins.
Listing order follows the backend's pagination, so it is not guaranteed to be
stable when several functions match; prefer exact names in CI.
"""

import fnmatch
import logging
from typing import List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from lambda_e2e.errors import AccessError, TargetNotFoundError
from lambda_e2e.models import FunctionTarget

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = ('ResourceNotFoundException', 'ResourceNotFound')


def _matches(name: str, pattern: str) -> bool:
    if any(ch in pattern for ch in '*?['):
        return fnmatch.fnmatchcase(name, pattern)
    return pattern in name


class TargetResolver:
    """Resolves the function under test and captures its runtime metadata."""

    def __init__(self, lambda_client):
        self.client = lambda_client

    def list_candidates(self, pattern: str) -> List[str]:
        """
        Return names of deployed functions matching ``pattern``, in listing order.

        Raises:
            AccessError: The function listing could not be read
        """
        matches = []
        try:
            paginator = self.client.get_paginator('list_functions')
            for page in paginator.paginate():
                for function in page.get('Functions', []):
                    name = function['FunctionName']
                    if _matches(name, pattern):
                        matches.append(name)
        except (ClientError, BotoCoreError) as e:
            raise AccessError(f"Could not list functions: {e}")
        return matches

    def resolve(self, name: Optional[str] = None, pattern: Optional[str] = None) -> FunctionTarget:
        """
        Resolve the target function.

        Args:
            name: Exact function name or ARN; wins over ``pattern``
            pattern: Substring or glob used to discover the function

        Returns:
            The resolved FunctionTarget

        Raises:
            TargetNotFoundError: Nothing matched
            AccessError: A match was found but its configuration could not be read
        """
        if not name and not pattern:
            raise TargetNotFoundError("No target function name or pattern configured")

        if not name:
            candidates = self.list_candidates(pattern)
            if not candidates:
                raise TargetNotFoundError(f"No deployed function matches pattern {pattern!r}")
            if len(candidates) > 1:
                logger.warning(f"Pattern {pattern!r} matched {len(candidates)} functions "
                               f"({', '.join(candidates)}); using the first one")
            name = candidates[0]

        try:
            config = self.client.get_function_configuration(FunctionName=name)
        except ClientError as e:
            code = e.response.get('Error', {}).get('Code', '')
            if code in NOT_FOUND_CODES:
                raise TargetNotFoundError(f"Function not found: {name}")
            raise AccessError(f"Could not read configuration of {name}: {e}")
        except BotoCoreError as e:
            raise AccessError(f"Could not read configuration of {name}: {e}")

        target = FunctionTarget(
            name=config['FunctionName'],
            arn=config.get('FunctionArn'),
            runtime=config.get('Runtime'),
            memory_mb=config.get('MemorySize'),
            timeout_seconds=config.get('Timeout'),
            last_modified=config.get('LastModified'),
        )
        logger.info(f"✓ Resolved target {target.name} "
                    f"(runtime={target.runtime}, memory={target.memory_mb}MB, timeout={target.timeout_seconds}s)")
        return target

    def verify_access(self, target: FunctionTarget) -> bool:
        """Check that the function's metadata is still readable with current credentials."""
        try:
            self.client.get_function(FunctionName=target.arn or target.name)
            return True
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Cannot access {target.name}: {e}")
            return False
