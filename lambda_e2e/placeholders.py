"""
Template token expansion for test payloads.

Recognized tokens form a closed set (see TokenKind) plus named
``${resource.<name>}`` entries for provisioned ephemeral resources. A
substitution table is bound once per scenario or workflow run, so every
occurrence of ``${uuid}`` within that run expands to the same value.
"""

import json
import logging
import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z0-9_-]+)?)\}')
TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%SZ'
DATE_FORMAT = '%Y-%m-%d'


class TokenKind(str, Enum):
    TIMESTAMP = 'timestamp'
    DATE = 'date'
    RUN_ID = 'run_id'
    BUILD_ID = 'build_id'
    UUID = 'uuid'


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class PlaceholderExpander:
    """
    Expands ``${token}`` placeholders in arbitrary JSON documents.

    Args:
        run_id: Session run id
        build_id: Build identifier
        clock: Returns the current instant (UTC)
        id_generator: Returns a fresh unique id
        extra: Additional named values, e.g. ``{"resource.staging": "bucket-name"}``
    """

    def __init__(self, run_id: str, build_id: str,
                 clock: Callable[[], datetime] = _utc_now,
                 id_generator: Callable[[], str] = _new_id,
                 extra: Optional[Mapping[str, str]] = None):
        self.run_id = run_id
        self.build_id = build_id
        self.clock = clock
        self.id_generator = id_generator
        self.extra: Dict[str, str] = dict(extra or {})

    def bind(self) -> Dict[str, str]:
        """Build one substitution table from the current clock and a fresh id."""
        now = self.clock().astimezone(timezone.utc)
        table = {
            TokenKind.TIMESTAMP.value: now.strftime(TIMESTAMP_FORMAT),
            TokenKind.DATE.value: now.strftime(DATE_FORMAT),
            TokenKind.RUN_ID.value: self.run_id,
            TokenKind.BUILD_ID.value: self.build_id,
            TokenKind.UUID.value: self.id_generator(),
        }
        table.update(self.extra)
        return table

    def expand(self, payload: Any, table: Optional[Mapping[str, str]] = None) -> Any:
        """
        Replace every recognized token in ``payload``.

        The payload is serialized to JSON text, substituted and parsed back,
        so tokens inside keys and nested values are handled alike.

        Args:
            payload: JSON-compatible document
            table: Substitution table from ``bind()``; a new one is bound if omitted

        Returns:
            A new document with tokens replaced
        """
        if payload is None:
            return None
        table = self.bind() if table is None else table
        text = json.dumps(payload)
        unknown = set()

        def substitute(match):
            token = match.group(1)
            if token in table:
                # Values are embedded in JSON strings.
                return json.dumps(str(table[token]))[1:-1]
            unknown.add(token)
            return match.group(0)

        expanded = TOKEN_PATTERN.sub(substitute, text)
        if unknown:
            logger.warning(f"Unrecognized placeholders left as-is: {', '.join(sorted(unknown))}")
        return json.loads(expanded)

    def references(self, payload: Any) -> set:
        """Return the set of token names used in ``payload``."""
        return set(TOKEN_PATTERN.findall(json.dumps(payload)))
