"""
Response analysis and expectation checking.

``validate`` applies the strict checks (status code, required substrings,
error kind) before the domain checks. The domain checks read the flags from
``analyze``: when the body follows the tagged result contract
(``{"kind": "Success" | "DomainError" | "TransportError", ...}``) the flags
come from it, otherwise from a keyword heuristic over the body text. The
heuristic is best effort and is reported with ``confidence="heuristic"``.
"""

import logging
import re
from typing import Any, Optional, Tuple

from lambda_e2e.models import AnalysisFlags, Expectation, InvocationOutcome

logger = logging.getLogger(__name__)

CONTRACT_KINDS = ('Success', 'DomainError', 'TransportError')
DATA_KEYS = ('data', 'items', 'Items', 'records', 'results', 'rows', 'record', 'item', 'Item')

SUCCESS_PATTERN = re.compile(
    r'\b(success|successful|successfully|succeeded|created|stored|saved|retrieved|found|'
    r'connected|healthy|ok)\b',
    re.IGNORECASE,
)
ERROR_PATTERN = re.compile(
    r'\b(error|errors|exception|failed|failure|traceback|denied|unavailable|timed out|'
    r'not found|refused|invalid)\b',
    re.IGNORECASE,
)


def _collection(body: Any) -> Tuple[bool, int]:
    """Locate returned data in ``body``: (found, record count)."""
    if isinstance(body, list):
        return True, len(body)
    if isinstance(body, dict):
        for key in DATA_KEYS:
            if key in body and body[key] is not None:
                value = body[key]
                if isinstance(value, list):
                    return True, len(value)
                return True, 1
    return False, 0


def analyze(outcome: InvocationOutcome) -> AnalysisFlags:
    """
    Derive advisory flags from an outcome's body.

    The result is also stored on ``outcome.analysis``.
    """
    body = outcome.body if outcome.body is not None else outcome.response

    if isinstance(body, dict) and body.get('kind') in CONTRACT_KINDS:
        kind = body['kind']
        data_returned, record_count = _collection({'data': body.get('data')})
        flags = AnalysisFlags(
            data_returned=data_returned,
            record_count=record_count,
            looks_successful=kind == 'Success',
            looks_erroneous=kind != 'Success',
            confidence='contract',
            contract_kind=kind,
        )
    else:
        data_returned, record_count = _collection(body)
        text = outcome.body_text()
        flags = AnalysisFlags(
            data_returned=data_returned,
            record_count=record_count,
            looks_successful=bool(SUCCESS_PATTERN.search(text)),
            looks_erroneous=bool(ERROR_PATTERN.search(text)) or outcome.error_kind is not None,
        )

    outcome.analysis = flags
    return flags


def validate(outcome: InvocationOutcome, expectation: Optional[Expectation]) -> Tuple[bool, str]:
    """
    Check an outcome against an expectation, stopping at the first failure.

    An absent or empty expectation passes when the call itself succeeded.

    Returns:
        (passed, reason)
    """
    flags = outcome.analysis or analyze(outcome)

    if expectation is None or expectation.is_empty:
        if outcome.error_kind is not None:
            return False, f"Invocation failed: {outcome.error_kind.value}: {outcome.error_message}"
        return True, 'Invocation succeeded'

    if expectation.status_code is not None and outcome.status_code != expectation.status_code:
        reason = f"Status code mismatch: expected {expectation.status_code}, got {outcome.status_code}"
        if outcome.error_kind is not None:
            reason += f" ({outcome.error_kind.value}: {outcome.error_message})"
        return False, reason

    if expectation.body_contains:
        text = outcome.body_text()
        missing = [needle for needle in expectation.body_contains if needle not in text]
        if missing:
            return False, f"Response body missing expected text: {', '.join(repr(m) for m in missing)}"

    if expectation.error_kind is not None:
        if outcome.error_kind != expectation.error_kind:
            actual = outcome.error_kind.value if outcome.error_kind else None
            return False, f"Error type mismatch: expected {expectation.error_kind.value}, got {actual}"
    elif outcome.error_kind is not None:
        return False, f"Invocation failed: {outcome.error_kind.value}: {outcome.error_message}"

    if expectation.requires_db_connection:
        reached = flags.looks_successful and not flags.looks_erroneous
        if flags.confidence == 'heuristic':
            reached = reached or (flags.data_returned and not flags.looks_erroneous)
        if not reached:
            return False, f"Backing data store not reached ({flags.confidence} check)"

    if expectation.min_records is not None and flags.record_count < expectation.min_records:
        return False, (f"Too few records: expected at least {expectation.min_records}, "
                       f"got {flags.record_count} ({flags.confidence} check)")

    if expectation.requires_db_connection or expectation.min_records is not None:
        return True, f"All expectations met ({flags.confidence} check)"
    return True, 'All expectations met'
