"""
Invocation transports.

Both transports return an InvocationOutcome for every call and never raise:
transport exceptions are mapped to an ErrorKind here, at the adapter
boundary, and nowhere else.
"""

import base64
import json
import logging
import time
from typing import Any, Callable, Optional, Tuple

import requests
from botocore.exceptions import BotoCoreError, ClientError, ConnectTimeoutError, ReadTimeoutError

from lambda_e2e.errors import ErrorKind
from lambda_e2e.models import FunctionTarget, InvocationOutcome

logger = logging.getLogger(__name__)

TIMEOUT_MARKERS = ('Task timed out', 'timed out after')


def parse_body(text: str) -> Any:
    """Parse ``text`` as JSON, returning the text unchanged when it is not JSON."""
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return text


def unwrap_response(response: Any, default_status: Optional[int]) -> Tuple[Optional[int], Any]:
    """
    Split an API Gateway style ``{"statusCode": ..., "body": ...}`` wrapper.

    Returns:
        (status code, application body); responses without a wrapper keep the
        transport status and are their own body
    """
    if isinstance(response, dict) and isinstance(response.get('statusCode'), int) \
            and not isinstance(response.get('statusCode'), bool):
        body = response.get('body')
        if isinstance(body, str):
            body = parse_body(body)
        return response['statusCode'], body
    return default_status, response


class Invoker:
    """Common bookkeeping for the transports."""

    def __init__(self, clock: Callable[[], float] = time.perf_counter):
        self._clock = clock

    def _elapsed_ms(self, start: float) -> int:
        return int((self._clock() - start) * 1000)

    def invoke(self, target: FunctionTarget, payload: Any) -> InvocationOutcome:
        raise NotImplementedError

    def _failure(self, kind: ErrorKind, message: str, start: float) -> InvocationOutcome:
        duration_ms = self._elapsed_ms(start)
        logger.warning(f"Invocation failed after {duration_ms}ms: {kind.value}: {message}")
        return InvocationOutcome(success=False, status_code=None, duration_ms=duration_ms,
                                 error_kind=kind, error_message=message)


class LambdaInvoker(Invoker):
    """Synchronous ``RequestResponse`` invocation through the Lambda API."""

    def __init__(self, lambda_client, clock: Callable[[], float] = time.perf_counter):
        super().__init__(clock)
        self.client = lambda_client

    def invoke(self, target: FunctionTarget, payload: Any) -> InvocationOutcome:
        """
        Invoke ``target`` with ``payload`` and capture the outcome.

        Args:
            target: Resolved function
            payload: JSON-serializable event

        Returns:
            InvocationOutcome; failures are reported through ``error_kind``
        """
        function_id = target.arn or target.name
        logger.debug(f"Invoking {function_id} with payload: {payload}")

        try:
            encoded = json.dumps(payload).encode('utf-8')
        except (TypeError, ValueError) as e:
            return InvocationOutcome(success=False, status_code=None, duration_ms=0,
                                     error_kind=ErrorKind.INVOCATION_ERROR,
                                     error_message=f"Payload is not JSON serializable: {e}")

        start = self._clock()
        try:
            response = self.client.invoke(
                FunctionName=function_id,
                InvocationType='RequestResponse',
                LogType='Tail',
                Payload=encoded,
            )
            raw = response['Payload'].read()
            duration_ms = self._elapsed_ms(start)
        except (ReadTimeoutError, ConnectTimeoutError) as e:
            return self._failure(ErrorKind.TIMEOUT, str(e), start)
        except ClientError as e:
            error = e.response.get('Error', {})
            message = f"{error.get('Code', 'Unknown')}: {error.get('Message', str(e))}"
            return self._failure(ErrorKind.CLIENT_ERROR, message, start)
        except BotoCoreError as e:
            return self._failure(ErrorKind.INVOCATION_ERROR, str(e), start)
        except Exception as e:
            return self._failure(ErrorKind.INVOCATION_ERROR, f"{type(e).__name__}: {e}", start)

        text = raw.decode('utf-8', errors='replace') if isinstance(raw, bytes) else str(raw)
        parsed = parse_body(text)
        status_code, body = unwrap_response(parsed, response.get('StatusCode', 200))
        log_tail = self._decode_log(response.get('LogResult'))

        error_kind = None
        error_message = None
        if response.get('FunctionError'):
            error_kind, error_message = self._function_error(response['FunctionError'], parsed)

        outcome = InvocationOutcome(
            success=error_kind is None,
            status_code=status_code,
            duration_ms=duration_ms,
            response=parsed,
            body=body,
            error_kind=error_kind,
            error_message=error_message,
            log_tail=log_tail,
        )
        logger.debug(f"Response from {function_id} ({duration_ms}ms): {text}")
        return outcome

    @staticmethod
    def _function_error(function_error: str, parsed: Any) -> Tuple[ErrorKind, str]:
        if isinstance(parsed, dict):
            error_type = parsed.get('errorType', function_error)
            message = f"{error_type}: {parsed.get('errorMessage', '')}".rstrip(': ')
        else:
            message = f"{function_error}: {parsed}"
        if any(marker in message for marker in TIMEOUT_MARKERS):
            return ErrorKind.TIMEOUT, message
        return ErrorKind.INVOCATION_ERROR, message

    @staticmethod
    def _decode_log(log_result: Optional[str]) -> Optional[str]:
        if not log_result:
            return None
        try:
            return base64.b64decode(log_result).decode('utf-8', errors='replace')
        except (ValueError, TypeError):
            logger.debug("LogResult was not valid base64")
            return None


class HttpInvoker(Invoker):
    """Invocation through a function URL or API Gateway endpoint."""

    def __init__(self, url: str, timeout_seconds: int = 30,
                 clock: Callable[[], float] = time.perf_counter):
        super().__init__(clock)
        self.url = url
        self.timeout_seconds = timeout_seconds

    def invoke(self, target: FunctionTarget, payload: Any) -> InvocationOutcome:
        url = target.url or self.url
        start = self._clock()
        try:
            response = requests.post(
                url,
                json=payload,
                headers={'Content-Type': 'application/json'},
                timeout=self.timeout_seconds,
            )
            duration_ms = self._elapsed_ms(start)
        except requests.Timeout as e:
            return self._failure(ErrorKind.TIMEOUT, str(e), start)
        except requests.RequestException as e:
            return self._failure(ErrorKind.INVOCATION_ERROR, str(e), start)
        except (TypeError, ValueError) as e:
            return self._failure(ErrorKind.INVOCATION_ERROR, f"Payload is not JSON serializable: {e}", start)

        logger.debug(f"POST {url} -> {response.status_code} ({duration_ms}ms)")
        parsed = parse_body(response.text)
        if response.status_code >= 500:
            logger.warning(f"✗ POST {url} returned {response.status_code}")
            return InvocationOutcome(
                success=False,
                status_code=response.status_code,
                duration_ms=duration_ms,
                response=parsed,
                body=parsed,
                error_kind=ErrorKind.INVOCATION_ERROR,
                error_message=f"HTTP {response.status_code}: {response.text[:200]}",
            )
        return InvocationOutcome(
            success=True,
            status_code=response.status_code,
            duration_ms=duration_ms,
            response=parsed,
            body=parsed,
        )
