"""Async HTTP client for the Open Service Broker v2 protocol.

Provides provision, deprovision, unbind and last-operation calls against a
registered service broker. Every response is normalized into a typed
outcome (see ``outcomes``); transport failures raise ``BrokerTimeout`` (or
``BrokerConnectionLost`` when the connection drops mid-request; both mean
the remote state is unknown) or ``BrokerUnreachable`` (request never sent).

Only 429 responses are retried, honoring Retry-After. A timed-out request
is never re-sent: a DELETE that may have landed must not be repeated
behind the caller's back.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from typing import Any

import httpx

from ..last_operation import OPERATION_STATES
from ..models import ServiceBinding, ServiceBroker, ServiceInstance
from ..observability.metrics import (
    BROKER_REQUEST_DURATION_SECONDS,
    BROKER_REQUESTS_TOTAL,
)
from ..settings import CloudControllerSettings
from .errors import BrokerConnectionLost, BrokerTimeout, BrokerUnreachable
from .outcomes import (
    AsyncAccepted,
    BrokerError,
    Gone,
    LastOperationOutcome,
    LastOperationReport,
    Outcome,
    SyncSuccess,
)

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = frozenset({429})
_GONE_STATUS_CODES = frozenset({404, 410})
_AMBIGUOUS_CLIENT_STATUS_CODES = frozenset({408})

_DEFAULT_MAX_RETRIES = 3
_DEFAULT_BASE_DELAY = 1.0  # seconds
_DEFAULT_MAX_DELAY = 30.0  # seconds

# Error bodies are truncated before they land in errors and logs.
_MAX_BODY_CHARS = 500


# ── Module-level shared client ───────────────────────────────────

_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


def _reset_shared_async_client_for_tests() -> None:
    global _shared_async_client
    _shared_async_client = None


# ── Response normalization ───────────────────────────────────────


def normalize_response(
    resp: httpx.Response,
    *,
    accepts_incomplete: bool,
    allow_gone: bool = True,
) -> Outcome:
    """Map a provision/deprovision/unbind response onto an ``Outcome``."""
    status = resp.status_code
    if allow_gone and status in _GONE_STATUS_CODES:
        return Gone(status)

    if status in (200, 201, 202):
        try:
            body = _json_object(resp)
        except ValueError:
            return BrokerError(
                status_code=status,
                description='malformed response body',
                body=resp.text[:_MAX_BODY_CHARS],
                ambiguous=True,
            )
        if status != 202:
            return SyncSuccess(body)
        if not accepts_incomplete:
            return BrokerError(
                status_code=status,
                description=(
                    'broker responded asynchronously but accepts_incomplete '
                    'was not requested'
                ),
                body=resp.text[:_MAX_BODY_CHARS],
                ambiguous=True,
            )
        return AsyncAccepted(
            operation=_optional_str(body.get('operation')),
            retry_after=_retry_after_seconds(resp),
        )

    return _error_outcome(resp)


def normalize_last_operation(resp: httpx.Response) -> LastOperationOutcome:
    """Map a last_operation response onto a ``LastOperationOutcome``."""
    status = resp.status_code
    if status in _GONE_STATUS_CODES:
        return Gone(status)
    if status != 200:
        return _error_outcome(resp)

    try:
        body = _json_object(resp)
    except ValueError:
        return BrokerError(
            status_code=status,
            description='malformed response body',
            body=resp.text[:_MAX_BODY_CHARS],
            ambiguous=True,
        )

    state = body.get('state')
    if state not in OPERATION_STATES:
        return BrokerError(
            status_code=status,
            description=f'invalid last operation state: {state!r}',
            body=resp.text[:_MAX_BODY_CHARS],
            ambiguous=True,
        )
    return LastOperationReport(
        state=state,
        description=_optional_str(body.get('description')) or '',
        retry_after=_retry_after_seconds(resp),
    )


def _error_outcome(resp: httpx.Response) -> BrokerError:
    body = resp.text
    error: str | None = None
    description = body[:200] if body else f'HTTP {resp.status_code}'
    try:
        payload = resp.json()
        if isinstance(payload, dict):
            error = _optional_str(payload.get('error'))
            description = _optional_str(payload.get('description')) or description
    except ValueError:
        pass

    return BrokerError(
        status_code=resp.status_code,
        description=description,
        error=error,
        body=body[:_MAX_BODY_CHARS],
        ambiguous=(
            resp.status_code >= 500
            or resp.status_code in _AMBIGUOUS_CLIENT_STATUS_CODES
        ),
    )


def _json_object(resp: httpx.Response) -> dict[str, Any]:
    payload = resp.json()
    if not isinstance(payload, dict):
        raise ValueError(f'expected a JSON object, got {type(payload).__name__}')
    return payload


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _retry_after_seconds(resp: httpx.Response) -> float | None:
    raw = resp.headers.get('retry-after')
    if not raw:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None


def _outcome_label(outcome: Any) -> str:
    return {
        SyncSuccess: 'sync_success',
        AsyncAccepted: 'async_accepted',
        Gone: 'gone',
        BrokerError: 'broker_error',
        LastOperationReport: 'last_operation',
    }.get(type(outcome), 'unknown')


# ── Client ───────────────────────────────────────────────────────


class ServiceBrokerClient:
    """Async client for one registered service broker.

    All calls authenticate with the broker's basic-auth credentials and
    carry the broker API version plus a request-identity header.
    """

    def __init__(
        self,
        *,
        broker: ServiceBroker,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 60.0,
        api_version: str = '2.15',
        max_retries: int = _DEFAULT_MAX_RETRIES,
        base_delay: float = _DEFAULT_BASE_DELAY,
        max_delay: float = _DEFAULT_MAX_DELAY,
    ) -> None:
        if not broker.broker_url:
            raise ValueError('broker_url is required')

        self._broker = broker
        self._base_url = broker.broker_url.rstrip('/')
        self._client = http_client or _get_shared_async_client()
        self._timeout = float(timeout_seconds)
        self._api_version = api_version
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay

    @property
    def broker(self) -> ServiceBroker:
        return self._broker

    def _headers(self) -> dict[str, str]:
        return {
            'X-Broker-API-Version': self._api_version,
            'X-Broker-API-Request-Identity': str(uuid.uuid4()),
            'Accept': 'application/json',
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: dict[str, str] | None = None,
        json: Any | None = None,
    ) -> httpx.Response:
        """Send one broker request, retrying only on 429."""
        url = f'{self._base_url}{path}'
        auth = (self._broker.auth_username, self._broker.auth_password)

        for attempt in range(self._max_retries + 1):
            started = time.monotonic()
            try:
                resp = await self._client.request(
                    method,
                    url,
                    headers=self._headers(),
                    params=params,
                    json=json,
                    auth=auth,
                    timeout=self._timeout,
                )
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                BROKER_REQUESTS_TOTAL.labels(operation=operation, outcome='unreachable').inc()
                logger.warning(
                    'Broker %s unreachable: %s %s',
                    self._broker.name,
                    method,
                    path,
                    extra={'broker_guid': self._broker.guid},
                )
                raise BrokerUnreachable(url, method=method) from e
            except httpx.TimeoutException as e:
                BROKER_REQUESTS_TOTAL.labels(operation=operation, outcome='timeout').inc()
                logger.warning(
                    'Broker %s timed out after %.1fs: %s %s',
                    self._broker.name,
                    self._timeout,
                    method,
                    path,
                    extra={'broker_guid': self._broker.guid},
                )
                raise BrokerTimeout(url, method=method) from e
            except httpx.TransportError as e:
                BROKER_REQUESTS_TOTAL.labels(operation=operation, outcome='connection_lost').inc()
                logger.warning(
                    'Broker %s connection lost: %s %s (%s)',
                    self._broker.name,
                    method,
                    path,
                    type(e).__name__,
                    extra={'broker_guid': self._broker.guid},
                )
                raise BrokerConnectionLost(url, method=method, reason=str(e)) from e
            finally:
                BROKER_REQUEST_DURATION_SECONDS.labels(operation=operation).observe(
                    time.monotonic() - started
                )

            if resp.status_code not in _RETRYABLE_STATUS_CODES:
                return resp
            if attempt >= self._max_retries:
                return resp

            delay = self._retry_after_delay(resp, attempt)
            logger.warning(
                'Broker %s %s %s returned %d (attempt %d/%d), retrying in %.1fs',
                self._broker.name,
                method,
                path,
                resp.status_code,
                attempt + 1,
                self._max_retries + 1,
                delay,
            )
            await asyncio.sleep(delay)

        raise AssertionError('unreachable: retry loop always returns or raises')

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with full jitter."""
        delay = min(self._base_delay * (2 ** attempt), self._max_delay)
        return random.uniform(0, delay)

    def _retry_after_delay(self, resp: httpx.Response, attempt: int) -> float:
        """Use Retry-After header if present, otherwise exponential backoff."""
        retry_after = _retry_after_seconds(resp)
        if retry_after is not None:
            return min(max(retry_after, 0.1), self._max_delay)
        return self._backoff_delay(attempt)

    @staticmethod
    def _plan_params(instance: ServiceInstance) -> dict[str, str]:
        plan = instance.service_plan
        if plan is None:
            raise ValueError(
                f'service instance {instance.guid!r} is not broker-backed'
            )
        return {'service_id': plan.service_unique_id, 'plan_id': plan.unique_id}

    def _record(self, operation: str, outcome: Any) -> None:
        BROKER_REQUESTS_TOTAL.labels(
            operation=operation, outcome=_outcome_label(outcome),
        ).inc()

    # ── Public API ───────────────────────────────────────────────

    async def provision(
        self,
        instance: ServiceInstance,
        *,
        accepts_incomplete: bool = False,
        parameters: dict[str, Any] | None = None,
    ) -> Outcome:
        """Create the instance at the broker (PUT)."""
        plan_params = self._plan_params(instance)
        payload: dict[str, Any] = {
            **plan_params,
            'space_guid': instance.space_guid,
            'context': {
                'platform': 'cloudfoundry',
                'space_guid': instance.space_guid,
                'instance_name': instance.name,
            },
        }
        if parameters:
            payload['parameters'] = parameters

        params = {'accepts_incomplete': 'true'} if accepts_incomplete else None
        resp = await self._request(
            'PUT',
            f'/v2/service_instances/{instance.guid}',
            operation='provision',
            params=params,
            json=payload,
        )
        outcome = normalize_response(
            resp, accepts_incomplete=accepts_incomplete, allow_gone=False,
        )
        self._record('provision', outcome)
        return outcome

    async def deprovision(
        self,
        instance: ServiceInstance,
        *,
        accepts_incomplete: bool = False,
    ) -> Outcome:
        """Delete the instance at the broker.

        ``accepts_incomplete`` is only sent when requested.
        """
        params = self._plan_params(instance)
        if accepts_incomplete:
            params['accepts_incomplete'] = 'true'

        resp = await self._request(
            'DELETE',
            f'/v2/service_instances/{instance.guid}',
            operation='deprovision',
            params=params,
        )
        outcome = normalize_response(resp, accepts_incomplete=accepts_incomplete)
        self._record('deprovision', outcome)
        if isinstance(outcome, BrokerError):
            logger.warning(
                'Deprovision of %s failed at broker %s: %d %s',
                instance.guid,
                self._broker.name,
                outcome.status_code,
                outcome.description,
                extra={'service_instance_guid': instance.guid},
            )
        return outcome

    async def unbind(
        self,
        binding: ServiceBinding,
        instance: ServiceInstance,
        *,
        accepts_incomplete: bool = False,
    ) -> Outcome:
        """Delete one binding (app or route) at the broker."""
        params = self._plan_params(instance)
        if accepts_incomplete:
            params['accepts_incomplete'] = 'true'

        resp = await self._request(
            'DELETE',
            f'/v2/service_instances/{instance.guid}/service_bindings/{binding.guid}',
            operation='unbind',
            params=params,
        )
        outcome = normalize_response(resp, accepts_incomplete=accepts_incomplete)
        self._record('unbind', outcome)
        return outcome

    async def fetch_last_operation(
        self,
        instance: ServiceInstance,
    ) -> LastOperationOutcome:
        """Poll the broker for the instance's async operation status."""
        params = self._plan_params(instance)
        op = instance.last_operation
        if op is not None and op.broker_operation:
            params['operation'] = op.broker_operation

        resp = await self._request(
            'GET',
            f'/v2/service_instances/{instance.guid}/last_operation',
            operation='fetch_last_operation',
            params=params,
        )
        outcome = normalize_last_operation(resp)
        self._record('fetch_last_operation', outcome)
        return outcome

    async def fetch_binding_last_operation(
        self,
        binding: ServiceBinding,
        instance: ServiceInstance,
    ) -> LastOperationOutcome:
        """Poll the broker for the binding's async operation status."""
        params = self._plan_params(instance)
        op = binding.last_operation
        if op is not None and op.broker_operation:
            params['operation'] = op.broker_operation

        resp = await self._request(
            'GET',
            f'/v2/service_instances/{instance.guid}'
            f'/service_bindings/{binding.guid}/last_operation',
            operation='fetch_binding_last_operation',
            params=params,
        )
        outcome = normalize_last_operation(resp)
        self._record('fetch_binding_last_operation', outcome)
        return outcome


class BrokerClientProvider:
    """Hands out one cached ``ServiceBrokerClient`` per registered broker."""

    def __init__(
        self,
        settings: CloudControllerSettings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._http_client = http_client
        self._clients: dict[str, ServiceBrokerClient] = {}

    def for_broker(self, broker: ServiceBroker) -> ServiceBrokerClient:
        client = self._clients.get(broker.guid)
        if client is None or client.broker != broker:
            client = ServiceBrokerClient(
                broker=broker,
                http_client=self._http_client,
                timeout_seconds=self._settings.broker_client_timeout_seconds,
                api_version=self._settings.broker_api_version,
                max_retries=self._settings.broker_client_max_retries,
            )
            self._clients[broker.guid] = client
        return client
