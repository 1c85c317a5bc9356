"""Orphan mitigation for broker calls with an unknown outcome.

When an unbind or provision request reached the broker but the response
does not say whether it took effect (5xx, malformed body), the broker may
now hold a resource the cloud controller does not track. The mitigator
enqueues a delete for that resource and keeps retrying it with
exponential backoff until the broker confirms it is gone or the attempts
run out. Exhaustion is logged for out-of-band reconciliation; nothing is
ever raised into the request that triggered mitigation.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, ClassVar

from ..brokers.errors import BrokerClientError
from ..brokers.outcomes import AsyncAccepted, Gone, SyncSuccess
from ..jobs.scheduler import JobHandler
from ..models import ServiceBinding, ServiceInstance
from ..observability.metrics import ORPHAN_MITIGATIONS_TOTAL
from ..protocols import BrokerClientFactory, JobScheduler
from ..settings import CloudControllerSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class OrphanMitigationJob:
    """Durable retry of a broker-side cleanup.

    Carries snapshots of the instance (and binding, for unbind) because
    the local rows may change or disappear before the job runs.
    """

    name: ClassVar[str] = 'orphan-mitigation'

    action: str
    instance: ServiceInstance
    binding: ServiceBinding | None = None
    attempt: int = 1

    @property
    def key(self) -> str:
        target = self.binding.guid if self.binding is not None else self.instance.guid
        return f'{self.name}:{self.action}:{target}'


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrphanMitigator:
    """Schedules and runs orphan-mitigation jobs."""

    def __init__(
        self,
        *,
        brokers: BrokerClientFactory,
        scheduler: JobScheduler,
        settings: CloudControllerSettings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._brokers = brokers
        self._scheduler = scheduler
        self._settings = settings
        self._clock = clock

    def handlers(self) -> dict[type, JobHandler]:
        return {OrphanMitigationJob: self.perform}

    async def cleanup_failed_unbind(
        self, binding: ServiceBinding, instance: ServiceInstance,
    ) -> None:
        await self._enqueue(
            OrphanMitigationJob(
                action='unbind',
                instance=copy.deepcopy(instance),
                binding=copy.deepcopy(binding),
            ),
            delay=0.0,
        )

    async def cleanup_failed_provision(self, instance: ServiceInstance) -> None:
        await self._enqueue(
            OrphanMitigationJob(action='deprovision', instance=copy.deepcopy(instance)),
            delay=0.0,
        )

    async def perform(self, job: OrphanMitigationJob) -> None:
        client = self._brokers.for_broker(job.instance.broker)
        try:
            if job.action == 'unbind':
                outcome = await client.unbind(job.binding, job.instance)
            else:
                outcome = await client.deprovision(job.instance)
        except BrokerClientError as exc:
            logger.warning('Orphan mitigation %s failed: %s', job.key, exc)
            await self._retry(job)
            return

        if isinstance(outcome, (SyncSuccess, Gone, AsyncAccepted)):
            ORPHAN_MITIGATIONS_TOTAL.labels(action=job.action, result='cleaned').inc()
            logger.info('Orphan mitigation %s completed', job.key)
            return

        logger.warning(
            'Orphan mitigation %s got %d from broker: %s',
            job.key,
            outcome.status_code,
            outcome.description,
        )
        await self._retry(job)

    async def _retry(self, job: OrphanMitigationJob) -> None:
        if job.attempt >= self._settings.orphan_mitigation_max_attempts:
            ORPHAN_MITIGATIONS_TOTAL.labels(action=job.action, result='exhausted').inc()
            logger.warning(
                'Orphan mitigation %s gave up after %d attempts; '
                'broker resource may need manual cleanup',
                job.key,
                job.attempt,
                extra={'service_instance_guid': job.instance.guid},
            )
            return

        ORPHAN_MITIGATIONS_TOTAL.labels(action=job.action, result='retry').inc()
        delay = self._settings.orphan_mitigation_base_delay_seconds * (2 ** (job.attempt - 1))
        await self._enqueue(replace(job, attempt=job.attempt + 1), delay=delay)

    async def _enqueue(self, job: OrphanMitigationJob, *, delay: float) -> None:
        await self._scheduler.enqueue(
            job, run_at=self._clock() + timedelta(seconds=delay),
        )
        logger.info(
            'Orphan mitigation %s scheduled (attempt %d)',
            job.key,
            job.attempt,
            extra={'service_instance_guid': job.instance.guid},
        )
