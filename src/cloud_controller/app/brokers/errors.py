"""Broker client exception hierarchy."""

from __future__ import annotations

from .outcomes import BrokerError


class BrokerClientError(Exception):
    """Base exception for broker communication failures."""

    name = 'ServiceBrokerError'

    def __init__(self, message: str, *, url: str = '') -> None:
        self.message = message
        self.url = url
        super().__init__(message)


class ServiceBrokerBadResponse(BrokerClientError):
    """Broker returned an error status or a response we cannot use."""

    name = 'ServiceBrokerBadResponse'

    def __init__(self, outcome: BrokerError, *, method: str = 'DELETE', url: str = '') -> None:
        self.outcome = outcome
        self.method = method
        self.status_code = outcome.status_code
        detail = outcome.description or outcome.body
        super().__init__(
            f'The service broker returned an invalid response for the request '
            f'to {url}. Status Code: {outcome.status_code}, Body: {detail}',
            url=url,
        )

    @property
    def ambiguous(self) -> bool:
        return self.outcome.ambiguous


class BrokerTimeout(BrokerClientError):
    """No response within the configured timeout; remote state unknown."""

    name = 'ServiceBrokerApiTimeout'

    def __init__(self, url: str, *, method: str = '', message: str | None = None) -> None:
        self.method = method
        super().__init__(message or f'The request to the service broker timed out: {url}', url=url)


class BrokerUnreachable(BrokerClientError):
    """Connection could not be established; the broker never saw the request."""

    name = 'ServiceBrokerApiUnreachable'

    def __init__(self, url: str, *, method: str = '') -> None:
        self.method = method
        super().__init__(f'The service broker could not be reached: {url}', url=url)


class BrokerConnectionLost(BrokerTimeout):
    """The connection broke after the request was sent; remote state unknown.

    Handled exactly like a timeout: the broker may have acted on it.
    """

    def __init__(self, url: str, *, method: str = '', reason: str = '') -> None:
        self.reason = reason
        super().__init__(
            url,
            method=method,
            message=f'The connection to the service broker was lost: {url}',
        )
