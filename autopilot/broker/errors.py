from __future__ import annotations


class BrokerAPIError(RuntimeError):
    """Non-retryable broker API error."""


class RetryableBrokerAPIError(BrokerAPIError):
    """Retryable API/network error."""


class BrokerAuthError(BrokerAPIError):
    """Rejected credentials or account id."""
