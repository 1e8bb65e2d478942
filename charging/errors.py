"""
Error Taxonomy

Typed failures raised by the charging core. Each one maps to a single
recovery rule: abort the price cycle, skip a user, skip a dispatch, or
mark the account as disconnected.
"""


class SmartChargeError(Exception):
    """Base class for all charging-core failures."""


class PriceFeedError(SmartChargeError):
    """The day-ahead price refresh could not produce a new series."""


class FeedUnavailable(PriceFeedError):
    """The upstream price service could not be reached or refused the request."""


class MalformedFeed(PriceFeedError):
    """Upstream day-ahead price data could not be turned into a series.

    The current refresh cycle is aborted and the previous series is kept.
    """


class InsufficientData(SmartChargeError):
    """The price series is too short for the requested charging duration."""


class MissingPriceData(SmartChargeError):
    """No price is available for the hour a decision is being made in."""


class CredentialExchangeFailed(SmartChargeError):
    """The refresh credential was rejected or the exchange did not complete."""


class DispatchError(SmartChargeError):
    """A remote vehicle API call (command or data fetch) failed."""


class DispatchTimeout(DispatchError):
    """A remote vehicle API call did not complete within the timeout."""


class VehicleNotFound(SmartChargeError):
    """The account has no vehicles attached to it."""
