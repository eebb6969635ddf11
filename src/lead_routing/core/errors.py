"""Exceptions raised by the routing engine."""

from __future__ import annotations


class RoutingError(Exception):
    """Base class for lead routing errors."""


class NotFound(RoutingError):
    """A lead, agent, or assignment does not exist."""


class InvalidTransition(RoutingError):
    """Raised when an illegal lead or assignment state transition is attempted.

    Safe to retry after re-reading state: the target is already resolved.
    """


class ConcurrentModification(RoutingError):
    """A versioned write lost to a concurrent writer. Never retried automatically."""


class ExpiredOffer(RoutingError):
    """A response arrived after the offer's expiry; the offer is now expired."""


class NotificationDeliveryFailure(RoutingError):
    """The notification gateway could not deliver an event."""


class DirectoryUnavailable(RoutingError):
    """The agent directory could not be reached or returned an error."""


class StorageError(RoutingError):
    """Storage kept failing after the bounded number of retries."""


class CapacityExceeded(RoutingError):
    """The agent already holds as many open leads as its tier allows."""
