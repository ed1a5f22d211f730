"""
Protocol definition for notification backends.

Defines the common interface that all notifiers must implement.
"""

from typing import Protocol, runtime_checkable

from feed_notifier.models import DeliveryRequest, Receipt


class DeliveryError(Exception):
    """Raised when a notification backend rejects or fails a send."""


@runtime_checkable
class Notifier(Protocol):
    """
    Protocol defining the interface for notification backends.

    All notifiers (Pushover, Telegram) must implement these methods
    to be usable by the delivery workers.
    """

    name: str

    async def send(self, request: DeliveryRequest) -> Receipt:
        """
        Send a notification.

        Parameters
        ----------
        request : DeliveryRequest
            The notification to send.

        Returns
        -------
        Receipt
            Provider delivery id and quota.

        Raises
        ------
        DeliveryError
            If the notification could not be sent.
        """
        ...

    async def close(self) -> None:
        """Close the notifier and release any resources."""
        ...
