"""Capabilities the engine consumes from its collaborators.

The contact store, email transport and webhook client live outside the
engine; anything with these methods can be plugged in.
"""

from typing import Any, Dict, Mapping, Protocol, runtime_checkable

from errors import PermanentError, TransientError
from models import ContactSnapshot


class ContactNotFoundError(PermanentError):
    """The contact no longer exists (or was deleted)."""


class TransportError(TransientError):
    """The email transport could not accept the message."""


@runtime_checkable
class ContactStore(Protocol):
    def get_contact(self, contact_id: str) -> ContactSnapshot:
        """Return a fresh snapshot. Raises ContactNotFoundError if the contact is gone."""
        ...

    def add_tag(self, contact_id: str, tag_id: str) -> None: ...

    def remove_tag(self, contact_id: str, tag_id: str) -> None: ...

    def update_field(self, contact_id: str, field_name: str, value: Any) -> None: ...


@runtime_checkable
class EmailTransport(Protocol):
    def send(
        self,
        to: str,
        template_id: str,
        idempotency_key: str,
        timeout: float,
        subject: str | None = None,
        from_name: str | None = None,
        context: Dict[str, Any] | None = None,
    ) -> None:
        """Send one templated email, giving up after `timeout` seconds.

        Raises TransportError on failure; running out of time raises
        TransportError or TimeoutError.
        """
        ...


@runtime_checkable
class WebhookClient(Protocol):
    def post(
        self,
        url: str,
        body: bytes,
        headers: Mapping[str, str],
        timeout: float,
        method: str = "POST",
    ) -> int:
        """Deliver `body` and return the HTTP status code.

        Network errors and timeouts are raised as TransientError.
        """
        ...
