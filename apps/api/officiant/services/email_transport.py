"""Outbound message shape shared by the delivery transports."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from officiant.db.enums import EmailTransport


@dataclass(frozen=True)
class OutboundEmail:
    to: str
    subject: str
    html: str
    text: str
    cc: tuple[str, ...] = ()
    bcc: tuple[str, ...] = ()
    idempotency_key: str | None = None

    @property
    def all_recipients(self) -> list[str]:
        return [self.to, *self.cc, *self.bcc]


class EmailTransportBackend(Protocol):
    name: EmailTransport

    @property
    def configured(self) -> bool: ...

    async def send(self, message: OutboundEmail) -> str | None:
        """
        Deliver one message and return the provider message id, if any.

        Raises:
            DeliveryConfigError: missing configuration or permanent rejection
            DeliveryTransientError: network, timeout or server-side failure
        """
        ...


def parse_address_list(value: str | list[str] | tuple[str, ...] | None) -> tuple[str, ...]:
    """Split a comma-separated address list, keeping only entries that contain '@'."""
    if not value:
        return ()
    items = value.split(",") if isinstance(value, str) else list(value)
    addresses: list[str] = []
    for item in items:
        address = str(item).strip()
        if "@" in address and address not in addresses:
            addresses.append(address)
    return tuple(addresses)
