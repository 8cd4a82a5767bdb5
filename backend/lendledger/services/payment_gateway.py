"""Payment gateway collaborator.

The lending core only needs ``charge(method, amount, reference)`` answering
success or failure; the call is bounded by ``gateway_timeout_seconds`` and a
timeout is recorded as a failed transaction.

Classes:
- PaymentGateway: Protocol the core calls
- GatewayResult: outcome of one charge
- InternalGateway: settles every charge immediately (book transfers, tests)
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from lendledger.models.ledger import PaymentMethod
from lendledger.services.money import Money

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Gateway could not be reached or answered with garbage."""


@dataclass(frozen=True)
class GatewayResult:
    ok: bool
    reference: str | None = None
    message: str | None = None


@runtime_checkable
class PaymentGateway(Protocol):
    name: str

    async def charge(
        self, method: PaymentMethod | None, amount: Money, reference: str
    ) -> GatewayResult:
        """Collect *amount*; *reference* is the ledger reference, for deduplication."""
        ...


class InternalGateway:
    """Treats every charge as an internal book transfer that always succeeds."""

    name = "internal"

    async def charge(
        self, method: PaymentMethod | None, amount: Money, reference: str
    ) -> GatewayResult:
        gateway_ref = f"INT-{uuid.uuid4().hex[:16].upper()}"
        logger.debug("Internal charge %s for %s → %s", reference, amount, gateway_ref)
        return GatewayResult(ok=True, reference=gateway_ref)

    def __repr__(self):
        return "InternalGateway()"
