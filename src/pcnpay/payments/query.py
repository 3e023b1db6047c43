"""Read-only plan status lookups."""

import logging

from pcnpay.payments.errors import ValidationError
from pcnpay.payments.gateway import ProcessorGateway

logger = logging.getLogger(__name__)


class PlanQuery:
    """Subscription and checkout session lookups straight from the processor."""

    def __init__(self, gateway: ProcessorGateway):
        self.gateway = gateway

    async def get_subscription_status(self, subscription_id: str) -> dict:
        """
        Fetch a subscription payload by ID.

        Raises:
            ValidationError: If the ID is empty
            NotFoundError: If the processor does not know the ID
            TransientError: On processor network failure or timeout
        """
        if not subscription_id:
            raise ValidationError("Subscription ID is required")
        logger.debug(f"Querying subscription {subscription_id}")
        return await self.gateway.get_subscription_status(subscription_id)

    async def get_checkout_session(self, session_id: str) -> dict:
        """Fetch a checkout session payload by ID; same errors as above."""
        if not session_id:
            raise ValidationError("Session ID is required")
        logger.debug(f"Querying checkout session {session_id}")
        return await self.gateway.get_checkout_session(session_id)
