"""Payment plan provisioning.

Drives a single request through

    START -> IDENTITY_RESOLVED -> PROCESSOR_CUSTOMER_READY
          -> CHARGE_SCHEME_CREATED -> PLAN_FINALIZED

and into FAILED from any non-terminal state. Processor IDs are written back
to the registry as soon as the processor confirms them, so a resubmitted
request finds the processor customer it created before and retrieves it
instead of creating a second one.

The charge-scheme step is keyed by ``(customer id, request nonce)``. A
resubmission carrying the same nonce converges on the objects Stripe already
created; a request without a nonce gets a random one and is not protected.

In scheduled-checkout mode the hosted checkout takes the first instalment and
``complete_checkout`` then hands its saved payment method to the schedule
that bills the remaining two.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from pcnpay.payments.errors import (
    ConflictError,
    PaymentPlanError,
    ProcessorError,
    ValidationError,
)
from pcnpay.payments.gateway import ProcessorGateway
from pcnpay.payments.plans import (
    INSTALMENT_COUNT,
    ChargeSchemeRef,
    Customer,
    DirectSubscriptionResult,
    Invalid,
    PlanActivation,
    PlanMode,
    PlanRequest,
    PlanResult,
    ProcessorCustomerRef,
    ProvisioningState,
    ScheduledCheckoutResult,
    ValidatedPlanRequest,
    format_minor,
    validate_plan_request,
)
from pcnpay.payments.registry import CustomerRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisionerSettings:
    """Deployment inputs for the provisioner."""

    base_url: str
    mode: PlanMode = PlanMode.SCHEDULED_CHECKOUT
    default_penalty_amount: Decimal = Decimal("90.00")

    @property
    def success_url(self) -> str:
        # Stripe substitutes the session id; the route activates the plan
        return f"{self.base_url}/checkout/{{CHECKOUT_SESSION_ID}}/complete"

    @property
    def cancel_url(self) -> str:
        return f"{self.base_url}/"

    def redirect_url(self, session_id: str) -> str:
        return f"{self.base_url}/checkout/{session_id}"

    def payment_success_url(self, session_id: str) -> str:
        return f"{self.base_url}/payment-success?session_id={session_id}"


class _Run:
    """Per-request state tracker."""

    def __init__(self, email: str):
        self.email = email
        self.state = ProvisioningState.START

    def advance(self, state: ProvisioningState, detail: str = "") -> None:
        logger.info(f"Provisioning {self.email}: {self.state.value} -> {state.value} {detail}".rstrip())
        self.state = state

    def fail(self, error: PaymentPlanError) -> None:
        error.failed_state = self.state.value
        logger.warning(
            f"Provisioning {self.email} failed in {self.state.value}: "
            f"{type(error).__name__}: {error.message}"
        )
        self.state = ProvisioningState.FAILED


class PaymentPlanProvisioner:
    """Sets up a three-instalment plan for one PCN debtor per call."""

    def __init__(
        self,
        registry: CustomerRegistry,
        gateway: ProcessorGateway,
        settings: ProvisionerSettings,
    ):
        self.registry = registry
        self.gateway = gateway
        self.settings = settings

    async def provision(self, request: PlanRequest) -> PlanResult:
        """
        Provision a payment plan.

        Args:
            request: Raw client input

        Returns:
            DirectSubscriptionResult or ScheduledCheckoutResult, by mode

        Raises:
            ValidationError: On invalid input, before any remote call
            InvariantViolation: If registry and processor disagree on identity
            NotFoundError, TransientError, ProcessorError: From the processor
        """
        result = validate_plan_request(request, self.settings.default_penalty_amount)
        if isinstance(result, Invalid):
            error = result.to_error()
            logger.info(f"Rejected plan request: {error.message}")
            raise error

        plan = result.request
        run = _Run(plan.email)
        charge: Optional[ChargeSchemeRef] = None
        try:
            customer = await self._resolve_identity(plan)
            run.advance(ProvisioningState.IDENTITY_RESOLVED, f"customer={customer.id}")

            processor_customer = await self._ensure_processor_customer(customer)
            run.advance(
                ProvisioningState.PROCESSOR_CUSTOMER_READY,
                f"processor_customer={processor_customer.id}",
            )

            nonce = plan.request_nonce or uuid.uuid4().hex
            charge = await self.gateway.create_recurring_charge(
                processor_customer,
                plan.instalments,
                self._metadata(customer, plan),
                self.settings.mode,
                idempotency_key=f"pcn-plan:{customer.id}:{nonce}",
            )
            run.advance(ProvisioningState.CHARGE_SCHEME_CREATED, f"subscription={charge.subscription_id}")

            outcome = await self._finalize(customer, processor_customer, charge, plan, nonce)
            run.advance(ProvisioningState.PLAN_FINALIZED)
            return outcome

        except PaymentPlanError as e:
            if charge is not None:
                logger.error(
                    f"Charge scheme for {plan.email} left without a completed plan: "
                    f"product={charge.product_id} price={charge.price_id} "
                    f"subscription={charge.subscription_id}"
                )
            run.fail(e)
            raise

    async def _resolve_identity(self, plan: ValidatedPlanRequest) -> Customer:
        customer = await self.registry.find_by_email(plan.email)
        if customer is not None:
            return customer

        try:
            return await self.registry.create(
                plan.email, plan.pcn_number, plan.vehicle_registration
            )
        except ConflictError:
            # Lost a race against a concurrent request for the same email
            customer = await self.registry.find_by_email(plan.email)
            if customer is None:
                raise
            logger.info(f"Reusing customer {customer.id} created concurrently")
            return customer

    async def _ensure_processor_customer(self, customer: Customer) -> ProcessorCustomerRef:
        if customer.processor_customer_id:
            return await self.gateway.get_or_create_customer(
                customer.processor_customer_id, customer.email, {}
            )

        ref = await self.gateway.get_or_create_customer(
            None,
            customer.email,
            {
                "pcnNumber": customer.pcn_number,
                "vehicleRegistration": customer.vehicle_registration,
                "customerId": customer.id,
            },
            idempotency_key=f"pcn-customer:{customer.id}",
        )
        # Persist before the next remote call
        await self.registry.attach_processor_ids(customer.id, ref.id)
        return ref

    def _metadata(self, customer: Customer, plan: ValidatedPlanRequest) -> dict[str, str]:
        metadata = {
            "pcnNumber": plan.pcn_number,
            "vehicleRegistration": plan.vehicle_registration,
            "totalPayments": str(INSTALMENT_COUNT),
            "customerId": customer.id,
            "paymentReference": plan.pcn_number,
        }
        if self.settings.mode == PlanMode.SCHEDULED_CHECKOUT:
            metadata["penaltyAmount"] = format_minor(plan.total_minor)
            metadata["monthlyAmount"] = format_minor(plan.instalments[-1])
        return metadata

    async def _finalize(
        self,
        customer: Customer,
        processor_customer: ProcessorCustomerRef,
        charge: ChargeSchemeRef,
        plan: ValidatedPlanRequest,
        nonce: str,
    ) -> PlanResult:
        await self.registry.attach_processor_ids(
            customer.id, processor_customer.id, charge.subscription_id
        )

        if charge.mode == PlanMode.DIRECT_SUBSCRIPTION:
            if not charge.client_secret:
                raise ProcessorError(
                    f"Processor returned no confirmation secret for {charge.subscription_id}"
                )
            return DirectSubscriptionResult(
                client_secret=charge.client_secret,
                subscription_id=charge.subscription_id,
                customer_id=customer.id,
            )

        session = await self.gateway.create_checkout_redirect(
            processor_customer,
            charge,
            self.settings.success_url,
            self.settings.cancel_url,
            self._metadata(customer, plan),
            idempotency_key=f"pcn-plan:{customer.id}:{nonce}",
        )
        return ScheduledCheckoutResult(
            session_id=session.id,
            redirect_url=self.settings.redirect_url(session.id),
            customer_id=customer.id,
            schedule_id=charge.subscription_id,
        )

    async def complete_checkout(self, session_id: str) -> PlanActivation:
        """
        Activate a scheduled plan once its checkout session has been paid.

        Stripe sends the browser here after checkout. The payment method saved
        with the first instalment becomes the one the schedule charges for the
        remaining instalments. Safe to call more than once.

        Raises:
            ValidationError: If the session ID is empty
            NotFoundError: If the session is unknown or carries no plan
            ProcessorError: If the session has not been paid
        """
        if not session_id:
            raise ValidationError("Session ID is required")

        try:
            activation = await self.gateway.activate_scheduled_plan(session_id)
        except PaymentPlanError as e:
            logger.warning(
                f"Checkout {session_id} not activated: {type(e).__name__}: {e.message}"
            )
            raise

        logger.info(
            f"Activated schedule {activation.schedule_id} from checkout {session_id}"
        )
        return activation
