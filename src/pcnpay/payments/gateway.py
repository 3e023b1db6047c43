"""Processor gateway: the Stripe objects a payment plan is built from."""

import asyncio
import calendar
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any, Callable, Optional

import stripe

from pcnpay.payments.errors import NotFoundError, ProcessorError, TransientError
from pcnpay.payments.plans import (
    ChargeSchemeRef,
    PlanActivation,
    PlanMode,
    ProcessorCustomerRef,
    RedirectSession,
)

logger = logging.getLogger(__name__)


class ProcessorGateway(ABC):
    """Remote operations the provisioner drives, in processor terms.

    Every method may raise NotFoundError, TransientError or ProcessorError.
    """

    @abstractmethod
    async def get_or_create_customer(
        self,
        processor_customer_id: Optional[str],
        email: str,
        metadata: dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> ProcessorCustomerRef:
        """Retrieve the customer when an ID is given, otherwise create one.

        An unknown ID raises NotFoundError; it never falls back to creating.
        """

    @abstractmethod
    async def create_recurring_charge(
        self,
        customer: ProcessorCustomerRef,
        instalments: tuple[int, ...],
        metadata: dict[str, str],
        mode: PlanMode,
        idempotency_key: Optional[str] = None,
    ) -> ChargeSchemeRef:
        """Create product, monthly price and subscription or schedule."""

    @abstractmethod
    async def create_checkout_redirect(
        self,
        customer: ProcessorCustomerRef,
        charge: ChargeSchemeRef,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> RedirectSession:
        """Create a hosted session that takes the first instalment of a scheduled plan."""

    @abstractmethod
    async def activate_scheduled_plan(self, session_id: str) -> PlanActivation:
        """Point the plan's schedule at the payment method a paid checkout saved.

        Raises ProcessorError while the session is unpaid.
        """

    @abstractmethod
    async def get_subscription_status(self, subscription_id: str) -> dict:
        """Return the processor's subscription payload."""

    @abstractmethod
    async def get_checkout_session(self, session_id: str) -> dict:
        """Return the processor's checkout session payload."""


def add_months(moment: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def plan_cancel_at(start: datetime, instalment_count: int) -> int:
    """Unix time at which a monthly subscription stops after N invoices.

    Falls one day before the (N+1)th billing date.
    """
    return int((add_months(start, instalment_count) - timedelta(days=1)).timestamp())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def plan_day(moment: Optional[datetime] = None) -> datetime:
    """Midnight UTC of the day a plan is provisioned.

    Plan dates sent to Stripe derive from this and are identical for every
    call made on the same UTC day.
    """
    moment = moment or _utcnow()
    return moment.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


def invoice_custom_fields(metadata: dict[str, str]) -> list[dict[str, str]]:
    """PCN reference and vehicle registration printed on every invoice."""
    fields = []
    for name, key in (("PCN Reference", "pcnNumber"), ("Vehicle Registration", "vehicleRegistration")):
        if metadata.get(key):
            fields.append({"name": name, "value": metadata[key]})
    return fields


def _field(obj: Any, name: str) -> Any:
    """Read a field from a Stripe object, a plain dict or None."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _object_id(obj: Any) -> Optional[str]:
    """ID of a possibly-expanded reference."""
    if obj is None or isinstance(obj, str):
        return obj
    return _field(obj, "id")


def _to_payload(obj: Any) -> dict:
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def _keyed(idempotency_key: Optional[str], step: str) -> dict:
    if not idempotency_key:
        return {}
    return {"idempotency_key": f"{idempotency_key}:{step}"}


def translate_stripe_error(e: stripe.StripeError) -> Exception:
    """Map a Stripe SDK exception onto the error taxonomy."""
    message = getattr(e, "user_message", None) or str(e)

    if isinstance(e, (stripe.APIConnectionError, stripe.RateLimitError)):
        return TransientError(message)
    if isinstance(e, stripe.APIError) and (e.http_status or 500) >= 500:
        return TransientError(message)
    if e.code == "resource_missing" or e.http_status == 404:
        return NotFoundError(message)
    return ProcessorError(message, code=e.code)


class StripeGateway(ProcessorGateway):
    """ProcessorGateway backed by the Stripe Python SDK.

    The SDK is synchronous, so each call runs in a worker thread and is
    bounded by ``timeout_seconds``. A timed-out call may still complete on
    Stripe's side; idempotency keys make the caller's retry converge on the
    same objects.
    """

    def __init__(
        self,
        api_key: str,
        api_version: str,
        currency: str = "gbp",
        timeout_seconds: float = 10.0,
    ):
        if not api_key:
            raise ValueError("stripe_secret not configured")
        self._api_key = api_key
        self._api_version = api_version
        self._currency = currency
        self._timeout = timeout_seconds
        stripe.max_network_retries = 0

    async def _call(self, fn: Callable, label: str, /, **params) -> Any:
        params.setdefault("api_key", self._api_key)
        params.setdefault("stripe_version", self._api_version)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(partial(fn, **params)),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"Stripe call timed out after {self._timeout}s: {label}")
            raise TransientError(f"Payment processor timed out ({label})") from e
        except stripe.StripeError as e:
            logger.error(f"Stripe call failed: {label}: {e}")
            raise translate_stripe_error(e) from e

    async def get_or_create_customer(
        self,
        processor_customer_id: Optional[str],
        email: str,
        metadata: dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> ProcessorCustomerRef:
        if processor_customer_id:
            customer = await self._call(
                stripe.Customer.retrieve,
                f"retrieve customer {processor_customer_id}",
                id=processor_customer_id,
            )
            if _field(customer, "deleted"):
                raise NotFoundError(f"processor customer {processor_customer_id} was deleted")
            return ProcessorCustomerRef(id=customer.id, email=_field(customer, "email"))

        params = dict(email=email, metadata=metadata, **_keyed(idempotency_key, "customer"))
        custom_fields = invoice_custom_fields(metadata)
        if custom_fields:
            params["invoice_settings"] = {"custom_fields": custom_fields}
        customer = await self._call(stripe.Customer.create, "create customer", **params)
        logger.info(f"Created Stripe customer {customer.id}")
        return ProcessorCustomerRef(id=customer.id, email=email)

    async def create_recurring_charge(
        self,
        customer: ProcessorCustomerRef,
        instalments: tuple[int, ...],
        metadata: dict[str, str],
        mode: PlanMode,
        idempotency_key: Optional[str] = None,
    ) -> ChargeSchemeRef:
        pcn_number = metadata.get("pcnNumber", "")
        vehicle_registration = metadata.get("vehicleRegistration", "")
        plan_name = f"PCN Payment Plan - {pcn_number}"
        count = len(instalments)
        monthly = instalments[-1]
        start = plan_day()

        product = await self._call(
            stripe.Product.create,
            "create product",
            name=plan_name,
            description=f"Recurring payment plan for PCN {pcn_number}, Vehicle {vehicle_registration}",
            metadata=metadata,
            **_keyed(idempotency_key, "product"),
        )
        logger.info(f"Created Stripe product {product.id}")

        price = await self._call(
            stripe.Price.create,
            "create price",
            unit_amount=monthly,
            currency=self._currency,
            recurring={"interval": "month", "interval_count": 1},
            product=product.id,
            metadata=metadata,
            **_keyed(idempotency_key, "price"),
        )
        logger.info(f"Created Stripe price {price.id} ({monthly} x {count})")

        if mode == PlanMode.DIRECT_SUBSCRIPTION:
            params = dict(
                customer=customer.id,
                items=[{"price": price.id}],
                description=plan_name,
                payment_behavior="default_incomplete",
                payment_settings={"save_default_payment_method": "on_subscription"},
                cancel_at=plan_cancel_at(start, count),
                proration_behavior="none",
                metadata=metadata,
                expand=["latest_invoice.confirmation_secret"],
                **_keyed(idempotency_key, "subscription"),
            )
            # First invoice carries the rounding remainder as a one-off line
            remainder = instalments[0] - monthly
            if remainder:
                params["add_invoice_items"] = [
                    {
                        "price_data": {
                            "currency": self._currency,
                            "product": product.id,
                            "unit_amount": remainder,
                        }
                    }
                ]
            subscription = await self._call(
                stripe.Subscription.create, "create subscription", **params
            )
            logger.info(f"Created Stripe subscription {subscription.id}")
            return ChargeSchemeRef(
                mode=mode,
                product_id=product.id,
                price_id=price.id,
                subscription_id=subscription.id,
                client_secret=_confirmation_secret(subscription),
            )

        # Checkout takes the first instalment; the schedule bills the rest
        # monthly from one period later.
        schedule = await self._call(
            stripe.SubscriptionSchedule.create,
            "create subscription schedule",
            customer=customer.id,
            start_date=int(add_months(start, 1).timestamp()),
            end_behavior="cancel",
            default_settings={
                "collection_method": "charge_automatically",
                "description": plan_name,
            },
            phases=[
                {
                    "items": [{"price": price.id, "quantity": 1}],
                    "iterations": count - 1,
                    "description": plan_name,
                    "metadata": metadata,
                }
            ],
            metadata=metadata,
            **_keyed(idempotency_key, "schedule"),
        )
        logger.info(f"Created Stripe subscription schedule {schedule.id}")
        return ChargeSchemeRef(
            mode=mode,
            product_id=product.id,
            price_id=price.id,
            subscription_id=schedule.id,
            initial_amount=instalments[0],
        )

    async def create_checkout_redirect(
        self,
        customer: ProcessorCustomerRef,
        charge: ChargeSchemeRef,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> RedirectSession:
        pcn_number = metadata.get("pcnNumber", "")
        session_metadata = {**metadata, "subscriptionScheduleId": charge.subscription_id}
        session = await self._call(
            stripe.checkout.Session.create,
            "create checkout session",
            mode="payment",
            customer=customer.id,
            line_items=[
                {
                    "price_data": {
                        "currency": self._currency,
                        "product": charge.product_id,
                        "unit_amount": charge.initial_amount,
                    },
                    "quantity": 1,
                }
            ],
            payment_intent_data={
                "setup_future_usage": "off_session",
                "description": f"PCN Payment Plan - {pcn_number} (payment 1)",
                "metadata": session_metadata,
            },
            customer_update={"name": "auto"},
            invoice_creation={
                "enabled": True,
                "invoice_data": {
                    "description": f"Monthly payment for PCN {pcn_number}",
                    "custom_fields": invoice_custom_fields(metadata),
                    "metadata": session_metadata,
                },
            },
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=session_metadata,
            **_keyed(idempotency_key, "checkout"),
        )
        logger.info(f"Created checkout session {session.id} for schedule {charge.subscription_id}")
        return RedirectSession(id=session.id, url=session.url)

    async def activate_scheduled_plan(self, session_id: str) -> PlanActivation:
        session = await self._call(
            stripe.checkout.Session.retrieve,
            f"retrieve checkout session {session_id}",
            id=session_id,
            expand=["payment_intent"],
        )
        if _field(session, "payment_status") != "paid":
            raise ProcessorError(
                f"Checkout session {session_id} has not been paid", code="checkout_unpaid"
            )

        schedule_id = _field(_field(session, "metadata"), "subscriptionScheduleId")
        if not schedule_id:
            raise NotFoundError(f"Checkout session {session_id} is not linked to a payment plan")

        payment_method_id = _object_id(_field(_field(session, "payment_intent"), "payment_method"))
        if not payment_method_id:
            raise ProcessorError(f"Checkout session {session_id} saved no payment method")

        customer_id = _object_id(_field(session, "customer"))
        await self._call(
            stripe.Customer.modify,
            f"set default payment method for {customer_id}",
            id=customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
        )
        await self._call(
            stripe.SubscriptionSchedule.modify,
            f"activate subscription schedule {schedule_id}",
            id=schedule_id,
            default_settings={
                "collection_method": "charge_automatically",
                "default_payment_method": payment_method_id,
            },
        )
        logger.info(f"Schedule {schedule_id} will charge {payment_method_id}")
        return PlanActivation(
            session_id=session_id,
            schedule_id=schedule_id,
            payment_method_id=payment_method_id,
        )

    async def get_subscription_status(self, subscription_id: str) -> dict:
        subscription = await self._call(
            stripe.Subscription.retrieve,
            f"retrieve subscription {subscription_id}",
            id=subscription_id,
        )
        return _to_payload(subscription)

    async def get_checkout_session(self, session_id: str) -> dict:
        session = await self._call(
            stripe.checkout.Session.retrieve,
            f"retrieve checkout session {session_id}",
            id=session_id,
        )
        return _to_payload(session)


def _confirmation_secret(subscription: Any) -> Optional[str]:
    """Client secret for confirming the first invoice of a subscription.

    Newer API versions expose it as ``latest_invoice.confirmation_secret``,
    older ones through the invoice's payment intent.
    """
    invoice = _field(subscription, "latest_invoice")
    secret = _field(_field(invoice, "confirmation_secret"), "client_secret")
    if secret:
        return secret
    return _field(_field(invoice, "payment_intent"), "client_secret")
