"""Pytest fixtures: in-process registry and processor fakes."""

import asyncio
import itertools
from decimal import Decimal
from typing import Optional

import pytest

from pcnpay.payments.errors import NotFoundError, ProcessorError
from pcnpay.payments.gateway import ProcessorGateway
from pcnpay.payments.plans import (
    ChargeSchemeRef,
    PlanActivation,
    PlanMode,
    ProcessorCustomerRef,
    RedirectSession,
)
from pcnpay.payments.provisioner import PaymentPlanProvisioner, ProvisionerSettings
from pcnpay.payments.query import PlanQuery
from pcnpay.payments.registry import InMemoryCustomerRegistry

BASE_URL = "https://pcn.example.org"

_MISSING = object()


class FakeGateway(ProcessorGateway):
    """Records calls and replays results for repeated idempotency keys,
    the way Stripe does: a key reused with different parameters is rejected.

    Set ``failures[method_name]`` to an exception to make the next call to
    that method raise it (once).
    """

    def __init__(self):
        self._ids = itertools.count(1)
        self.calls: list[tuple[str, dict]] = []
        self.failures: dict[str, Exception] = {}
        self.customers: dict[str, str] = {}
        self.created_customers: list[str] = []
        self.charge_schemes: list[ChargeSchemeRef] = []
        self.subscriptions: dict[str, dict] = {}
        self.sessions: dict[str, dict] = {}
        self.activations: list[PlanActivation] = []
        self._replay: dict[tuple[str, str], tuple[dict, object]] = {}

    async def _enter(self, method: str, **kwargs) -> None:
        self.calls.append((method, kwargs))
        await asyncio.sleep(0)
        error = self.failures.pop(method, None)
        if error is not None:
            raise error

    def _replayed(self, method: str, idempotency_key: Optional[str], params: dict):
        if not idempotency_key or (method, idempotency_key) not in self._replay:
            return _MISSING
        first_params, result = self._replay[(method, idempotency_key)]
        if first_params != params:
            raise ProcessorError(
                "Keys for idempotent requests can only be used with the same "
                "parameters they were first used with.",
                code="idempotency_error",
            )
        return result

    def _remember(self, method: str, idempotency_key: Optional[str], params: dict, result):
        if idempotency_key:
            self._replay[(method, idempotency_key)] = (params, result)
        return result

    def calls_to(self, method: str) -> list[dict]:
        return [kwargs for name, kwargs in self.calls if name == method]

    async def get_or_create_customer(
        self,
        processor_customer_id: Optional[str],
        email: str,
        metadata: dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> ProcessorCustomerRef:
        await self._enter(
            "get_or_create_customer",
            processor_customer_id=processor_customer_id,
            email=email,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        if processor_customer_id:
            if processor_customer_id not in self.customers:
                raise NotFoundError(f"No such customer: '{processor_customer_id}'")
            return ProcessorCustomerRef(id=processor_customer_id, email=email)

        params = {"email": email, "metadata": metadata}
        replayed = self._replayed("get_or_create_customer", idempotency_key, params)
        if replayed is not _MISSING:
            return replayed

        ref = ProcessorCustomerRef(id=f"cus_{next(self._ids)}", email=email)
        self.customers[ref.id] = email
        self.created_customers.append(ref.id)
        return self._remember("get_or_create_customer", idempotency_key, params, ref)

    async def create_recurring_charge(
        self,
        customer: ProcessorCustomerRef,
        instalments: tuple[int, ...],
        metadata: dict[str, str],
        mode: PlanMode,
        idempotency_key: Optional[str] = None,
    ) -> ChargeSchemeRef:
        await self._enter(
            "create_recurring_charge",
            customer=customer,
            instalments=instalments,
            metadata=metadata,
            mode=mode,
            idempotency_key=idempotency_key,
        )
        params = {
            "customer": customer.id,
            "instalments": instalments,
            "metadata": metadata,
            "mode": mode,
        }
        replayed = self._replayed("create_recurring_charge", idempotency_key, params)
        if replayed is not _MISSING:
            return replayed

        n = next(self._ids)
        if mode == PlanMode.DIRECT_SUBSCRIPTION:
            charge = ChargeSchemeRef(
                mode=mode,
                product_id=f"prod_{n}",
                price_id=f"price_{n}",
                subscription_id=f"sub_{n}",
                client_secret=f"pi_{n}_secret_{n}",
            )
        else:
            charge = ChargeSchemeRef(
                mode=mode,
                product_id=f"prod_{n}",
                price_id=f"price_{n}",
                subscription_id=f"sub_sched_{n}",
                initial_amount=instalments[0],
            )
        self.charge_schemes.append(charge)
        self.subscriptions[charge.subscription_id] = {
            "id": charge.subscription_id,
            "customer": customer.id,
            "status": "incomplete" if mode == PlanMode.DIRECT_SUBSCRIPTION else "not_started",
            "metadata": metadata,
        }
        return self._remember("create_recurring_charge", idempotency_key, params, charge)

    async def create_checkout_redirect(
        self,
        customer: ProcessorCustomerRef,
        charge: ChargeSchemeRef,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> RedirectSession:
        await self._enter(
            "create_checkout_redirect",
            customer=customer,
            charge=charge,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        params = {
            "customer": customer.id,
            "charge": charge,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        replayed = self._replayed("create_checkout_redirect", idempotency_key, params)
        if replayed is not _MISSING:
            return replayed

        session_id = f"cs_test_{next(self._ids)}"
        session = RedirectSession(
            id=session_id, url=f"https://checkout.stripe.com/c/pay/{session_id}"
        )
        self.sessions[session_id] = {
            "id": session_id,
            "url": session.url,
            "customer": customer.id,
            "status": "open",
            "payment_status": "unpaid",
            "amount_total": charge.initial_amount,
            "metadata": {**metadata, "subscriptionScheduleId": charge.subscription_id},
        }
        return self._remember("create_checkout_redirect", idempotency_key, params, session)

    def pay(self, session_id: str, payment_method_id: str = "pm_card_visa") -> None:
        """Simulate the customer completing the hosted checkout page."""
        self.sessions[session_id].update(
            status="complete", payment_status="paid", url=None, payment_method=payment_method_id
        )

    async def activate_scheduled_plan(self, session_id: str) -> PlanActivation:
        await self._enter("activate_scheduled_plan", session_id=session_id)
        session = self.sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"No such checkout.session: '{session_id}'")
        if session["payment_status"] != "paid":
            raise ProcessorError(
                f"Checkout session {session_id} has not been paid", code="checkout_unpaid"
            )
        schedule_id = session["metadata"]["subscriptionScheduleId"]
        self.subscriptions[schedule_id]["status"] = "active"
        self.subscriptions[schedule_id]["default_payment_method"] = session["payment_method"]
        activation = PlanActivation(
            session_id=session_id,
            schedule_id=schedule_id,
            payment_method_id=session["payment_method"],
        )
        self.activations.append(activation)
        return activation

    async def get_subscription_status(self, subscription_id: str) -> dict:
        await self._enter("get_subscription_status", subscription_id=subscription_id)
        if subscription_id not in self.subscriptions:
            raise NotFoundError(f"No such subscription: '{subscription_id}'")
        return self.subscriptions[subscription_id]

    async def get_checkout_session(self, session_id: str) -> dict:
        await self._enter("get_checkout_session", session_id=session_id)
        if session_id not in self.sessions:
            raise NotFoundError(f"No such checkout.session: '{session_id}'")
        return self.sessions[session_id]


@pytest.fixture
def registry() -> InMemoryCustomerRegistry:
    return InMemoryCustomerRegistry()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def make_provisioner(registry, gateway):
    """Build a provisioner over the shared fakes in the given mode."""

    def _make(mode: PlanMode = PlanMode.SCHEDULED_CHECKOUT) -> PaymentPlanProvisioner:
        settings = ProvisionerSettings(
            base_url=BASE_URL,
            mode=mode,
            default_penalty_amount=Decimal("90.00"),
        )
        return PaymentPlanProvisioner(registry, gateway, settings)

    return _make


@pytest.fixture
def plan_query(gateway) -> PlanQuery:
    return PlanQuery(gateway)
