"""Tests for plan status queries."""

import pytest

from pcnpay.payments.errors import NotFoundError, TransientError, ValidationError
from pcnpay.payments.plans import PlanMode, PlanRequest


@pytest.mark.asyncio
async def test_subscription_status_after_provisioning(make_provisioner, plan_query):
    provisioner = make_provisioner(PlanMode.DIRECT_SUBSCRIPTION)
    result = await provisioner.provision(
        PlanRequest("a@x.com", "PCN1", "AB12CDE", penalty_amount=90)
    )

    payload = await plan_query.get_subscription_status(result.subscription_id)

    assert payload["id"] == result.subscription_id
    assert payload["status"] == "incomplete"


@pytest.mark.asyncio
async def test_checkout_session_after_provisioning(make_provisioner, plan_query):
    provisioner = make_provisioner(PlanMode.SCHEDULED_CHECKOUT)
    result = await provisioner.provision(
        PlanRequest("a@x.com", "PCN1", "AB12CDE", penalty_amount=90)
    )

    payload = await plan_query.get_checkout_session(result.session_id)

    assert payload["id"] == result.session_id
    assert payload["url"].startswith("https://checkout.stripe.com/")


@pytest.mark.asyncio
async def test_unknown_subscription(plan_query):
    with pytest.raises(NotFoundError):
        await plan_query.get_subscription_status("sub_unknown")


@pytest.mark.asyncio
async def test_unknown_session(plan_query):
    with pytest.raises(NotFoundError):
        await plan_query.get_checkout_session("cs_unknown")


@pytest.mark.asyncio
async def test_transient_failure_propagates(plan_query, gateway):
    gateway.failures["get_subscription_status"] = TransientError("Connection reset")

    with pytest.raises(TransientError):
        await plan_query.get_subscription_status("sub_1")


@pytest.mark.asyncio
async def test_empty_id_rejected_without_remote_call(plan_query, gateway):
    with pytest.raises(ValidationError, match="Session ID is required"):
        await plan_query.get_checkout_session("")

    assert gateway.calls == []
