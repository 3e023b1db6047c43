"""PCN payment plan provisioning.

Resolves local customer identities, provisions the matching Stripe customer
and recurring charge, and answers plan status queries.
"""

from pcnpay.payments.gateway import ProcessorGateway, StripeGateway
from pcnpay.payments.plans import PlanMode, PlanRequest
from pcnpay.payments.provisioner import PaymentPlanProvisioner, ProvisionerSettings
from pcnpay.payments.query import PlanQuery
from pcnpay.payments.registry import (
    CustomerRegistry,
    InMemoryCustomerRegistry,
    PostgresCustomerRegistry,
)

__all__ = [
    "CustomerRegistry",
    "InMemoryCustomerRegistry",
    "PaymentPlanProvisioner",
    "PlanMode",
    "PlanQuery",
    "PlanRequest",
    "PostgresCustomerRegistry",
    "ProcessorGateway",
    "ProvisionerSettings",
    "StripeGateway",
]
