"""Plan request/result structures, input validation and instalment split."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional, Union

from pcnpay.payments.errors import ValidationError

INSTALMENT_COUNT = 3


class PlanMode(str, Enum):
    """Shape of the recurring charge created with the processor."""

    DIRECT_SUBSCRIPTION = "direct_subscription"  # client confirms with a secret
    SCHEDULED_CHECKOUT = "scheduled_checkout"  # hosted checkout redirect


class ProvisioningState(str, Enum):
    """Provisioning state machine states."""

    START = "start"
    IDENTITY_RESOLVED = "identity_resolved"
    PROCESSOR_CUSTOMER_READY = "processor_customer_ready"
    CHARGE_SCHEME_CREATED = "charge_scheme_created"
    PLAN_FINALIZED = "plan_finalized"
    FAILED = "failed"


@dataclass
class Customer:
    """Local billing identity, keyed by exact email."""

    id: str
    email: str
    pcn_number: str
    vehicle_registration: str
    created_at: datetime
    processor_customer_id: Optional[str] = None
    processor_subscription_id: Optional[str] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class PlanRequest:
    """Raw provisioning input as received from the client."""

    email: Any
    pcn_number: Any
    vehicle_registration: Any
    penalty_amount: Any = None
    request_nonce: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping, request_nonce: Optional[str] = None) -> "PlanRequest":
        """Build from a camelCase JSON body.

        An explicit ``request_nonce`` (e.g. from an Idempotency-Key header)
        takes precedence over a ``requestId`` body field.
        """
        return cls(
            email=payload.get("email"),
            pcn_number=payload.get("pcnNumber"),
            vehicle_registration=payload.get("vehicleRegistration"),
            penalty_amount=payload.get("penaltyAmount"),
            request_nonce=request_nonce or payload.get("requestId"),
        )


@dataclass(frozen=True)
class ValidatedPlanRequest:
    """Provisioning input that passed validation."""

    email: str
    pcn_number: str
    vehicle_registration: str
    penalty_amount: Decimal
    instalments: tuple[int, ...]
    request_nonce: Optional[str] = None

    @property
    def total_minor(self) -> int:
        return sum(self.instalments)


@dataclass(frozen=True)
class Valid:
    request: ValidatedPlanRequest


@dataclass(frozen=True)
class Invalid:
    errors: list[str]

    def to_error(self) -> ValidationError:
        return ValidationError("; ".join(self.errors))


ValidationResult = Union[Valid, Invalid]


@dataclass(frozen=True)
class ProcessorCustomerRef:
    """Processor-side customer handle."""

    id: str
    email: Optional[str] = None


@dataclass(frozen=True)
class ChargeSchemeRef:
    """Processor objects making up one recurring plan."""

    mode: PlanMode
    product_id: str
    price_id: str
    subscription_id: str  # subscription (mode A) or subscription schedule (mode B)
    client_secret: Optional[str] = None  # mode A only
    initial_amount: int = 0  # mode B: first instalment, collected by checkout


@dataclass(frozen=True)
class RedirectSession:
    """Hosted checkout session wrapping a scheduled plan."""

    id: str
    url: str


@dataclass(frozen=True)
class PlanActivation:
    """A paid checkout linked to the schedule that collects the rest."""

    session_id: str
    schedule_id: str
    payment_method_id: str


@dataclass(frozen=True)
class DirectSubscriptionResult:
    """Mode A outcome: the client confirms the first payment itself."""

    client_secret: str
    subscription_id: str
    customer_id: str

    def to_response(self) -> dict:
        return {
            "clientSecret": self.client_secret,
            "subscriptionId": self.subscription_id,
            "customerId": self.customer_id,
        }


@dataclass(frozen=True)
class ScheduledCheckoutResult:
    """Mode B outcome: the client is sent to a hosted checkout page."""

    session_id: str
    redirect_url: str
    customer_id: str
    schedule_id: str = field(default="", compare=False)

    def to_response(self) -> dict:
        return {
            "sessionId": self.session_id,
            "redirectUrl": self.redirect_url,
            "customerId": self.customer_id,
        }


PlanResult = Union[DirectSubscriptionResult, ScheduledCheckoutResult]


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount to minor units, rounding half up."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def split_instalments(amount: Decimal, count: int = INSTALMENT_COUNT) -> tuple[int, ...]:
    """
    Split an amount into equal instalments in minor units.

    The rounding remainder is added to the first instalment so the
    instalments always sum to ``to_minor_units(amount)``.

    >>> split_instalments(Decimal("91.00"))
    (3034, 3033, 3033)
    """
    total = to_minor_units(amount)
    base, remainder = divmod(total, count)
    return (base + remainder,) + (base,) * (count - 1)


def format_minor(minor: int) -> str:
    """Render minor units as a decimal string, e.g. 3034 -> '30.34'."""
    return str((Decimal(minor) / 100).quantize(Decimal("0.01")))


def _parse_amount(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def _require_text(value: Any, name: str, errors: list[str]) -> str:
    if not isinstance(value, str) or not value.strip():
        errors.append(f"{name} is required")
        return ""
    return value.strip()


def validate_plan_request(request: PlanRequest, default_amount: Decimal) -> ValidationResult:
    """
    Validate a provisioning request before any registry or processor call.

    ``penalty_amount`` falls back to ``default_amount`` when omitted. The
    amount must be positive and large enough that no instalment is zero.

    Returns:
        Valid with the normalized request, or Invalid listing every problem
    """
    errors: list[str] = []

    email = _require_text(request.email, "email", errors)
    if email:
        local, _, domain = email.partition("@")
        if not local or not domain or " " in email:
            errors.append("email is not a valid address")

    pcn_number = _require_text(request.pcn_number, "pcnNumber", errors)
    vehicle_registration = _require_text(
        request.vehicle_registration, "vehicleRegistration", errors
    )

    raw_amount = request.penalty_amount
    if raw_amount is None or raw_amount == "":
        raw_amount = default_amount

    amount = _parse_amount(raw_amount)
    instalments: tuple[int, ...] = ()
    if amount is None:
        errors.append("penaltyAmount must be a number")
    elif amount <= 0:
        errors.append("penaltyAmount must be greater than 0")
    else:
        instalments = split_instalments(amount)
        if min(instalments) <= 0:
            errors.append(f"penaltyAmount is too small to split into {INSTALMENT_COUNT} payments")

    if errors:
        return Invalid(errors)

    return Valid(
        ValidatedPlanRequest(
            email=email,
            pcn_number=pcn_number,
            vehicle_registration=vehicle_registration,
            penalty_amount=amount,
            instalments=instalments,
            request_nonce=request.request_nonce,
        )
    )
