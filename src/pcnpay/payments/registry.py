"""Customer registry: email-keyed local billing identities."""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

import asyncpg

from pcnpay.db.models import CUSTOMER_COLUMNS, Table
from pcnpay.payments.errors import ConflictError, InvariantViolation, NotFoundError
from pcnpay.payments.plans import Customer

logger = logging.getLogger(__name__)

_COLUMNS = ", ".join(CUSTOMER_COLUMNS)


def new_customer_id() -> str:
    return f"cust_{uuid.uuid4().hex}"


class CustomerRegistry(ABC):
    """Storage contract consumed by the provisioner.

    Implementations must serialize concurrent creates for the same email so
    that exactly one succeeds and the others raise ConflictError.
    """

    @abstractmethod
    async def find_by_email(self, email: str) -> Optional[Customer]:
        """Return the customer with exactly this email, or None."""

    @abstractmethod
    async def create(
        self, email: str, pcn_number: str, vehicle_registration: str
    ) -> Customer:
        """
        Create a customer record.

        Raises:
            ConflictError: If a customer with this email already exists
        """

    @abstractmethod
    async def attach_processor_ids(
        self,
        customer_id: str,
        processor_customer_id: str,
        processor_subscription_id: Optional[str] = None,
    ) -> Customer:
        """
        Attach processor identifiers to a customer.

        Re-attaching identical values is a no-op. A subscription ID, when
        given, replaces the stored one (a new plan for the same customer).

        Raises:
            NotFoundError: If customer_id is unknown
            InvariantViolation: If a different processor customer ID is stored
        """


def _check_processor_customer(customer: Customer, processor_customer_id: str) -> None:
    stored = customer.processor_customer_id
    if stored is not None and stored != processor_customer_id:
        raise InvariantViolation(
            f"customer {customer.id} is linked to processor customer {stored}, "
            f"refusing to relink to {processor_customer_id}"
        )


class InMemoryCustomerRegistry(CustomerRegistry):
    """Process-local registry for development and tests."""

    def __init__(self):
        self._by_id: dict[str, Customer] = {}
        self._id_by_email: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def find_by_email(self, email: str) -> Optional[Customer]:
        customer_id = self._id_by_email.get(email)
        if customer_id is None:
            return None
        return replace(self._by_id[customer_id])

    async def create(
        self, email: str, pcn_number: str, vehicle_registration: str
    ) -> Customer:
        async with self._lock:
            if email in self._id_by_email:
                raise ConflictError(f"customer with email {email} already exists")
            now = datetime.now(timezone.utc)
            customer = Customer(
                id=new_customer_id(),
                email=email,
                pcn_number=pcn_number,
                vehicle_registration=vehicle_registration,
                created_at=now,
                updated_at=now,
            )
            self._by_id[customer.id] = customer
            self._id_by_email[email] = customer.id
        return replace(customer)

    async def attach_processor_ids(
        self,
        customer_id: str,
        processor_customer_id: str,
        processor_subscription_id: Optional[str] = None,
    ) -> Customer:
        async with self._lock:
            customer = self._by_id.get(customer_id)
            if customer is None:
                raise NotFoundError(f"customer {customer_id} not found")
            _check_processor_customer(customer, processor_customer_id)

            changed = customer.processor_customer_id is None or (
                processor_subscription_id is not None
                and processor_subscription_id != customer.processor_subscription_id
            )
            if changed:
                customer.processor_customer_id = processor_customer_id
                if processor_subscription_id is not None:
                    customer.processor_subscription_id = processor_subscription_id
                customer.updated_at = datetime.now(timezone.utc)
        return replace(customer)

    def count(self, email: str) -> int:
        """Number of records stored for this email (0 or 1)."""
        return sum(1 for c in self._by_id.values() if c.email == email)


def _row_to_customer(row) -> Customer:
    return Customer(
        id=row["id"],
        email=row["email"],
        pcn_number=row["pcn_number"],
        vehicle_registration=row["vehicle_registration"],
        processor_customer_id=row["processor_customer_id"],
        processor_subscription_id=row["processor_subscription_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresCustomerRegistry(CustomerRegistry):
    """Registry backed by the ``customers`` table.

    Same-email serialization comes from the unique index on ``email``.
    """

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def find_by_email(self, email: str) -> Optional[Customer]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM {Table.CUSTOMERS} WHERE email = $1",
                email,
            )
        return _row_to_customer(row) if row else None

    async def create(
        self, email: str, pcn_number: str, vehicle_registration: str
    ) -> Customer:
        async with self._pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO {Table.CUSTOMERS}
                        (id, email, pcn_number, vehicle_registration)
                    VALUES ($1, $2, $3, $4)
                    RETURNING {_COLUMNS}
                    """,
                    new_customer_id(),
                    email,
                    pcn_number,
                    vehicle_registration,
                )
            except asyncpg.UniqueViolationError as e:
                raise ConflictError(f"customer with email {email} already exists") from e

        logger.info(f"Created customer {row['id']}")
        return _row_to_customer(row)

    async def attach_processor_ids(
        self,
        customer_id: str,
        processor_customer_id: str,
        processor_subscription_id: Optional[str] = None,
    ) -> Customer:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"SELECT {_COLUMNS} FROM {Table.CUSTOMERS} WHERE id = $1 FOR UPDATE",
                    customer_id,
                )
                if row is None:
                    raise NotFoundError(f"customer {customer_id} not found")

                customer = _row_to_customer(row)
                _check_processor_customer(customer, processor_customer_id)

                row = await conn.fetchrow(
                    f"""
                    UPDATE {Table.CUSTOMERS} SET
                        processor_customer_id = $2,
                        processor_subscription_id = COALESCE($3, processor_subscription_id),
                        updated_at = now()
                    WHERE id = $1
                    RETURNING {_COLUMNS}
                    """,
                    customer_id,
                    processor_customer_id,
                    processor_subscription_id,
                )

        return _row_to_customer(row)
