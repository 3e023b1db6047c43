"""Table-name constants and column lists."""


class Table:
    """Database table names."""

    CUSTOMERS = "customers"
    SCHEMA_MIGRATIONS = "schema_migrations"


# Columns returned for a full customer row
CUSTOMER_COLUMNS = (
    "id",
    "email",
    "pcn_number",
    "vehicle_registration",
    "processor_customer_id",
    "processor_subscription_id",
    "created_at",
    "updated_at",
)
