"""Application entry point."""

import asyncio
import logging
import signal
import sys
from typing import Optional

from pcnpay.config import AppConfig, get_config
from pcnpay.db import close_pool, get_pool
from pcnpay.db.schema.migrate import migrate
from pcnpay.payments.gateway import StripeGateway
from pcnpay.payments.plans import PlanMode
from pcnpay.payments.provisioner import PaymentPlanProvisioner, ProvisionerSettings
from pcnpay.payments.query import PlanQuery
from pcnpay.payments.registry import (
    CustomerRegistry,
    InMemoryCustomerRegistry,
    PostgresCustomerRegistry,
)
from pcnpay.payments.server import create_app, run_server

logger = logging.getLogger(__name__)


async def build_registry(config: AppConfig) -> CustomerRegistry:
    """Postgres registry when db_dsn is set, otherwise in-memory (dev only)."""
    if config.db_dsn is None:
        if config.env != "dev":
            raise RuntimeError(f"db_dsn is required when env={config.env}")
        logger.warning("db_dsn not set - using in-memory customer registry")
        return InMemoryCustomerRegistry()

    pool = await get_pool(config)
    applied = await migrate()
    logger.info(
        f"Database pool initialized: min={config.db_pool_min}, max={config.db_pool_max}, "
        f"migrations applied={applied}"
    )
    return PostgresCustomerRegistry(pool)


def build_services(
    config: AppConfig, registry: CustomerRegistry
) -> tuple[PaymentPlanProvisioner, PlanQuery]:
    """Wire the Stripe gateway into the provisioner and query service."""
    gateway = StripeGateway(
        api_key=config.stripe_secret.get_secret_value(),
        api_version=config.stripe_api_version,
        currency=config.currency,
        timeout_seconds=config.processor_timeout_seconds,
    )
    settings = ProvisionerSettings(
        base_url=config.base_url,
        mode=PlanMode(config.plan_mode),
        default_penalty_amount=config.default_penalty_amount,
    )
    return PaymentPlanProvisioner(registry, gateway, settings), PlanQuery(gateway)


async def boot(shutdown_event: Optional[asyncio.Event] = None) -> None:
    """
    Boot sequence: load config -> registry -> services -> serve -> shutdown.

    Raises:
        SystemExit: On configuration, database or server errors
    """
    try:
        config = get_config()
        logger.info(f"Configuration loaded: env={config.env}, plan_mode={config.plan_mode}")

        registry = await build_registry(config)
        provisioner, plan_query = build_services(config, registry)
        app = await create_app(provisioner, plan_query)

        await run_server(app, config.server_host, config.server_port, shutdown_event)

    except Exception as e:
        logger.error(f"Boot sequence failed: {e}")
        raise SystemExit(1) from e

    finally:
        await close_pool()
        logger.info("Application shutdown complete")


def main() -> None:
    """Main entry point with logging and signal handling."""
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    shutdown_event = asyncio.Event()

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        loop.call_soon_threadsafe(shutdown_event.set)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        loop.run_until_complete(boot(shutdown_event))
    except SystemExit:
        raise
    except Exception as e:
        logging.error(f"Unexpected error: {e}")
        sys.exit(1)
    finally:
        loop.close()


if __name__ == "__main__":
    main()
