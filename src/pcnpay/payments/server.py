"""HTTP endpoints for plan provisioning and status queries."""

import asyncio
import json
import logging
from typing import Optional

from aiohttp import web

from pcnpay.payments.errors import PaymentPlanError
from pcnpay.payments.plans import PlanRequest
from pcnpay.payments.provisioner import PaymentPlanProvisioner
from pcnpay.payments.query import PlanQuery

logger = logging.getLogger(__name__)


def error_response(status: int, message: str, retryable: bool = False) -> web.Response:
    return web.json_response(
        {"errorMessage": message, "retryable": retryable},
        status=status,
    )


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Map provisioning errors to JSON error responses."""
    try:
        return await handler(request)
    except PaymentPlanError as e:
        if e.http_status >= 500:
            logger.error(f"{request.method} {request.path} failed: {type(e).__name__}: {e.message}")
        return error_response(e.http_status, e.message, e.retryable)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Unhandled error on {request.method} {request.path}: {e}")
        return error_response(500, "Internal error")


async def provision_plan(request: web.Request) -> web.Response:
    """Handle POST /api/payment-plans.

    Body: {email, pcnNumber, vehicleRegistration, penaltyAmount?, requestId?}.
    An Idempotency-Key header, when present, is the request nonce.
    """
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return error_response(400, "Request body must be valid JSON")

    if not isinstance(payload, dict):
        return error_response(400, "Request body must be a JSON object")

    provisioner: PaymentPlanProvisioner = request.app["provisioner"]
    plan_request = PlanRequest.from_payload(
        payload, request_nonce=request.headers.get("Idempotency-Key")
    )
    result = await provisioner.provision(plan_request)
    return web.json_response(result.to_response())


async def subscription_status(request: web.Request) -> web.Response:
    """Handle GET /api/subscription/{id}."""
    query: PlanQuery = request.app["plan_query"]
    payload = await query.get_subscription_status(request.match_info["id"])
    return web.json_response(payload)


async def checkout_session(request: web.Request) -> web.Response:
    """Handle GET /api/checkout-session?sessionId=..."""
    query: PlanQuery = request.app["plan_query"]
    payload = await query.get_checkout_session(request.query.get("sessionId", ""))
    return web.json_response(payload)


async def checkout_redirect(request: web.Request) -> web.Response:
    """Handle GET /checkout/{session_id}: send the browser to the hosted page."""
    query: PlanQuery = request.app["plan_query"]
    session_id = request.match_info["session_id"]
    session = await query.get_checkout_session(session_id)

    url = session.get("url")
    if not url:
        return error_response(410, f"Checkout session {session_id} is no longer open")
    raise web.HTTPSeeOther(location=url)


async def checkout_complete(request: web.Request) -> web.Response:
    """Handle GET /checkout/{session_id}/complete, the checkout success target.

    Activates the plan's schedule, then sends the browser to the success page.
    """
    provisioner: PaymentPlanProvisioner = request.app["provisioner"]
    session_id = request.match_info["session_id"]
    await provisioner.complete_checkout(session_id)
    raise web.HTTPSeeOther(location=provisioner.settings.payment_success_url(session_id))


async def create_app(
    provisioner: PaymentPlanProvisioner,
    plan_query: PlanQuery,
) -> web.Application:
    """Create aiohttp application with plan routes.

    Args:
        provisioner: Provisioner used by the plan creation routes
        plan_query: Status lookups

    Returns:
        Configured aiohttp Application
    """
    app = web.Application(middlewares=[error_middleware])
    app["provisioner"] = provisioner
    app["plan_query"] = plan_query

    app.router.add_post("/api/payment-plans", provision_plan)
    # Legacy path used by the payment portal client
    app.router.add_post("/api/create-checkout-session", provision_plan)
    app.router.add_get("/api/subscription/{id}", subscription_status)
    app.router.add_get("/api/checkout-session", checkout_session)
    app.router.add_get("/checkout/{session_id}", checkout_redirect)
    app.router.add_get("/checkout/{session_id}/complete", checkout_complete)

    return app


async def run_server(
    app: web.Application,
    host: str,
    port: int,
    shutdown_event: Optional[asyncio.Event] = None,
) -> None:
    """Serve the application until shutdown is signalled."""
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info(f"Payment plan server listening on {host}:{port}")

    if shutdown_event:
        await shutdown_event.wait()
    else:
        await asyncio.Event().wait()

    logger.info("Shutting down payment plan server...")
    await runner.cleanup()
