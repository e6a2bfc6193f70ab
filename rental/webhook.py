"""
Inbound HTTP for the payment gateway: the PayOS webhook and the
return-page verification call. The error handler is the outermost
middleware, then one DB session per request.
"""
import logging
from typing import Any, Awaitable, Callable, Optional

from aiohttp import web
from sqlalchemy.ext.asyncio import AsyncSession

from rental.database.core import AsyncSessionLocal
from rental.errors import AccessDenied, DomainError
from rental.services.payment_service import PaymentResult, handle_webhook, verify_payment
from rental.services.payos_client import PayOSClient

GATEWAY = web.AppKey("gateway", object)
SESSION = web.RequestKey("session", AsyncSession)

ERROR_STATUS = {
    "validation": 422,
    "not_found": 404,
    "conflict": 409,
}

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except AccessDenied as e:
        return web.json_response(e.to_dict(), status=403)
    except DomainError as e:
        return web.json_response(e.to_dict(), status=ERROR_STATUS.get(e.kind, 400))
    except Exception as e:
        logging.exception(f"Unhandled exception in {request.method} {request.path}: {e}")
        return web.json_response({"kind": "internal", "message": "Internal error"}, status=500)


def db_session_middleware(session_factory) -> Any:
    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        async with session_factory() as session:
            request[SESSION] = session
            try:
                response = await handler(request)
                # Services commit their own work; this only closes leftovers
                await session.commit()
                return response
            except Exception:
                await session.rollback()
                raise
    return middleware


def _gateway(request: web.Request) -> Optional[PayOSClient]:
    return request.app[GATEWAY]


def _result_body(result: PaymentResult) -> dict:
    return {
        "status": result.status.value,
        "message": result.message,
        "orderCode": result.order_code,
        "invoice_ids": result.invoice_ids,
        "nothing_to_update": result.nothing_to_update,
    }


async def payos_webhook(request: web.Request) -> web.Response:
    try:
        payload = await request.json()
    except ValueError:
        return web.json_response({"kind": "validation", "message": "Body must be JSON"}, status=400)
    if not isinstance(payload, dict):
        return web.json_response({"kind": "validation", "message": "Body must be an object"}, status=400)

    logging.info(f"PayOS webhook received for order {(payload.get('data') or {}).get('orderCode')}")
    result = await handle_webhook(request[SESSION], payload, _gateway(request))
    # The gateway retries on non-2xx, so a processed webhook is always acknowledged
    return web.json_response({"success": result.ok, **_result_body(result)})


async def verify_return(request: web.Request) -> web.Response:
    order_code = request.query.get("orderCode")
    cancel = request.query.get("cancel", "").lower() in ("1", "true", "yes")
    result = await verify_payment(request[SESSION], order_code, _gateway(request), cancel=cancel)
    return web.json_response(_result_body(result))


def create_app(gateway: Optional[PayOSClient] = None, session_factory=AsyncSessionLocal) -> web.Application:
    app = web.Application(middlewares=[error_middleware, db_session_middleware(session_factory)])
    app[GATEWAY] = gateway
    app.router.add_post("/payments/payos/webhook", payos_webhook)
    app.router.add_get("/payments/payos/verify", verify_return)
    return app
