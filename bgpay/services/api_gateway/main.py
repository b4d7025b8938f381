"""Public BGPay HTTP surface.

Merchant endpoints authenticate an `x-merchant-key: publicId:secret` header and
pass a per-(merchant, client IP) rate limit before reaching the payment
façade. The processor webhook endpoint is public; trust comes only from its
HMAC signature.
"""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from typing import Any
from uuid import uuid4

from fastapi import BackgroundTasks, Body, Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse

from bgpay.common.config import settings
from bgpay.common.db import SessionLocal
from bgpay.common.errors import (
    AuthenticationError,
    InvalidPaymentRequest,
    PaymentNotFound,
    RateLimitExceeded,
    SignatureError,
    StateError,
    UpstreamError,
)
from bgpay.common.logging import configure_logging, logger, merchant_id_ctx, request_context
from bgpay.common.metrics import (
    auth_failures_total,
    http_request_duration_seconds,
    http_requests_total,
    metrics_response,
    rate_limited_total,
)
from bgpay.common.startup import log_startup_config
from bgpay.common.tracing import configure_tracing
from bgpay.services.merchant_auth.service import ApiKeyAuthenticator, AuthenticatedMerchant
from bgpay.services.notifications.service import MerchantNotifier
from bgpay.services.payments.schemas import EstimateRequest, EstimateResponse, PaymentView
from bgpay.services.payments.service import PaymentFacade
from bgpay.services.processor.client import ProcessorClient
from bgpay.services.rate_limit.service import build_rate_limiter
from bgpay.services.webhooks.service import WebhookService, WebhookVerifier

configure_logging()
log_startup_config(settings)

processor = ProcessorClient(
    settings.processor_url,
    settings.processor_api_key,
    timeout_seconds=settings.processor_timeout_seconds,
    total_timeout_seconds=settings.processor_total_timeout_seconds,
    max_retries=settings.processor_max_retries,
    backoff_base_seconds=settings.processor_backoff_base_seconds,
    service_name=settings.service_name,
)
facade = PaymentFacade(
    SessionLocal,
    processor,
    platform_url=settings.platform_url,
    fiat_currencies=settings.fiat_currencies,
    pay_currencies=settings.pay_currencies,
    payment_ttl_minutes=settings.payment_ttl_minutes,
    service_name=settings.service_name,
)
notifier = MerchantNotifier(
    SessionLocal,
    algorithm=settings.webhook_signature_algorithm,
    timeout_seconds=settings.notification_timeout_seconds,
    max_attempts=settings.notification_max_attempts,
    backoff_base_seconds=settings.notification_backoff_base_seconds,
    poll_interval_seconds=settings.notification_poll_interval_seconds,
    service_name=settings.service_name,
)
authenticator = ApiKeyAuthenticator(SessionLocal, settings.brand_signing_secret)
webhooks = WebhookService(
    SessionLocal,
    WebhookVerifier(settings.webhook_secret, settings.webhook_signature_algorithm),
    facade,
    notifier,
    service_name=settings.service_name,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the merchant notification dispatcher with app lifecycle."""

    dispatcher_task = asyncio.create_task(app.state.notifier.run_forever())
    yield
    dispatcher_task.cancel()


app = FastAPI(title="BGPay Gateway", lifespan=lifespan)
app.state.rate_limiter = build_rate_limiter(settings)
app.state.authenticator = authenticator
app.state.facade = facade
app.state.webhooks = webhooks
app.state.notifier = notifier
app.state.processor = processor
configure_tracing(app, settings.service_name)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        with request_context(request.headers.get("x-correlation-id") or str(uuid4())):
            response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


@app.exception_handler(AuthenticationError)
async def authentication_error_handler(request: Request, exc: AuthenticationError):
    # Uniform response; the specific kind is only logged.
    auth_failures_total.labels(service=settings.service_name, kind=exc.kind).inc()
    logger.warning("auth_rejected kind=%s path=%s detail=%s", exc.kind, request.url.path, exc)
    return JSONResponse(status_code=401, content={"detail": "invalid credentials"})


@app.exception_handler(RateLimitExceeded)
async def rate_limit_error_handler(request: Request, exc: RateLimitExceeded):
    rate_limited_total.labels(service=settings.service_name).inc()
    retry_after = max(1, int(exc.retry_after + 0.999))
    return JSONResponse(
        status_code=429,
        content={"detail": "rate limit exceeded", "retry_after": retry_after},
        headers={"Retry-After": str(retry_after)},
    )


@app.exception_handler(InvalidPaymentRequest)
async def invalid_payment_handler(request: Request, exc: InvalidPaymentRequest):
    return JSONResponse(status_code=400, content={"detail": "invalid payment request", "errors": exc.errors})


@app.exception_handler(PaymentNotFound)
async def payment_not_found_handler(request: Request, exc: PaymentNotFound):
    return JSONResponse(status_code=404, content={"detail": "payment not found"})


@app.exception_handler(UpstreamError)
async def upstream_error_handler(request: Request, exc: UpstreamError):
    logger.error("upstream_error path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": "payment service temporarily unavailable"})


@app.exception_handler(SignatureError)
async def signature_error_handler(request: Request, exc: SignatureError):
    return JSONResponse(status_code=401, content={"ok": False})


@app.exception_handler(StateError)
async def state_error_handler(request: Request, exc: StateError):
    logger.error("state_error path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=409, content={"ok": False, "detail": "request could not be processed"})


def client_ip(request: Request) -> str:
    if settings.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""


def require_merchant(
    request: Request,
    background_tasks: BackgroundTasks,
    x_merchant_key: str | None = Header(default=None),
) -> AuthenticatedMerchant:
    """Authenticate, then rate-limit, the calling merchant."""

    ip = client_ip(request)
    merchant = request.app.state.authenticator.authenticate(x_merchant_key, ip)
    merchant_id_ctx.set(merchant.merchant_id)
    background_tasks.add_task(request.app.state.authenticator.touch_last_used, merchant.credential_id)
    request.app.state.rate_limiter.hit(merchant.merchant_id, ip)
    return merchant


@app.post("/payments", response_model=PaymentView)
async def create_payment(
    request: Request,
    payload: Any = Body(...),
    merchant: AuthenticatedMerchant = Depends(require_merchant),
):
    """Create a payment and return its brand-only view."""

    return await request.app.state.facade.create(merchant, payload)


@app.get("/payments/{payment_id}", response_model=PaymentView)
def get_payment(
    payment_id: str,
    request: Request,
    merchant: AuthenticatedMerchant = Depends(require_merchant),
):
    """Fetch current brand view for one of the merchant's payments."""

    return request.app.state.facade.get(merchant, payment_id)


@app.post("/estimate", response_model=EstimateResponse)
async def estimate(
    req: EstimateRequest,
    request: Request,
    merchant: AuthenticatedMerchant = Depends(require_merchant),
):
    """Quote the crypto amount for a fiat price."""

    del merchant
    quote = await request.app.state.processor.get_estimate(req.amount, req.currency_from, req.currency_to)
    estimated = quote.get("estimated_amount")
    if estimated is None:
        raise UpstreamError("estimate response missing estimated_amount")
    return EstimateResponse(
        amount=req.amount,
        currency_from=req.currency_from.upper(),
        currency_to=req.currency_to.upper(),
        estimated_amount=str(estimated),
    )


@app.get("/currencies")
async def currencies(request: Request, merchant: AuthenticatedMerchant = Depends(require_merchant)):
    """Pay currencies that are both enabled for the brand and offered by the processor."""

    del merchant
    offered = set(await request.app.state.processor.get_currencies())
    return {"currencies": sorted(offered & request.app.state.facade.pay_currencies)}


@app.post("/webhooks/processor")
async def processor_webhook(request: Request):
    """Receive a processor status callback; 200 once verified and applied."""

    raw_body = await request.body()
    result = request.app.state.webhooks.process(raw_body, request.headers)
    return {"ok": True, "outcome": result.outcome}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
