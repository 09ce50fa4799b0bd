from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from busconnect.api.dependencies import get_current_caller, get_db, get_paystack_client
from busconnect.api.routes.routes import require_admin, to_http
from busconnect.api.schemas.schemas import (
    OtpSubmitRequest,
    OtpSubmitResponse,
    PaymentInitializeRequest,
    PaymentInitializeResponse,
    PaymentVerifyRequest,
    PaymentVerifyResponse,
    WebhookAckResponse,
    WebhookEventResponse,
)
from busconnect.application.confirmation_service import (
    ConfirmationTrigger,
    PaymentConfirmationService,
    WEBHOOK_PENDING,
)
from busconnect.application.payment_gateway import (
    CHANNEL_CARD,
    CHANNEL_MOBILE_MONEY,
    PaymentGatewayAdapter,
)
from busconnect.config import Settings, get_settings
from busconnect.domain.caller import Caller
from busconnect.domain.exceptions import BusConnectError
from busconnect.infrastructure.gateways.paystack_client import PaystackClient
from busconnect.infrastructure.repositories.webhook_repository import WebhookEventRepository


router = APIRouter()


def _confirmation_service(
    db: Session,
    client: PaystackClient,
    settings: Settings,
) -> PaymentConfirmationService:
    gateway = PaymentGatewayAdapter(db, client, settings)
    return PaymentConfirmationService(db, gateway, settings)


@router.post("/payments/initialize", response_model=PaymentInitializeResponse)
def initialize_payment(
    request: PaymentInitializeRequest,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
    client: PaystackClient = Depends(get_paystack_client),
    settings: Settings = Depends(get_settings),
):
    gateway = PaymentGatewayAdapter(db, client, settings)
    channel = CHANNEL_MOBILE_MONEY if request.payment_method == "momo" else CHANNEL_CARD

    try:
        charge = gateway.initialize_charge(
            booking_id=request.booking_id,
            caller=caller,
            channel=channel,
            momo_provider=request.momo_provider,
            momo_phone=request.momo_phone,
            email=request.email,
        )
    except BusConnectError as exc:
        raise to_http(exc) from exc

    return PaymentInitializeResponse(
        booking_id=charge.booking_id,
        reference=charge.reference,
        checkout_url=charge.checkout_url,
        access_code=charge.access_code,
        status=charge.status,
        display_text=charge.display_text,
        already_confirmed=charge.already_confirmed,
    )


@router.post("/payments/verify", response_model=PaymentVerifyResponse)
def verify_payment(
    request: PaymentVerifyRequest,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
    client: PaystackClient = Depends(get_paystack_client),
    settings: Settings = Depends(get_settings),
):
    service = _confirmation_service(db, client, settings)

    try:
        result = service.confirm(
            request.reference,
            ConfirmationTrigger.CLIENT,
            caller=caller,
            booking_id_hint=request.booking_id,
        )
    except BusConnectError as exc:
        raise to_http(exc) from exc

    return PaymentVerifyResponse(
        success=result.success,
        status=result.status,
        booking_id=result.booking_id,
    )


@router.post("/payments/otp", response_model=OtpSubmitResponse)
def submit_otp(
    request: OtpSubmitRequest,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
    client: PaystackClient = Depends(get_paystack_client),
    settings: Settings = Depends(get_settings),
):
    gateway = PaymentGatewayAdapter(db, client, settings)

    try:
        submission = gateway.submit_otp(request.reference, request.otp, caller)
    except BusConnectError as exc:
        raise to_http(exc) from exc

    return OtpSubmitResponse(
        reference=submission.reference,
        status=submission.status,
        display_text=submission.display_text,
    )


@router.post("/payments/webhook", response_model=WebhookAckResponse)
async def paystack_webhook(
    request: Request,
    x_paystack_signature: str | None = Header(default=None),
    db: Session = Depends(get_db),
    client: PaystackClient = Depends(get_paystack_client),
    settings: Settings = Depends(get_settings),
):
    # The signature covers the exact bytes Paystack sent.
    raw_body = await request.body()
    service = _confirmation_service(db, client, settings)

    try:
        receipt = await run_in_threadpool(
            service.handle_webhook,
            raw_body,
            x_paystack_signature,
        )
    except BusConnectError as exc:
        raise to_http(exc) from exc

    return WebhookAckResponse(
        received=True,
        status=receipt.status,
        duplicate=receipt.duplicate,
    )


@router.post("/admin/payments/{reference}/reconcile", response_model=PaymentVerifyResponse)
def reconcile_payment(
    reference: str,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
    client: PaystackClient = Depends(get_paystack_client),
    settings: Settings = Depends(get_settings),
):
    service = _confirmation_service(db, client, settings)

    try:
        result = service.reconcile(reference, caller)
    except BusConnectError as exc:
        raise to_http(exc) from exc

    return PaymentVerifyResponse(
        success=result.success,
        status=result.status,
        booking_id=result.booking_id,
    )


@router.get("/admin/payments/webhooks", response_model=list[WebhookEventResponse])
def list_webhook_events(
    status_filter: str = WEBHOOK_PENDING,
    limit: int = 50,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
):
    """Webhook deliveries left PENDING or FAILED, as input for reconcile."""
    require_admin(caller)

    events = WebhookEventRepository(db).list_by_status(status_filter, limit)
    return [
        WebhookEventResponse(
            id=event.id,
            provider=event.provider,
            reference=event.reference,
            event_type=event.event_type,
            booking_id=event.booking_id,
            status=event.status,
            created_at=event.created_at.isoformat(),
        )
        for event in events
    ]
