import base64
import hashlib
import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.result import ErrorKind
from app.db.session import get_session
from app.models.attribution import AttributionSource
from app.schemas.orders import OrderCreatedEvent, WebhookAck
from app.services.redemption import OrderPayload, RedemptionRecorder

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

ORDERS_CREATE_TOPIC = "orders/create"


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, str(signature or "").strip())


def order_from_event(event: OrderCreatedEvent, merchant_id: str) -> OrderPayload:
    return OrderPayload(
        order_id=str(event.id),
        merchant_id=merchant_id,
        total_price=event.total_price,
        currency=event.currency,
        codes=tuple(line.code for line in event.discount_codes),
        order_number=str(event.order_number or event.name or "") or None,
        line_items_count=len(event.line_items),
        correlation_value=event.note(settings.order_sync_attribute_key) if settings.order_sync_attribute_key else None,
        created_at=event.created_at,
    )


@router.post("/orders/create", response_model=WebhookAck)
async def orders_create_webhook(
    request: Request,
    shop_domain: str | None = Header(default=None, alias="X-Shopify-Shop-Domain"),
    topic: str | None = Header(default=None, alias="X-Shopify-Topic"),
    signature: str | None = Header(default=None, alias="X-Shopify-Hmac-Sha256"),
    session: AsyncSession = Depends(get_session),
) -> WebhookAck:
    body = await request.body()
    secret = settings.platform_webhook_secret
    if secret and not verify_signature(body, signature, secret):
        logger.warning("webhook_signature_invalid", extra={"merchant_id": shop_domain, "topic": topic})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    merchant_id = (shop_domain or "").strip().lower()
    if not merchant_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing shop domain")
    if (topic or ORDERS_CREATE_TOPIC).strip().lower() != ORDERS_CREATE_TOPIC:
        return WebhookAck(status="ignored")

    try:
        event = OrderCreatedEvent.model_validate_json(body)
    except ValidationError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid order payload")

    outcome = await RedemptionRecorder(session).record_order(
        order_from_event(event, merchant_id), AttributionSource.webhook
    )
    if outcome.ok:
        return WebhookAck(status="credited", credited=outcome.value.credited, skipped=outcome.value.skipped)
    if outcome.kind == ErrorKind.duplicate:
        return WebhookAck(status="duplicate")
    if outcome.kind == ErrorKind.invalid_input:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=outcome.detail)
    # Non-2xx makes the platform redeliver later.
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Order could not be recorded")
