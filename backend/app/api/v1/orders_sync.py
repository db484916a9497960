from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dependencies import get_merchant_id, get_promotion_client
from app.db.session import get_session
from app.schemas.orders import OrderSyncResponse
from app.services import order_sync
from app.services.promotion_rules import PromotionRuleClient

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("/sync", response_model=OrderSyncResponse)
async def sync_orders(
    merchant_id: str = Depends(get_merchant_id),
    client: PromotionRuleClient = Depends(get_promotion_client),
    session: AsyncSession = Depends(get_session),
) -> OrderSyncResponse:
    outcome = await order_sync.sync_recent_orders(session, client, merchant_id)
    if not outcome.ok:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Could not fetch recent orders")
    summary = outcome.value
    return OrderSyncResponse(
        success=True,
        ordersChecked=summary.orders_checked,
        attributed=summary.attributed,
        skipped=summary.skipped,
    )
