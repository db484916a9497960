from fastapi import Depends, Header, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.session import get_session, get_session_factory
from app.services.gateway import ProxyGateway
from app.services.promotion_rules import ClientFactory, PromotionRuleClient, PromotionRuleError, client_for_merchant


def _clean_shop(value: str | None) -> str:
    return (value or "").strip().lower()


async def get_merchant_id(
    shop: str | None = Query(default=None),
    shop_header: str | None = Header(default=None, alias="X-Shopify-Shop-Domain"),
) -> str:
    merchant_id = _clean_shop(shop) or _clean_shop(shop_header)
    if not merchant_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="shop is required")
    return merchant_id


def get_client_factory() -> ClientFactory:
    return client_for_merchant


async def get_promotion_client(
    merchant_id: str = Depends(get_merchant_id),
    session: AsyncSession = Depends(get_session),
    factory: ClientFactory = Depends(get_client_factory),
) -> PromotionRuleClient:
    try:
        return await factory(session, merchant_id)
    except PromotionRuleError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Merchant is not installed")


def get_gateway(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    factory: ClientFactory = Depends(get_client_factory),
) -> ProxyGateway:
    return ProxyGateway(session_factory, factory)
