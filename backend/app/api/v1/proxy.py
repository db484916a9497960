from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from app.core.dependencies import get_gateway
from app.core.result import Err, ErrorKind
from app.schemas.storefront import CodeStatusResponse, RevealedStatusResponse, RevealResponse, StorefrontError
from app.services.gateway import ProxyGateway

router = APIRouter(prefix="/proxy", tags=["storefront"])

# The widget only ever sees these messages, never store or platform detail.
_STOREFRONT_MESSAGES = {
    ErrorKind.invalid_input: "Missing required parameters",
    ErrorKind.set_not_found: "Discount not found or inactive",
    ErrorKind.inactive: "Discount not found or inactive",
    ErrorKind.exhausted: "No available discount codes found",
    ErrorKind.code_not_found: "Discount code not found",
    ErrorKind.already_revealed: "Discount code already revealed",
}
_UNAVAILABLE = "Discounts are temporarily unavailable"


def _status_for(kind: ErrorKind) -> int:
    if kind == ErrorKind.invalid_input:
        return status.HTTP_400_BAD_REQUEST
    if kind in (ErrorKind.store_unavailable, ErrorKind.platform_unavailable):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_200_OK


def _storefront_error(err: Err) -> JSONResponse:
    body = StorefrontError(error=_STOREFRONT_MESSAGES.get(err.kind, _UNAVAILABLE), code=err.kind.value)
    return JSONResponse(status_code=_status_for(err.kind), content=body.model_dump())


async def _reveal(gateway: ProxyGateway, shop: str | None, set_id: str | None):
    outcome = await gateway.reveal_for_set(shop, set_id)
    if not outcome.ok:
        return _storefront_error(outcome)
    return RevealResponse(discountCode=outcome.value.code, **outcome.value.presentation)


async def _code_status(gateway: ProxyGateway, set_id: str | None, code: str | None, shop: str | None):
    outcome = await gateway.code_status(set_id, code, merchant_id=shop)
    if not outcome.ok:
        return _storefront_error(outcome)
    return CodeStatusResponse(codeStatus=bool(outcome.value))


async def _revealed_status(gateway: ProxyGateway, shop: str | None, code: str | None, desired: str | None):
    outcome = await gateway.update_revealed_status(shop, code, desired)
    if outcome.ok:
        return RevealedStatusResponse(success=True, code=outcome.value, status="revealed")
    if outcome.kind == ErrorKind.already_revealed:
        return RevealedStatusResponse(success=True, code=outcome.data, status=ErrorKind.already_revealed.value)
    return JSONResponse(
        status_code=_status_for(outcome.kind),
        content=RevealedStatusResponse(success=False, status=outcome.kind.value).model_dump(),
    )


@router.get("/discount", response_model=RevealResponse)
async def reveal_discount(
    shop: str | None = Query(default=None),
    discount_set_id: str | None = Query(default=None, alias="discountSetID"),
    gateway: ProxyGateway = Depends(get_gateway),
):
    return await _reveal(gateway, shop, discount_set_id)


@router.get("/code-status", response_model=CodeStatusResponse)
async def code_status(
    chk_discount_set_id: str | None = Query(default=None, alias="chkDiscountSetID"),
    code: str | None = Query(default=None),
    shop: str | None = Query(default=None),
    gateway: ProxyGateway = Depends(get_gateway),
):
    return await _code_status(gateway, chk_discount_set_id, code, shop)


@router.get("/revealed-status", response_model=RevealedStatusResponse)
async def revealed_status(
    shop: str | None = Query(default=None),
    code: str | None = Query(default=None, alias="updateRevealedStatusCode"),
    desired: str | None = Query(default="1", alias="status"),
    gateway: ProxyGateway = Depends(get_gateway),
):
    return await _revealed_status(gateway, shop, code, desired)


@router.get("")
async def legacy_proxy(
    shop: str | None = Query(default=None),
    discount_set_id: str | None = Query(default=None, alias="discountSetID"),
    chk_discount_set_id: str | None = Query(default=None, alias="chkDiscountSetID"),
    code: str | None = Query(default=None),
    revealed_code: str | None = Query(default=None, alias="updateRevealedStatusCode"),
    desired: str | None = Query(default="1", alias="status"),
    gateway: ProxyGateway = Depends(get_gateway),
):
    """Single-endpoint form used by older widget builds; routes on which parameter is present."""
    if discount_set_id:
        return await _reveal(gateway, shop, discount_set_id)
    if chk_discount_set_id:
        return await _code_status(gateway, chk_discount_set_id, code, shop)
    if revealed_code:
        return await _revealed_status(gateway, shop, revealed_code, desired)
    return _storefront_error(Err(ErrorKind.invalid_input, "no recognised action"))
