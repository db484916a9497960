from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dependencies import get_merchant_id, get_promotion_client
from app.core.result import Err, ErrorKind
from app.db.session import get_session
from app.models.discounts import DiscountSet
from app.schemas.discounts import (
    ActivateRequest,
    BatchOutcome,
    CodeBatchRead,
    DiscountCodeRead,
    DiscountSetCreate,
    DiscountSetDetail,
    DiscountSetRead,
    DiscountSetUpdate,
)
from app.schemas.error import ErrorResponse
from app.services import batches as batch_service
from app.services import discount_sets as discount_set_service
from app.services.code_store import CodeStore
from app.services.promotion_rules import PromotionRuleClient
from app.services.set_store import SetStore

router = APIRouter(prefix="/discount-sets", tags=["discount-sets"])

_ERROR_STATUS = {
    ErrorKind.invalid_input: status.HTTP_400_BAD_REQUEST,
    ErrorKind.set_not_found: status.HTTP_404_NOT_FOUND,
    ErrorKind.code_not_found: status.HTTP_404_NOT_FOUND,
    ErrorKind.inactive: status.HTTP_409_CONFLICT,
    ErrorKind.platform_unavailable: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.store_unavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _error(err: Err) -> JSONResponse:
    payload = ErrorResponse(detail=err.detail, code=err.kind.value)
    code = _ERROR_STATUS.get(err.kind, status.HTTP_400_BAD_REQUEST)
    return JSONResponse(status_code=code, content=payload.model_dump())


async def _detail(session: AsyncSession, set_id: UUID, merchant_id: str) -> DiscountSetDetail | None:
    discount_set = await SetStore(session).get(set_id, merchant_id=merchant_id, refresh=True)
    if discount_set is None:
        return None
    counts = await CodeStore(session).counts(discount_set.id)
    return DiscountSetDetail.model_validate(discount_set).model_copy(
        update={
            "codes_total": counts.total,
            "codes_revealed": counts.revealed,
            "codes_used": counts.used,
            "batches": [CodeBatchRead.model_validate(b) for b in discount_set.batches],
        }
    )


@router.post("", response_model=DiscountSetDetail, status_code=status.HTTP_201_CREATED)
async def create_discount_set(
    payload: DiscountSetCreate,
    merchant_id: str = Depends(get_merchant_id),
    client: PromotionRuleClient = Depends(get_promotion_client),
    session: AsyncSession = Depends(get_session),
):
    outcome = await discount_set_service.create_discount_set(session, client, merchant_id, payload)
    created = outcome.value if outcome.ok else outcome.data
    if created is None:
        return _error(outcome)
    detail = await _detail(session, created.set_id, merchant_id)
    if not outcome.ok:
        # The set and its codes exist; the batch waits for a retry.
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=detail.model_dump(mode="json"))
    return detail


@router.get("", response_model=list[DiscountSetRead])
async def list_discount_sets(
    merchant_id: str = Depends(get_merchant_id),
    session: AsyncSession = Depends(get_session),
) -> list[DiscountSet]:
    return await SetStore(session).list_for_merchant(merchant_id)


@router.get("/{set_id}", response_model=DiscountSetDetail)
async def get_discount_set(
    set_id: UUID,
    merchant_id: str = Depends(get_merchant_id),
    session: AsyncSession = Depends(get_session),
):
    detail = await _detail(session, set_id, merchant_id)
    if detail is None:
        return _error(Err(ErrorKind.set_not_found, "Discount set not found"))
    return detail


@router.get("/{set_id}/codes", response_model=list[DiscountCodeRead])
async def list_codes(
    set_id: UUID,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    merchant_id: str = Depends(get_merchant_id),
    session: AsyncSession = Depends(get_session),
):
    discount_set = await SetStore(session).get(set_id, merchant_id=merchant_id)
    if discount_set is None:
        return _error(Err(ErrorKind.set_not_found, "Discount set not found"))
    return await CodeStore(session).list_for_set(discount_set.id, limit=limit, offset=offset)


@router.patch("/{set_id}", response_model=DiscountSetDetail)
async def update_discount_set(
    set_id: UUID,
    payload: DiscountSetUpdate,
    merchant_id: str = Depends(get_merchant_id),
    client: PromotionRuleClient = Depends(get_promotion_client),
    session: AsyncSession = Depends(get_session),
):
    outcome = await discount_set_service.update_discount_set(session, client, merchant_id, set_id, payload)
    if not outcome.ok:
        return _error(outcome)
    return await _detail(session, set_id, merchant_id)


@router.post("/{set_id}/deactivate", response_model=DiscountSetDetail)
async def deactivate_discount_set(
    set_id: UUID,
    merchant_id: str = Depends(get_merchant_id),
    client: PromotionRuleClient = Depends(get_promotion_client),
    session: AsyncSession = Depends(get_session),
):
    outcome = await discount_set_service.deactivate(session, client, merchant_id, set_id)
    if not outcome.ok:
        return _error(outcome)
    return await _detail(session, set_id, merchant_id)


@router.post("/{set_id}/activate", response_model=DiscountSetDetail)
async def activate_discount_set(
    set_id: UUID,
    payload: ActivateRequest | None = None,
    merchant_id: str = Depends(get_merchant_id),
    client: PromotionRuleClient = Depends(get_promotion_client),
    session: AsyncSession = Depends(get_session),
):
    ends_at = payload.ends_at if payload else None
    outcome = await discount_set_service.activate(session, client, merchant_id, set_id, ends_at=ends_at)
    if not outcome.ok:
        return _error(outcome)
    return await _detail(session, set_id, merchant_id)


@router.delete("/{set_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_discount_set(
    set_id: UUID,
    merchant_id: str = Depends(get_merchant_id),
    client: PromotionRuleClient = Depends(get_promotion_client),
    session: AsyncSession = Depends(get_session),
):
    outcome = await discount_set_service.delete(session, client, merchant_id, set_id)
    if not outcome.ok and outcome.kind == ErrorKind.set_not_found:
        return _error(outcome)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{set_id}/batches/{batch_id}/retry", response_model=BatchOutcome)
async def retry_batch(
    set_id: UUID,
    batch_id: UUID,
    merchant_id: str = Depends(get_merchant_id),
    client: PromotionRuleClient = Depends(get_promotion_client),
    session: AsyncSession = Depends(get_session),
):
    discount_set = await SetStore(session).get(set_id, merchant_id=merchant_id)
    if discount_set is None:
        return _error(Err(ErrorKind.set_not_found, "Discount set not found"))
    outcome = await batch_service.retry_batch_sync(session, client, batch_id, merchant_id=merchant_id)
    if not outcome.ok:
        return _error(outcome)
    result = outcome.value
    if result.batch.set_id != discount_set.id:
        return _error(Err(ErrorKind.set_not_found, "batch not found"))
    return BatchOutcome(
        batch=CodeBatchRead.model_validate(result.batch), created=len(result.created), failures=result.failures
    )
