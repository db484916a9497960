from app.db.base import Base  # noqa: F401
from app.models.attribution import AttributionSource, OrderAttribution  # noqa: F401
from app.models.discounts import (  # noqa: F401
    BatchKind,
    BatchSyncStatus,
    CodeBatch,
    DiscountCode,
    DiscountSet,
    DiscountValueType,
    MinimumRequirement,
    TargetSelection,
)
from app.models.merchant import MerchantSession  # noqa: F401

__all__ = [
    "Base",
    "AttributionSource",
    "OrderAttribution",
    "BatchKind",
    "BatchSyncStatus",
    "CodeBatch",
    "DiscountCode",
    "DiscountSet",
    "DiscountValueType",
    "MinimumRequirement",
    "TargetSelection",
    "MerchantSession",
]
