from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.core import metrics
from app.core.config import settings
from app.core.result import Result
from app.models.discounts import BatchKind, DiscountSet
from app.services import batches
from app.services.batches import BatchResult
from app.services.promotion_rules import PromotionRuleClient
from app.services.set_store import SetStore

logger = logging.getLogger(__name__)


class ReplenishmentController:
    """Tops up a set's code pool once its revealed ratio reaches the threshold.

    A replenishment fires at most once per exhaustion event: the winner is whoever
    advances `replenish_epoch` from the value it observed.
    """

    def __init__(
        self,
        session: AsyncSession,
        client: PromotionRuleClient | None = None,
        *,
        threshold: float | None = None,
        batch_size: int | None = None,
    ) -> None:
        self.session = session
        self.client = client
        self.threshold = float(threshold if threshold is not None else settings.replenish_threshold)
        self.batch_size = max(1, int(batch_size if batch_size is not None else settings.replenish_batch_size))

    @staticmethod
    def revealed_ratio(discount_set: DiscountSet, revealed_count: int) -> float:
        quantity = int(discount_set.quantity or 0)
        if quantity <= 0:
            return 0.0
        return revealed_count / quantity

    def needs_replenishment(self, discount_set: DiscountSet, revealed_count: int) -> bool:
        if not discount_set.is_active or discount_set.deleted_at is not None:
            return False
        return self.revealed_ratio(discount_set, revealed_count) >= self.threshold

    async def replenish(self, discount_set: DiscountSet, *, observed_epoch: int) -> Result[BatchResult] | None:
        """Claim the exhaustion event and create the supplemental batch; None when another caller won."""
        if self.client is None:
            raise ValueError("replenishment requires a promotion rule client")
        claimed = await SetStore(self.session).claim_replenishment(
            discount_set.id, observed_epoch=observed_epoch, amount=self.batch_size
        )
        if not claimed:
            await self.session.commit()
            logger.info(
                "replenishment_skipped",
                extra={"set_id": str(discount_set.id), "observed_epoch": observed_epoch},
            )
            return None

        await self.session.commit()
        metrics.record_replenishment()
        logger.info(
            "replenishment_triggered",
            extra={
                "merchant_id": discount_set.merchant_id,
                "set_id": str(discount_set.id),
                "observed_epoch": observed_epoch,
                "batch_size": self.batch_size,
            },
        )
        return await batches.create_batch(
            self.session, self.client, discount_set, count=self.batch_size, kind=BatchKind.supplemental
        )
