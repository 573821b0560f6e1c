"""
Reconciler — 照合スイープ

定期的に次の注文を拾って確定させる:
  - キャプチャ結果が不明で照合待ちになっている注文
  - 一定時間キャプチャされずに Pending のままの注文（放棄チェックアウト）
  - Failed なのに引き当てが残っている注文（補償の途中で中断したもの）

引き当てを無期限に保持しないためのバックグラウンド処理。
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import sessionmaker

from ..order.queries import list_failed_since, list_pending_before
from ..payment.records import list_needing_reconcile
from .orchestrator import CheckoutOrchestrator, CheckoutState

logger = logging.getLogger(__name__)

# Failed になってからこの時間内の注文だけ残りの引き当てを確認する
REPAIR_WINDOW = timedelta(hours=1)


class Reconciler:
    def __init__(
        self,
        session_factory: sessionmaker,
        orchestrator: CheckoutOrchestrator,
        *,
        abandon_after_seconds: int = 900,
    ):
        self.session_factory = session_factory
        self.orchestrator = orchestrator
        self.abandon_after = timedelta(seconds=abandon_after_seconds)

    async def sweep(self) -> dict[str, int]:
        """1回分の照合。結果の件数を返す。"""
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            flagged = await list_needing_reconcile(session)
            abandoned = set(await list_pending_before(session, now - self.abandon_after))
            failed = await list_failed_since(session, now - REPAIR_WINDOW)

        counts = {"paid": 0, "failed": 0, "pending": 0, "released": 0}
        for order_id in dict.fromkeys([*flagged, *sorted(abandoned)]):
            try:
                result = await self.orchestrator.reconcile_order(
                    order_id, abandoned=order_id in abandoned
                )
            except Exception:
                logger.exception("Failed to reconcile order %s", order_id)
                continue
            if result.state is CheckoutState.PAID:
                counts["paid"] += 1
            elif result.state is CheckoutState.FAILED:
                counts["failed"] += 1
            else:
                counts["pending"] += 1

        for order_id in failed:
            try:
                counts["released"] += await self.orchestrator.release_outstanding(
                    order_id
                )
            except Exception:
                logger.exception("Failed to repair reservations of order %s", order_id)

        if any(counts.values()):
            logger.info("Reconciliation sweep: %s", counts)
        return counts


async def run_reconciler(
    reconciler: Reconciler,
    interval_seconds: float,
    shutdown_event: asyncio.Event,
) -> None:
    """
    shutdown_event がセットされるまで interval_seconds ごとに sweep する。
    1回の失敗でループは止めない。
    """
    logger.info("Reconciler started (interval=%ss)", interval_seconds)
    while not shutdown_event.is_set():
        try:
            await reconciler.sweep()
        except Exception:
            logger.exception("Reconciliation sweep failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
    logger.info("Reconciler stopped")
