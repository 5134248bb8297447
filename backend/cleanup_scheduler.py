import atexit
from datetime import datetime, timedelta
from typing import Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from order_utils import PAYMENT_BANK_TRANSFER

STALE_ONLINE_ORDER_MINUTES = 15
STALE_BANK_TRANSFER_HOURS = 24
INITIAL_RUN_DELAY_SECONDS = 5


def purge_abandoned_orders(orders_collection, now: Optional[datetime] = None) -> Dict[str, int]:
    """Delete unpaid orders that were never completed.

    Online (Stripe) checkouts are dropped after 15 minutes, bank transfers are
    given 24 hours for the payment proof to arrive.
    """
    current = now or datetime.utcnow()
    online_result = orders_collection.delete_many(
        {
            "payment": False,
            "payment_method": {"$ne": PAYMENT_BANK_TRANSFER},
            "created_at": {"$lt": current - timedelta(minutes=STALE_ONLINE_ORDER_MINUTES)},
        }
    )
    bank_result = orders_collection.delete_many(
        {
            "payment": False,
            "payment_method": PAYMENT_BANK_TRANSFER,
            "created_at": {"$lt": current - timedelta(hours=STALE_BANK_TRANSFER_HOURS)},
        }
    )
    return {
        "online_deleted": online_result.deleted_count,
        "bank_transfer_deleted": bank_result.deleted_count,
        "deleted_count": online_result.deleted_count + bank_result.deleted_count,
    }


def start_cleanup_scheduler(app, orders_collection, interval_minutes: int = 15):
    def run_cleanup():
        try:
            counts = purge_abandoned_orders(orders_collection)
        except Exception as exc:
            app.logger.error("Scheduled order cleanup failed: %s", exc)
            return
        if counts["deleted_count"]:
            app.logger.info(
                "Cleanup removed %s abandoned orders (%s online, %s bank transfer)",
                counts["deleted_count"],
                counts["online_deleted"],
                counts["bank_transfer_deleted"],
            )

    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        run_cleanup,
        "interval",
        minutes=max(1, int(interval_minutes)),
        id="abandoned_order_cleanup",
        replace_existing=True,
    )
    scheduler.add_job(
        run_cleanup,
        "date",
        run_date=datetime.now() + timedelta(seconds=INITIAL_RUN_DELAY_SECONDS),
        id="abandoned_order_cleanup_startup",
    )
    scheduler.start()

    def shutdown_scheduler():
        if scheduler.running:
            scheduler.shutdown(wait=False)

    atexit.register(shutdown_scheduler)
    app.logger.info(
        "Abandoned order cleanup scheduled every %s minutes", interval_minutes
    )
    return scheduler
