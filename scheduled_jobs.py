"""
Scheduled Jobs Module
Periodic escrow auto-release and notification housekeeping
"""

import os
from datetime import datetime, timedelta
import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def auto_release_payments(app, db, Order, release_order_funds, after_release=None):
    """
    Release escrow for orders the buyer never acted on

    Delivered, paid orders whose delivery is older than AUTO_RELEASE_HOURS and
    which carry no open dispute are completed and paid out. A failure on one
    order is logged and the sweep moves on to the next.

    Args:
        app: Flask application instance
        db: SQLAlchemy database instance
        Order: Order model
        release_order_funds: callable(order, note) performing the release
        after_release: optional callable(order) run after each committed release

    Returns:
        int: number of orders that were due for release
    """
    with app.app_context():
        hours = int(os.environ.get('AUTO_RELEASE_HOURS', 72))
        cutoff = datetime.utcnow() - timedelta(hours=hours)

        due_orders = Order.query.filter(
            Order.status == 'delivered',
            Order.payment_status == 'paid',
            Order.delivered_at <= cutoff,
            Order.dispute_status.is_(None)
        ).all()

        logger.info(f"Auto-release sweep: {len(due_orders)} orders delivered before {cutoff}")

        for order in due_orders:
            try:
                release_order_funds(order, f'Payment automatically released after {hours} hours')
                db.session.commit()
                logger.info(f"Auto-released payment for order {order.id}")
                if after_release:
                    after_release(order)
            except Exception as e:
                db.session.rollback()
                logger.error(f"Auto-release failed for order {order.id}: {str(e)}")

        return len(due_orders)


def cleanup_old_notifications(app, db, Notification):
    """Delete notifications older than NOTIFICATION_RETENTION_DAYS; returns the number removed"""
    with app.app_context():
        try:
            days = int(os.environ.get('NOTIFICATION_RETENTION_DAYS', 30))
            cutoff = datetime.utcnow() - timedelta(days=days)
            deleted = Notification.query.filter(Notification.created_at < cutoff).delete(synchronize_session=False)
            db.session.commit()
            logger.info(f"Removed {deleted} notifications older than {days} days")
            return deleted
        except Exception as e:
            db.session.rollback()
            logger.error(f"Notification cleanup failed: {str(e)}")
            return 0


def init_scheduler(app, db, Order, Notification, release_order_funds, after_release=None):
    """
    Initialize APScheduler with all scheduled jobs

    Returns:
        scheduler: Configured APScheduler instance
    """
    from apscheduler.schedulers.background import BackgroundScheduler
    from apscheduler.triggers.cron import CronTrigger
    from apscheduler.triggers.interval import IntervalTrigger
    import atexit

    scheduler = BackgroundScheduler(daemon=True)

    timezone = os.getenv('TIMEZONE', 'UTC')

    scheduler.add_job(
        func=lambda: auto_release_payments(app, db, Order, release_order_funds, after_release),
        trigger=IntervalTrigger(hours=1, timezone=timezone),
        id='auto_release_payments',
        name='Release escrow for stale deliveries (hourly)',
        replace_existing=True
    )

    scheduler.add_job(
        func=lambda: cleanup_old_notifications(app, db, Notification),
        trigger=CronTrigger(hour=3, minute=0, timezone=timezone),
        id='cleanup_old_notifications',
        name='Remove expired notifications (3 AM)',
        replace_existing=True
    )

    scheduler.start()
    logger.info(f"Scheduler started with timezone: {timezone}")
    logger.info("Scheduled jobs:")
    logger.info("  - Escrow auto-release every hour")
    logger.info("  - Notification cleanup at 3:00 AM")

    # Shut down the scheduler when exiting the app
    atexit.register(lambda: scheduler.shutdown())

    return scheduler
