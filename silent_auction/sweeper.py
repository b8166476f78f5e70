"""Periodic auction housekeeping run as a Socket.IO background task."""
import logging
from datetime import datetime

import mysql.connector

from silent_auction import auctions, db, lifecycle, notifications, realtime
from silent_auction.errors import ServiceError
from silent_auction.extensions import socketio

logger = logging.getLogger(__name__)


def run_sweep(app, now=None):
    """Starts due auctions, closes expired ones and sends ending-soon warnings. One transaction per auction."""
    now = now or datetime.now()
    summary = {'started': [], 'closed': [], 'ending_soon': [], 'emails_sent': 0, 'emails_failed': 0}

    with app.app_context():
        with db.transaction() as c:
            start_ids = auctions.due_to_start(c, now)
            close_ids = auctions.due_to_close(c, now)
            soon_ids = auctions.due_ending_soon(c, now, app.config['ENDING_SOON_MINUTES'])

        for auction_id in start_ids:
            try:
                with db.transaction() as c:
                    auctions.start_auction(c, auction_id, now=now)
            except (ServiceError, mysql.connector.Error) as e:
                logger.warning(f"Sweep could not start auction {auction_id}: {e}")
                continue
            summary['started'].append(auction_id)
            realtime.broadcast_auction_status(auction_id, lifecycle.LIVE)

        for auction_id in close_ids:
            try:
                with db.transaction() as c:
                    result = auctions.close_auction(c, auction_id, now=now)
            except (ServiceError, mysql.connector.Error) as e:
                logger.warning(f"Sweep could not close auction {auction_id}: {e}")
                continue
            if result.get('skipped') or result.get('already_closed'):
                continue
            summary['closed'].append(auction_id)
            realtime.broadcast_auction_status(auction_id, lifecycle.ENDED,
                                              total_revenue=result['total_revenue'],
                                              sold=len(result['winners']))

        for auction_id in soon_ids:
            try:
                with db.transaction() as c:
                    ends_at = auctions.notify_ending_soon(c, auction_id, now)
            except (ServiceError, mysql.connector.Error) as e:
                logger.warning(f"Sweep could not send ending-soon notice for auction {auction_id}: {e}")
                continue
            if ends_at:
                summary['ending_soon'].append(auction_id)
                realtime.broadcast_ending_soon(auction_id, ends_at)

        with db.transaction() as c:
            summary['emails_sent'], summary['emails_failed'] = notifications.deliver_pending_emails(c)

    if summary['started'] or summary['closed']:
        logger.info(f"Sweep started {summary['started']} and closed {summary['closed']}")
    return summary


def sweep_loop(app):
    interval = app.config['AUCTION_SWEEP_SECONDS']
    logger.info(f"🚀 Auction sweep running every {interval}s")
    while True:
        try:
            run_sweep(app)
        except Exception:
            # Keep the loop alive; the next pass retries.
            logger.exception("Auction sweep failed")
        socketio.sleep(interval)


def start_sweeper(app):
    return socketio.start_background_task(sweep_loop, app)
