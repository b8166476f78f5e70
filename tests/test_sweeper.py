from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal

import pytest

from silent_auction import auctions, db, notifications, sweeper
from silent_auction.errors import NotFound, ValidationError

NOW = datetime(2026, 3, 14, 12, 0, 0)


@pytest.fixture
def scheduled(monkeypatch, make_cursor):
    @contextmanager
    def transaction():
        yield make_cursor()

    monkeypatch.setattr(db, 'transaction', transaction)
    monkeypatch.setattr(auctions, 'due_to_start', lambda c, now: [1, 2])
    monkeypatch.setattr(auctions, 'due_to_close', lambda c, now: [3, 4])
    monkeypatch.setattr(auctions, 'due_ending_soon', lambda c, now, minutes: [5])
    monkeypatch.setattr(notifications, 'deliver_pending_emails', lambda c: (2, 1))


def test_sweep_starts_closes_and_warns(app, scheduled, monkeypatch, emitted):
    def start(c, auction_id, now):
        if auction_id == 2:
            raise ValidationError('Cannot start auction without approved artwork')

    def close(c, auction_id, now):
        if auction_id == 4:
            return {'auction_id': 4, 'already_closed': False, 'skipped': True, 'winners': []}
        return {'auction_id': auction_id, 'already_closed': False, 'winners': [{'artwork_id': 1}],
                'total_revenue': Decimal('60.00'), 'platform_fee_total': Decimal('6.00')}

    monkeypatch.setattr(auctions, 'start_auction', start)
    monkeypatch.setattr(auctions, 'close_auction', close)
    monkeypatch.setattr(auctions, 'notify_ending_soon', lambda c, auction_id, now: NOW)

    summary = sweeper.run_sweep(app, now=NOW)

    assert summary == {'started': [1], 'closed': [3], 'ending_soon': [5], 'emails_sent': 2, 'emails_failed': 1}
    events = [(event, data['auction_id']) for event, data, _ in emitted]
    assert events == [('auction_status_change', 1), ('auction_status_change', 3), ('auction_ending_soon', 5)]
    assert emitted[1][1]['total_revenue'] == '60.00'


def test_failed_ending_soon_notice_does_not_stop_the_pass(app, scheduled, monkeypatch, emitted):
    monkeypatch.setattr(auctions, 'due_to_start', lambda c, now: [])
    monkeypatch.setattr(auctions, 'due_to_close', lambda c, now: [])
    monkeypatch.setattr(auctions, 'due_ending_soon', lambda c, now, minutes: [5, 6])

    def notify(c, auction_id, now):
        if auction_id == 5:
            raise NotFound('Auction not found')
        return NOW

    monkeypatch.setattr(auctions, 'notify_ending_soon', notify)

    summary = sweeper.run_sweep(app, now=NOW)

    assert summary['ending_soon'] == [6]
    assert summary['emails_sent'] == 2
    assert [(event, data['auction_id']) for event, data, _ in emitted] == [('auction_ending_soon', 6)]
