from contextlib import contextmanager
from datetime import datetime, timedelta

import pytest
import requests

from silent_auction import db, schools

NOW = datetime(2026, 3, 14, 12, 0, 0)


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f'{self.status_code} error')

    def json(self):
        return self._payload


@pytest.fixture
def no_sleep(monkeypatch):
    delays = []
    monkeypatch.setattr(schools.time, 'sleep', delays.append)
    return delays


def test_fallback_filters_by_state():
    georgia = schools.fallback_schools('ga')
    assert georgia
    assert {s['state_province'] for s in georgia} == {'GA'}


def test_filter_schools():
    found = schools.filter_schools(schools.fallback_schools(), state='CA', search='berkeley')
    assert [s['name'] for s in found] == ['Berkeley High School']
    assert len(schools.filter_schools(schools.fallback_schools(), city='chicago')) == 3


def test_normalize_record():
    record = {'school_name': 'Test High', 'city': 'Macon', 'state': 'ga', 'zip': '31201'}
    assert schools.normalize_record(record) == {'name': 'Test High', 'city': 'Macon', 'state_province': 'GA',
                                                'postal_code': '31201', 'address_line1': None, 'district': None}
    assert schools.normalize_record({'name': 'No City'}) is None


def test_fetch_retries_with_backoff(app_context, monkeypatch, no_sleep):
    calls = []

    def fake_get(url, **kwargs):
        calls.append(kwargs['params'])
        if len(calls) < 3:
            raise requests.ConnectionError('down')
        return FakeResponse({'data': [{'name': 'Test High', 'city': 'Macon', 'state': 'GA'}]})

    monkeypatch.setattr(schools.requests, 'get', fake_get)
    result = schools.fetch_from_api('ga')

    assert [s['name'] for s in result] == ['Test High']
    assert calls[0] == {'limit': schools.MAX_RESULTS, 'state': 'GA'}
    assert no_sleep == [1.0, 2.0]


def test_fetch_gives_up_after_max_retries(app_context, monkeypatch, no_sleep):
    monkeypatch.setattr(schools.requests, 'get', lambda url, **kwargs: FakeResponse({}, status_code=503))
    assert schools.fetch_from_api() is None
    assert len(no_sleep) == schools.MAX_RETRIES - 1


@pytest.fixture
def transactions(monkeypatch, make_cursor):
    """Hands out one scripted cursor per transaction, in order."""
    opened = []

    def install(*cursors):
        queue = list(cursors)

        @contextmanager
        def transaction():
            cursor = queue.pop(0) if queue else make_cursor()
            opened.append(cursor)
            yield cursor

        monkeypatch.setattr(db, 'transaction', transaction)
        return opened
    return install


def test_refresh_falls_back_when_api_down(app_context, monkeypatch, make_cursor, transactions):
    monkeypatch.setattr(schools, 'fetch_from_api', lambda state=None: None)
    cursor = make_cursor()
    transactions(cursor)
    assert schools.refresh_schools('TN', now=NOW) == 'fallback'
    assert len(cursor.statements('INSERT INTO schools')) == 3
    [(_, params)] = [(sql, p) for sql, p in cursor.executed if sql.startswith('INSERT INTO school_data_cache')]
    assert params == ('nces_schools:TN', 3, NOW)


def test_remote_fetch_happens_outside_a_transaction(app_context, monkeypatch, transactions):
    opened = transactions()

    def fetch(state=None):
        assert opened == []
        return [schools._school('Grady High School', 'Atlanta', 'GA')]

    monkeypatch.setattr(schools, 'fetch_from_api', fetch)
    assert schools.refresh_schools('GA', now=NOW) == 'api'
    assert len(opened) == 1


def test_get_schools_uses_fresh_cache(app_context, monkeypatch, make_cursor, transactions):
    monkeypatch.setattr(schools, 'refresh_schools', lambda *args: pytest.fail('cache should be used'))
    rows = [{'id': 1, 'name': 'Grady High School'}]
    transactions(make_cursor(fetchone=[{'last_updated': NOW - timedelta(hours=1)}]), make_cursor(fetchall=[rows]))
    assert schools.get_schools('GA', now=NOW) == rows


def test_get_schools_refreshes_stale_cache(app_context, monkeypatch, make_cursor, transactions):
    refreshed = []
    monkeypatch.setattr(schools, 'refresh_schools', lambda state, now: refreshed.append(state))
    transactions(make_cursor(fetchone=[{'last_updated': NOW - timedelta(hours=25)}]))
    schools.get_schools('GA', now=NOW)
    assert refreshed == ['GA']


def test_forced_refresh_skips_cache_check(app_context, monkeypatch, transactions):
    refreshed = []
    monkeypatch.setattr(schools, 'refresh_schools', lambda state, now: refreshed.append(state))
    opened = transactions()
    schools.get_schools('GA', force_refresh=True, now=NOW)
    assert refreshed == ['GA']
    assert [sql for sql, _ in opened[0].executed][0].startswith('SELECT id, name')


def test_parse_school_csv():
    text = ('School Name,City,State,Postcode,District\n'
            'Grady High School,Atlanta,GA,30307,Atlanta Public Schools\n'
            'School Name,City,State,,\n'
            'Nameless,,GA,,\n'
            'Bad State High,Somewhere,Georgia,,\n')
    records, skipped, errors = schools.parse_school_csv(text)
    assert [r['name'] for r in records] == ['Grady High School']
    assert records[0]['district'] == 'Atlanta Public Schools'
    assert skipped == 2
    assert errors == ['Row 5: invalid state "Georgia"']


def test_parse_school_csv_missing_columns():
    assert schools.parse_school_csv('Name,Town\nA,B\n') == ([], 0, ['Missing required columns: City, School Name, State'])


def test_import_counts_duplicates(make_cursor):
    cursor = make_cursor(rowcount=0)
    result = schools.import_schools_csv(cursor, 'School Name,City,State\nGrady High School,Atlanta,GA\n')
    assert result == {'imported': 0, 'duplicates': 1, 'skipped': 0, 'errors': []}
