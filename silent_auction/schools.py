import csv
import io
import logging
import time
from datetime import datetime, timedelta

import requests
from flask import current_app

from silent_auction import db
from silent_auction.validation import sanitize_search_query, sanitize_string

logger = logging.getLogger(__name__)

CACHE_KEY = 'nces_schools'
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT = 30
MAX_RESULTS = 500
MAX_IMPORT_ROWS = 20000

# Used when the directory API is unreachable: (name, city, state, postal code, street address)
FALLBACK_SCHOOLS = [
    ('Lincoln High School', 'Chicago', 'IL', '60619', '1111 E. 116th St.'),
    ('Northside High School', 'Chicago', 'IL', '60614', '4840 N. Ashland Ave.'),
    ('Perspective High School', 'Chicago', 'IL', '60647', '2345 W. Division St.'),
    ('Springfield High School', 'Springfield', 'IL', '62702', '1301 S. MacArthur Blvd.'),
    ('Lincoln High School', 'Los Angeles', 'CA', '90001', '4121 Martin Luther King Jr. Blvd.'),
    ('Franklin High School', 'Los Angeles', 'CA', '90015', '820 S. Olive St.'),
    ('Fremont High School', 'Los Angeles', 'CA', '90037', '7676 S. Normandie Ave.'),
    ('Roosevelt High School', 'Los Angeles', 'CA', '90022', '456 S. Mathews St.'),
    ('Berkeley High School', 'Berkeley', 'CA', '94704', '1980 Allston Way'),
    ('Stanford Online High School', 'Stanford', 'CA', '94305', '520 Galvez St.'),
    ('Stuyvesant High School', 'New York', 'NY', '10007', '345 Chambers St.'),
    ('University Heights High School', 'New York', 'NY', '10452', '351 E. 169th St.'),
    ('Brooklyn Technical High School', 'New York', 'NY', '11201', '29 Fort Greene Pl.'),
    ('Austin High School', 'Austin', 'TX', '78751', '1715 W. Cesar Chavez St.'),
    ('James Madison High School', 'Houston', 'TX', '77003', '3210 Bellfort St.'),
    ('Lincoln High School', 'Dallas', 'TX', '75220', '3601 South Westmoreland Rd.'),
    ('Titusville High School', 'Titusville', 'FL', '32780', '2635 S. Washington Ave.'),
    ('Lincoln High School', 'Miami', 'FL', '33127', '141 W. 41st St.'),
    ('Boston Latin School', 'Boston', 'MA', '02115', '78 Avenue Louis Pasteur'),
    ('Newton North High School', 'Newtonville', 'MA', '02460', '360 Watertown St.'),
    ('Central High School', 'Philadelphia', 'PA', '19103', '1700 W. Poplar St.'),
    ('Thomas Jefferson University High School', 'Philadelphia', 'PA', '19148', '4410 Frankford Ave.'),
    ('Thomas Jefferson High School', 'Columbus', 'OH', '43224', '4400 Refugee Rd.'),
    ('Cleveland High School', 'Cleveland', 'OH', '44103', '7000 Euclid Ave.'),
    ('Franklin High School', 'Seattle', 'WA', '98144', '3013 S. Mount Baker Blvd.'),
    ('Mercer Island High School', 'Mercer Island', 'WA', '98040', '9100 SE 42nd St.'),
    ('Northside High School', 'Atlanta', 'GA', '30309', '1256 Walnut Street'),
    ('Marietta High School', 'Marietta', 'GA', '30060', '1171 Cobb Parkway'),
    ('Grady High School', 'Atlanta', 'GA', '30307', '130 Courtland Street'),
    ('Lakeside High School', 'Atlanta', 'GA', '30317', '2401 Lakeside Drive'),
    ('Dunwoody High School', 'Dunwoody', 'GA', '30338', '5600 Vermack Road'),
    ('Wheeler High School', 'Marietta', 'GA', '30062', '1451 Roswell Street'),
    ('Roswell High School', 'Roswell', 'GA', '30075', '11605 Jones Bridge Road'),
    ('Woodstock High School', 'Woodstock', 'GA', '30189', '7710 Woodstock Lane'),
    ('Richmond Hill High School', 'Richmond Hill', 'GA', '31324', '4125 Timber Creek Drive'),
    ('Savannah Arts Academy', 'Savannah', 'GA', '31405', '2 E. 52nd Street'),
    ('Central High School', 'Nashville', 'TN', '37203', '2501 Blakemore Avenue'),
    ('Germantown High School', 'Nashville', 'TN', '37211', '1101 Whites Creek Pike'),
    ('Whitehaven High School', 'Memphis', 'TN', '38116', '1836 Elvis Presley Boulevard'),
    ('Panther Creek High School', 'Cary', 'NC', '27519', '1000 Panther Lane'),
    ('Northern High School', 'Durham', 'NC', '27701', '1707 Fayetteville Street'),
    ('Laney High School', 'Wilmington', 'NC', '28401', '2410 South 16th Street'),
    ('Richland Northeast High School', 'Columbia', 'SC', '29223', '10701 Two Notch Road'),
    ('Summerville High School', 'Summerville', 'SC', '29483', '500 Old Trolley Road'),
    ('Beaufort High School', 'Beaufort', 'SC', '29902', "611 Lady's Island Road"),
    ('Auburn High School', 'Auburn', 'AL', '36830', '301 West Samford Avenue'),
    ('Vestavia Hills High School', 'Birmingham', 'AL', '35216', '2 Warrior Lane'),
    ('Hoover High School', 'Hoover', 'AL', '35226', '100 Stadium Drive'),
]


def _school(name, city, state, postal_code=None, address_line1=None, district=None):
    return {
        'name': name,
        'city': city,
        'state_province': (state or '').upper(),
        'postal_code': postal_code,
        'address_line1': address_line1,
        'district': district,
    }


def fallback_schools(state=None):
    schools = [_school(name, city, st, postal, address) for name, city, st, postal, address in FALLBACK_SCHOOLS]
    return filter_schools(schools, state=state)


def filter_schools(schools, state=None, city=None, search=None):
    state = (state or '').upper()
    city = (city or '').lower()
    search = (search or '').lower()
    result = []
    for school in schools:
        if state and school['state_province'] != state:
            continue
        if city and school['city'].lower() != city:
            continue
        if search and search not in school['name'].lower() and search not in school['city'].lower():
            continue
        result.append(school)
    return result


def normalize_record(record):
    """Maps a directory API record onto our school columns, or None if it lacks the essentials."""
    name = record.get('name') or record.get('school_name')
    city = record.get('city')
    state = record.get('state') or record.get('state_province')
    if not (name and city and state):
        return None
    return _school(sanitize_string(name), sanitize_string(city, 128), sanitize_string(state, 32),
                   record.get('zip') or record.get('postal_code'),
                   record.get('address') or record.get('address_line1'), record.get('district'))


def fetch_from_api(state=None, limit=MAX_RESULTS):
    """Pulls schools from the public directory API with retries. Returns None when every attempt fails."""
    url = current_app.config['SCHOOL_DATA_API_URL']
    params = {'limit': limit}
    if state:
        params['state'] = state.upper()
    headers = {'User-Agent': 'Silent-Auction-Gallery/1.0', 'Accept': 'application/json'}

    last_error = None
    for attempt in range(1, MAX_RETRIES + 1):
        try:
            logger.info(f"📥 Fetching schools from directory API (attempt {attempt}/{MAX_RETRIES})")
            response = requests.get(url, params=params, headers=headers, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
            payload = response.json()
            records = payload.get('data', []) if isinstance(payload, dict) else payload
            schools = [s for s in (normalize_record(r) for r in records) if s]
            logger.info(f"✅ Fetched {len(schools)} schools")
            return schools
        except (requests.RequestException, ValueError) as e:
            last_error = e
            if attempt < MAX_RETRIES:
                delay = INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1))
                logger.warning(f"School API request failed ({e}); retrying in {delay:.0f}s")
                time.sleep(delay)

    logger.error(f"❌ School API fetch failed after all retries: {last_error}")
    return None


def _cache_key(state):
    return f"{CACHE_KEY}:{(state or 'ALL').upper()}"


def cache_is_valid(cursor, state, now, max_age_hours):
    cursor.execute('SELECT last_updated FROM school_data_cache WHERE id = %s', (_cache_key(state),))
    row = cursor.fetchone()
    return bool(row) and row['last_updated'] is not None and row['last_updated'] > now - timedelta(hours=max_age_hours)


def store_schools(cursor, schools, state, now):
    for school in schools:
        cursor.execute('''INSERT INTO schools (name, district, address_line1, city, state_province, postal_code,
                            account_status, created_at)
                          VALUES (%s, %s, %s, %s, %s, %s, 'ACTIVE', %s)
                          ON DUPLICATE KEY UPDATE
                            postal_code = COALESCE(VALUES(postal_code), postal_code),
                            address_line1 = COALESCE(VALUES(address_line1), address_line1),
                            district = COALESCE(VALUES(district), district)''',
                       (school['name'], school.get('district'), school.get('address_line1'), school['city'],
                        school['state_province'], school.get('postal_code'), now))
    cursor.execute('''INSERT INTO school_data_cache (id, total_count, last_updated) VALUES (%s, %s, %s)
                      ON DUPLICATE KEY UPDATE total_count = VALUES(total_count), last_updated = VALUES(last_updated)''',
                   (_cache_key(state), len(schools), now))
    logger.info(f"✅ Cached {len(schools)} schools")


def query_schools(cursor, state=None, city=None, search=None, limit=MAX_RESULTS):
    clauses, params = ["account_status = 'ACTIVE'"], []
    if state:
        clauses.append('state_province = %s')
        params.append(state.upper())
    if city:
        clauses.append('city = %s')
        params.append(city)
    search = sanitize_search_query(search)
    if search:
        clauses.append('(name LIKE %s OR city LIKE %s)')
        params.extend([f'%{search}%', f'%{search}%'])
    params.append(min(int(limit), MAX_RESULTS))
    cursor.execute(f'''SELECT id, name, district, address_line1, city, state_province, postal_code FROM schools
                       WHERE {' AND '.join(clauses)} ORDER BY name ASC LIMIT %s''', tuple(params))
    return cursor.fetchall()


def collect_schools(state=None):
    """Returns (schools, source) from the directory API, or from the fallback list when it is down."""
    schools = fetch_from_api(state)
    if schools:
        return schools, 'api'
    logger.warning("⚠️  Falling back to hardcoded school data")
    return fallback_schools(state), 'fallback'


def refresh_schools(state=None, now=None):
    """Reloads the cache for state. The remote fetch runs before a connection is taken from the pool."""
    now = now or datetime.now()
    schools, source = collect_schools(state)
    if schools:
        with db.transaction() as c:
            store_schools(c, schools, state, now)
    return source


def get_schools(state=None, city=None, search=None, limit=MAX_RESULTS, force_refresh=False, now=None):
    now = now or datetime.now()
    fresh = False
    if not force_refresh:
        with db.transaction() as c:
            fresh = cache_is_valid(c, state, now, current_app.config['SCHOOL_DATA_CACHE_HOURS'])
    if fresh:
        logger.info('✅ Using cached school data')
    else:
        refresh_schools(state, now)
    with db.transaction() as c:
        return query_schools(c, state, city, search, limit)


STATES_SQL = '''SELECT state_province AS state, COUNT(*) AS school_count FROM schools
                 WHERE account_status = 'ACTIVE' GROUP BY state_province ORDER BY state_province'''


def get_states():
    with db.transaction() as c:
        c.execute(STATES_SQL)
        states = c.fetchall()
    if states:
        return states
    refresh_schools()
    with db.transaction() as c:
        c.execute(STATES_SQL)
        return c.fetchall()


def parse_school_csv(text):
    """Reads a school list export. Returns (records, skipped, errors)."""
    reader = csv.DictReader(io.StringIO(text))
    headers = {h.strip() for h in (reader.fieldnames or [])}
    missing = {'School Name', 'City', 'State'} - headers
    if missing:
        return [], 0, [f"Missing required columns: {', '.join(sorted(missing))}"]

    records, skipped, errors = [], 0, []
    for row_number, row in enumerate(reader, start=2):
        if row_number - 1 > MAX_IMPORT_ROWS:
            errors.append(f'File has more than {MAX_IMPORT_ROWS} rows; the rest were ignored')
            break
        row = {(k or '').strip(): (v or '').strip() for k, v in row.items()}
        name, city, state = row.get('School Name'), row.get('City'), row.get('State')
        if not (name and city and state) or name == 'School Name':
            skipped += 1
            continue
        if len(state) != 2 or not state.isalpha():
            errors.append(f'Row {row_number}: invalid state "{state}"')
            continue
        records.append(_school(sanitize_string(name), sanitize_string(city, 128), state,
                               row.get('Postcode') or None, row.get('Address') or None, row.get('District') or None))
    return records, skipped, errors


def import_schools_csv(cursor, text):
    records, skipped, errors = parse_school_csv(text)
    imported = duplicates = 0
    now = datetime.now()
    for school in records:
        cursor.execute('''INSERT IGNORE INTO schools (name, district, address_line1, city, state_province,
                            postal_code, account_status, created_at)
                          VALUES (%s, %s, %s, %s, %s, %s, 'ACTIVE', %s)''',
                       (school['name'], school['district'], school['address_line1'], school['city'],
                        school['state_province'], school['postal_code'], now))
        if cursor.rowcount == 1:
            imported += 1
        else:
            duplicates += 1
    logger.info(f"School import: {imported} imported, {duplicates} duplicates, {skipped} skipped")
    return {'imported': imported, 'duplicates': duplicates, 'skipped': skipped, 'errors': errors}
