import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal

import mysql.connector
from mysql.connector import pooling
from werkzeug.security import generate_password_hash

from silent_auction.errors import DatabaseUnavailable

logger = logging.getLogger(__name__)

db_pool = None


# --- Database Connection Pool ---
def init_pool(app):
    """Creates the module-wide connection pool from the app config."""
    global db_pool
    if not app.config.get('DB_ENABLED', True):
        db_pool = None
        return None

    db_config = {
        'host': app.config['DB_HOST'],
        'user': app.config['DB_USER'],
        'password': app.config['DB_PASSWORD'],
        'database': app.config['DB_DATABASE'],
    }
    try:
        logger.info("ℹ️  Attempting to create MySQL connection pool...")
        logger.info(f"    Host: {db_config['host']}")
        logger.info(f"    User: {db_config['user']}")
        logger.info(f"    Database: {db_config['database']}")
        db_pool = pooling.MySQLConnectionPool(
            pool_name="silent_auction_pool",
            pool_size=app.config['DB_POOL_SIZE'],
            **db_config
        )
        logger.info("✅ MySQL Connection Pool created successfully.")
    except mysql.connector.Error as err:
        logger.error("❌ CRITICAL: FAILED TO CREATE MYSQL CONNECTION POOL")
        logger.error(f"MySQL Error Code: {err.errno}")
        logger.error(f"MySQL Error Message: {err.msg}")
        logger.error("Is the MySQL server running, does the database exist, and do DB_USER/DB_PASSWORD match?")
        db_pool = None
    return db_pool


def get_db_connection():
    """Gets a connection from the pool."""
    if not db_pool:
        return None
    try:
        return db_pool.get_connection()
    except mysql.connector.Error as err:
        logger.error(f"❌ Error getting connection from pool: {err}")
        return None


@contextmanager
def transaction():
    """Yields a dictionary cursor inside a transaction; commits on success, rolls back on error."""
    conn = get_db_connection()
    if not conn:
        raise DatabaseUnavailable()
    c = conn.cursor(dictionary=True, buffered=True)
    try:
        conn.start_transaction()
        yield c
        conn.commit()
    except Exception:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        c.close()
        conn.close()


def ping():
    conn = get_db_connection()
    if not conn:
        return False
    try:
        conn.ping(reconnect=False)
        return True
    except mysql.connector.Error as err:
        logger.warning(f"Database ping failed: {err}")
        return False
    finally:
        conn.close()


TABLES = [
    '''CREATE TABLE IF NOT EXISTS schools (
        id INT PRIMARY KEY AUTO_INCREMENT,
        name VARCHAR(255) NOT NULL,
        district VARCHAR(255),
        address_line1 VARCHAR(255),
        city VARCHAR(128) NOT NULL,
        state_province VARCHAR(32) NOT NULL,
        postal_code VARCHAR(16),
        account_status VARCHAR(20) DEFAULT 'ACTIVE',
        created_at DATETIME,
        UNIQUE KEY uq_school_location (name, city, state_province))''',
    '''CREATE TABLE IF NOT EXISTS users (
        id INT PRIMARY KEY AUTO_INCREMENT,
        email VARCHAR(254) UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        first_name VARCHAR(100),
        last_name VARCHAR(100),
        phone VARCHAR(32),
        role VARCHAR(20) NOT NULL DEFAULT 'BIDDER',
        school_id INT,
        account_status VARCHAR(20) NOT NULL DEFAULT 'ACTIVE',
        two_fa_enabled BOOLEAN DEFAULT 0,
        two_fa_secret VARCHAR(64),
        backup_codes TEXT,
        failed_login_attempts INT DEFAULT 0,
        account_locked_until DATETIME,
        last_login DATETIME,
        created_at DATETIME,
        updated_at DATETIME,
        FOREIGN KEY(school_id) REFERENCES schools(id))''',
    '''CREATE TABLE IF NOT EXISTS payment_gateways (
        id INT PRIMARY KEY AUTO_INCREMENT,
        school_id INT,
        gateway_type VARCHAR(20) NOT NULL,
        name VARCHAR(255),
        is_active BOOLEAN DEFAULT 1,
        created_at DATETIME,
        FOREIGN KEY(school_id) REFERENCES schools(id))''',
    '''CREATE TABLE IF NOT EXISTS auctions (
        id INT PRIMARY KEY AUTO_INCREMENT,
        school_id INT NOT NULL,
        title VARCHAR(255) NOT NULL,
        description TEXT,
        auction_status VARCHAR(20) NOT NULL DEFAULT 'DRAFT',
        starts_at DATETIME NOT NULL,
        ends_at DATETIME NOT NULL,
        created_by_user_id INT,
        approved_by_user_id INT,
        approval_notes TEXT,
        payment_gateway_id INT,
        platform_fee_percentage DECIMAL(5, 2) DEFAULT 3.50,
        platform_fee_minimum DECIMAL(10, 2) DEFAULT 50.00,
        charity_beneficiary_name VARCHAR(255),
        visibility VARCHAR(20) DEFAULT 'PUBLIC',
        auto_extend_minutes INT DEFAULT 5,
        auto_extend_count INT DEFAULT 0,
        ending_soon_notified_at DATETIME,
        total_revenue DECIMAL(12, 2),
        platform_fee_total DECIMAL(12, 2),
        created_at DATETIME,
        updated_at DATETIME,
        FOREIGN KEY(school_id) REFERENCES schools(id),
        FOREIGN KEY(created_by_user_id) REFERENCES users(id))''',
    '''CREATE TABLE IF NOT EXISTS artwork (
        id INT PRIMARY KEY AUTO_INCREMENT,
        auction_id INT NOT NULL,
        created_by_user_id INT,
        title VARCHAR(255) NOT NULL,
        description TEXT,
        artist_name VARCHAR(255),
        artist_grade VARCHAR(20),
        medium VARCHAR(100),
        dimensions VARCHAR(100),
        starting_bid_amount DECIMAL(10, 2) NOT NULL,
        reserve_bid_amount DECIMAL(10, 2),
        current_bid DECIMAL(10, 2),
        current_bidder_id INT,
        bid_count INT DEFAULT 0,
        image_url TEXT,
        artwork_status VARCHAR(20) NOT NULL DEFAULT 'PENDING_APPROVAL',
        rejection_reason TEXT,
        approved_by_user_id INT,
        winner_user_id INT,
        winning_bid_amount DECIMAL(10, 2),
        created_at DATETIME,
        updated_at DATETIME,
        FOREIGN KEY(auction_id) REFERENCES auctions(id))''',
    '''CREATE TABLE IF NOT EXISTS bids (
        id INT PRIMARY KEY AUTO_INCREMENT,
        artwork_id INT NOT NULL,
        auction_id INT NOT NULL,
        bidder_user_id INT NOT NULL,
        bid_amount DECIMAL(10, 2) NOT NULL,
        bid_status VARCHAR(20) NOT NULL DEFAULT 'ACTIVE',
        ip_address VARCHAR(64),
        placed_at DATETIME,
        withdrawn_at DATETIME,
        FOREIGN KEY(artwork_id) REFERENCES artwork(id),
        FOREIGN KEY(bidder_user_id) REFERENCES users(id))''',
    '''CREATE TABLE IF NOT EXISTS transactions (
        id INT PRIMARY KEY AUTO_INCREMENT,
        auction_id INT NOT NULL,
        artwork_id INT NOT NULL,
        buyer_user_id INT NOT NULL,
        payment_gateway_id INT,
        hammer_amount DECIMAL(10, 2) NOT NULL,
        platform_fee DECIMAL(10, 2) NOT NULL,
        total_amount DECIMAL(12, 2) NOT NULL,
        transaction_status VARCHAR(20) NOT NULL,
        gateway_transaction_id VARCHAR(128),
        idempotency_key VARCHAR(64) UNIQUE,
        created_at DATETIME,
        refunded_at DATETIME)''',
    '''CREATE TABLE IF NOT EXISTS refunds (
        id INT PRIMARY KEY AUTO_INCREMENT,
        transaction_id INT NOT NULL,
        amount DECIMAL(12, 2) NOT NULL,
        reason TEXT,
        refunded_by_user_id INT,
        created_at DATETIME,
        FOREIGN KEY(transaction_id) REFERENCES transactions(id))''',
    '''CREATE TABLE IF NOT EXISTS notifications (
        id INT PRIMARY KEY AUTO_INCREMENT,
        user_id INT,
        notification_type VARCHAR(40) DEFAULT 'GENERAL',
        channel VARCHAR(10) DEFAULT 'IN_APP',
        title VARCHAR(255),
        message TEXT,
        link TEXT,
        payload TEXT,
        is_read BOOLEAN DEFAULT 0,
        delivery_status VARCHAR(20) DEFAULT 'SENT',
        attempts INT DEFAULT 0,
        last_error TEXT,
        created_at DATETIME,
        sent_at DATETIME,
        FOREIGN KEY(user_id) REFERENCES users(id))''',
    '''CREATE TABLE IF NOT EXISTS notification_preferences (
        user_id INT PRIMARY KEY,
        email_outbid BOOLEAN DEFAULT 1,
        email_auction_ending BOOLEAN DEFAULT 1,
        email_winner BOOLEAN DEFAULT 1,
        email_auction_updates BOOLEAN DEFAULT 1,
        in_app_enabled BOOLEAN DEFAULT 1,
        unsubscribed_at DATETIME,
        updated_at DATETIME,
        FOREIGN KEY(user_id) REFERENCES users(id))''',
    '''CREATE TABLE IF NOT EXISTS audit_logs (
        id INT PRIMARY KEY AUTO_INCREMENT,
        user_id INT,
        action VARCHAR(64) NOT NULL,
        resource_type VARCHAR(32),
        resource_id INT,
        details TEXT,
        ip_address VARCHAR(64),
        created_at DATETIME)''',
    '''CREATE TABLE IF NOT EXISTS admin_audit_logs (
        id INT PRIMARY KEY AUTO_INCREMENT,
        admin_id INT,
        action VARCHAR(64) NOT NULL,
        resource_type VARCHAR(32),
        resource_id INT,
        old_values TEXT,
        new_values TEXT,
        reason TEXT,
        created_at DATETIME)''',
    '''CREATE TABLE IF NOT EXISTS password_reset_tokens (
        id INT PRIMARY KEY AUTO_INCREMENT,
        user_id INT NOT NULL,
        token_hash CHAR(64) NOT NULL UNIQUE,
        expires_at DATETIME NOT NULL,
        used_at DATETIME,
        created_at DATETIME,
        FOREIGN KEY(user_id) REFERENCES users(id))''',
    '''CREATE TABLE IF NOT EXISTS registration_tokens (
        id INT PRIMARY KEY AUTO_INCREMENT,
        token CHAR(36) NOT NULL UNIQUE,
        teacher_user_id INT NOT NULL,
        school_id INT,
        student_email VARCHAR(254) NOT NULL,
        student_first_name VARCHAR(100),
        student_last_name VARCHAR(100),
        token_status VARCHAR(20) DEFAULT 'PENDING',
        expires_at DATETIME,
        used_at DATETIME,
        created_at DATETIME,
        FOREIGN KEY(teacher_user_id) REFERENCES users(id))''',
    '''CREATE TABLE IF NOT EXISTS school_data_cache (
        id VARCHAR(64) PRIMARY KEY,
        total_count INT,
        last_updated DATETIME)''',
]

INDEXES = [
    "ALTER TABLE auctions ADD INDEX idx_status_ends_at (auction_status, ends_at)",
    "ALTER TABLE auctions ADD INDEX idx_status_starts_at (auction_status, starts_at)",
    "ALTER TABLE auctions ADD INDEX idx_school_id (school_id)",
    "ALTER TABLE artwork ADD INDEX idx_auction_status (auction_id, artwork_status)",
    "ALTER TABLE bids ADD INDEX idx_artwork_amount (artwork_id, bid_amount DESC)",
    "ALTER TABLE bids ADD INDEX idx_artwork_status (artwork_id, bid_status)",
    "ALTER TABLE bids ADD INDEX idx_bidder (bidder_user_id, placed_at DESC)",
    "ALTER TABLE notifications ADD INDEX idx_user_created (user_id, created_at DESC)",
    "ALTER TABLE notifications ADD INDEX idx_delivery (channel, delivery_status)",
    "ALTER TABLE transactions ADD INDEX idx_buyer_created (buyer_user_id, created_at)",
    "ALTER TABLE admin_audit_logs ADD INDEX idx_admin_created (admin_id, created_at DESC)",
]


# --- Database Initialization ---
def init_db():
    conn = get_db_connection()
    if not conn:
        logger.error("Could not connect to MySQL. Aborting DB initialization.")
        return
    c = conn.cursor()
    for ddl in TABLES:
        c.execute(ddl)

    # These operations are idempotent; they will only add columns/indexes if they don't exist.
    def execute_alter(command):
        try:
            c.execute(command)
        except mysql.connector.Error as err:
            if err.errno not in (1060, 1061):  # Duplicate column name / duplicate key name
                raise

    execute_alter("ALTER TABLE auctions ADD COLUMN ending_soon_notified_at DATETIME")
    execute_alter("ALTER TABLE notifications ADD COLUMN payload TEXT")
    for command in INDEXES:
        execute_alter(command)

    conn.commit()
    c.close()
    conn.close()


def create_sample_data():
    """Create a demo school, one account per role and a live auction if the database is empty."""
    conn = get_db_connection()
    if not conn:
        return
    c = conn.cursor(buffered=True)

    c.execute('SELECT COUNT(*) FROM auctions')
    if c.fetchone()[0] == 0:
        now = datetime.now()
        c.execute('''INSERT INTO schools (name, district, address_line1, city, state_province, postal_code, created_at)
                     VALUES (%s, %s, %s, %s, %s, %s, %s)''',
                  ('Northside High School', 'Atlanta Public Schools', '1256 Walnut Street', 'Atlanta', 'GA', '30309', now))
        school_id = c.lastrowid
        c.execute('INSERT INTO payment_gateways (school_id, gateway_type, name, created_at) VALUES (%s, %s, %s, %s)',
                  (school_id, 'STRIPE', 'Demo Gateway', now))
        gateway_id = c.lastrowid

        demo_password = generate_password_hash('DemoPassword1!')
        user_ids = {}
        for role, first, last in [('SITE_ADMIN', 'Site', 'Admin'), ('SCHOOL_ADMIN', 'School', 'Admin'),
                                  ('TEACHER', 'Terry', 'Teacher'), ('STUDENT', 'Sam', 'Student'),
                                  ('BIDDER', 'Bea', 'Bidder')]:
            c.execute('''INSERT INTO users (email, password_hash, first_name, last_name, role, school_id, created_at)
                         VALUES (%s, %s, %s, %s, %s, %s, %s)''',
                      (f"{role.lower()}@example.com", demo_password, first, last, role,
                       None if role in ('SITE_ADMIN', 'BIDDER') else school_id, now))
            user_ids[role] = c.lastrowid

        c.execute('''INSERT INTO auctions (school_id, title, description, auction_status, starts_at, ends_at,
                        created_by_user_id, approved_by_user_id, payment_gateway_id, charity_beneficiary_name,
                        created_at, updated_at)
                     VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)''',
                  (school_id, 'Spring Student Art Show', 'Original works by our art department, proceeds fund supplies.',
                   'LIVE', now - timedelta(hours=1), now + timedelta(days=3), user_ids['TEACHER'],
                   user_ids['SCHOOL_ADMIN'], gateway_id, 'Northside Art Club', now, now))
        auction_id = c.lastrowid

        sample_artwork = [
            ("Sunset Over the Chattahoochee", "Jamie L.", "11", "Watercolor", Decimal('25.00'), Decimal('40.00')),
            ("Self Portrait in Blue", "Riley K.", "12", "Oil on canvas", Decimal('50.00'), None),
            ("City Lines", "Morgan T.", "10", "Ink", Decimal('15.00'), None),
            ("Clay Vessel No. 3", "Avery P.", "9", "Ceramic", Decimal('30.00'), Decimal('45.00')),
        ]
        for title, artist, grade, medium, starting, reserve in sample_artwork:
            c.execute('''INSERT INTO artwork (auction_id, created_by_user_id, title, artist_name, artist_grade, medium,
                            starting_bid_amount, reserve_bid_amount, artwork_status, approved_by_user_id,
                            created_at, updated_at)
                         VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)''',
                      (auction_id, user_ids['TEACHER'], title, artist, grade, medium, starting, reserve,
                       'APPROVED', user_ids['TEACHER'], now, now))

    conn.commit()
    c.close()
    conn.close()
