import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'a-default-secret-key-for-dev-only')

    # --- MySQL Configuration ---
    # Reads credentials from a .env file for local development.
    DB_ENABLED = True
    DB_HOST = os.environ.get('DB_HOST', 'localhost')
    DB_USER = os.environ.get('DB_USER', 'root')
    DB_PASSWORD = os.environ.get('DB_PASSWORD')
    DB_DATABASE = os.environ.get('DB_DATABASE', 'silent_auction_db')
    DB_POOL_SIZE = int(os.environ.get('DB_POOL_SIZE', '5'))

    SOCKETIO_ASYNC_MODE = os.environ.get('SOCKETIO_ASYNC_MODE', 'eventlet')

    RATELIMIT_ENABLED = _env_bool('RATELIMIT_ENABLED', True)
    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI', 'memory://')

    # --- Bidding ---
    BID_MIN_INCREMENT = Decimal(os.environ.get('BID_MIN_INCREMENT', '1.00'))
    MAX_BID_AMOUNT = Decimal(os.environ.get('MAX_BID_AMOUNT', '9999999.99'))
    BID_WITHDRAW_CUTOFF_MINUTES = int(os.environ.get('BID_WITHDRAW_CUTOFF_MINUTES', '5'))

    # --- Auction lifecycle ---
    DEFAULT_AUTO_EXTEND_MINUTES = int(os.environ.get('DEFAULT_AUTO_EXTEND_MINUTES', '5'))
    AUCTION_SWEEP_ENABLED = _env_bool('AUCTION_SWEEP_ENABLED', True)
    AUCTION_SWEEP_SECONDS = int(os.environ.get('AUCTION_SWEEP_SECONDS', '30'))
    ENDING_SOON_MINUTES = int(os.environ.get('ENDING_SOON_MINUTES', '60'))
    PLATFORM_FEE_PERCENTAGE = Decimal(os.environ.get('PLATFORM_FEE_PERCENTAGE', '3.5'))
    PLATFORM_FEE_MINIMUM = Decimal(os.environ.get('PLATFORM_FEE_MINIMUM', '50.00'))

    # --- Account security ---
    MAX_LOGIN_ATTEMPTS = int(os.environ.get('MAX_LOGIN_ATTEMPTS', '5'))
    LOCKOUT_MINUTES = int(os.environ.get('LOCKOUT_MINUTES', '30'))
    PASSWORD_RESET_HOURS = int(os.environ.get('PASSWORD_RESET_HOURS', '1'))
    REGISTRATION_TOKEN_DAYS = int(os.environ.get('REGISTRATION_TOKEN_DAYS', '7'))
    TOTP_ISSUER = os.environ.get('TOTP_ISSUER', 'Silent Auction Gallery')
    TOTP_VALID_WINDOW = int(os.environ.get('TOTP_VALID_WINDOW', '1'))

    # --- School directory ---
    SCHOOL_DATA_API_URL = os.environ.get('SCHOOL_DATA_API_URL', 'https://data.nces.ed.gov/oncvs/api/v1/schools')
    SCHOOL_DATA_CACHE_HOURS = int(os.environ.get('SCHOOL_DATA_CACHE_HOURS', '24'))
    PREFERRED_STATE = os.environ.get('PREFERRED_STATE', 'GA')

    # --- Email ---
    SMTP_HOST = os.environ.get('SMTP_HOST')
    SMTP_PORT = int(os.environ.get('SMTP_PORT', '587'))
    SMTP_USER = os.environ.get('SMTP_USER')
    SMTP_PASSWORD = os.environ.get('SMTP_PASSWORD')
    MAIL_FROM = os.environ.get('MAIL_FROM', 'noreply@silentauctiongallery.com')

    # --- Payments ---
    FRAUD_MAX_TRANSACTION = Decimal(os.environ.get('FRAUD_MAX_TRANSACTION', '5000'))
    FRAUD_MAX_DAILY_AMOUNT = Decimal(os.environ.get('FRAUD_MAX_DAILY_AMOUNT', '10000'))
    FRAUD_MAX_DAILY_COUNT = int(os.environ.get('FRAUD_MAX_DAILY_COUNT', '10'))

    SITE_URL = os.environ.get('SITE_URL', 'http://127.0.0.1:5000')
    MAX_UPLOAD_BYTES = 5 * 1024 * 1024

    # Define the path for file uploads. In production, this points to a persistent disk.
    if os.environ.get('RENDER') == 'true':
        UPLOAD_FOLDER = '/var/data/uploads'
    else:
        UPLOAD_FOLDER = os.environ.get('UPLOAD_FOLDER')


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret-key'
    DB_ENABLED = False
    SOCKETIO_ASYNC_MODE = 'threading'
    RATELIMIT_ENABLED = False
    AUCTION_SWEEP_ENABLED = False
    SMTP_HOST = None
    SITE_URL = 'http://localhost'
