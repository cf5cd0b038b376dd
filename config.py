import os
import logging

# --- Database ---
DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "bozor")

# --- Auth ---
# signs the base64 JSON session tokens in auth.py; JWT_SECRET is still read for old deployments
TOKEN_SECRET = os.getenv("TOKEN_SECRET") or os.getenv("JWT_SECRET", "change-me")
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")

# --- HTTP ---
PORT = int(os.getenv("PORT", 8000))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# --- Business defaults ---
ORDER_ID_START = 1001
INSTALLMENT_DURATIONS = (2, 3, 4, 5, 6, 10, 12)
DEFAULT_INTEREST_RATES = {2: 5, 3: 8, 4: 10, 5: 12, 6: 15, 10: 20, 12: 25}
WEBHOOK_TIMEOUT = 2

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE")
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(module)s.%(funcName)s:%(lineno)d - %(message)s'

LOGGING_CONFIG = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'standard': {
            'format': LOG_FORMAT,
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'standard',
            'level': LOG_LEVEL,
        },
    },
    'root': {
        'handlers': ['console'],
        'level': LOG_LEVEL,
    },
}

if LOG_FILE:
    LOGGING_CONFIG['handlers']['file'] = {
        'class': 'logging.handlers.RotatingFileHandler',
        'formatter': 'standard',
        'filename': LOG_FILE,
        'maxBytes': 1024 * 1024 * 5,  # 5 MB
        'backupCount': 5,
        'level': logging.INFO,
        'encoding': 'utf-8',
    }
    LOGGING_CONFIG['root']['handlers'].append('file')
