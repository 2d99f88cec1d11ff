import os
from dotenv import load_dotenv

# Load .env placed in the backend directory (package-relative) first so
# imports succeed when tests run from the repo root. Fall back to default load.
base_dir = os.path.abspath(os.path.dirname(__file__))
env_path = os.path.abspath(os.path.join(base_dir, '..', '.env'))
if os.path.exists(env_path):
    load_dotenv(dotenv_path=env_path)
else:
    load_dotenv()

DATABASE_URL = os.getenv('DATABASE_URL')

SECRET_KEY = os.getenv('SECRET_KEY', 'changeme-secret')
JWT_ALGORITHM = os.getenv('JWT_ALGORITHM', 'HS256')
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv('ACCESS_TOKEN_EXPIRE_MINUTES', '60'))

# salt for per-unit authentication hashes; rotating it invalidates every printed QR code
QR_SECRET = os.getenv('QR_SECRET', 'default_qr_secret')

BATCH_PREFIX = os.getenv('BATCH_PREFIX', 'BATCH').upper()
SERIAL_WIDTH = int(os.getenv('SERIAL_WIDTH', '4'))

DUPLICATE_GRACE_MINUTES = int(os.getenv('DUPLICATE_GRACE_MINUTES', '10'))
DUPLICATE_SCAN_LIMIT = int(os.getenv('DUPLICATE_SCAN_LIMIT', '5'))
DUPLICATE_SCAN_WINDOW_HOURS = int(os.getenv('DUPLICATE_SCAN_WINDOW_HOURS', '24'))
SCAN_HISTORY_LIMIT = int(os.getenv('SCAN_HISTORY_LIMIT', '20'))

LOG_DIR = os.getenv('BESS_LOG_DIR', os.path.join(os.path.dirname(base_dir), 'logs'))
