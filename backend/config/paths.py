"""
Centralized path configuration for DockGuard
Ensures backup records and audit rows land on the volume mount
"""

import os

# The /app/data directory is mounted as a volume in Docker
DATA_DIR = os.getenv('DOCKGUARD_DATA_DIR', '/app/data')

# Database path - MUST be in the volume mount so backups survive a self-update
DATABASE_PATH = os.path.join(DATA_DIR, 'dockguard.db')
DATABASE_URL = f'sqlite:///{DATABASE_PATH}'

LOG_DIR = os.path.join(DATA_DIR, 'logs')


def ensure_data_dirs():
    """Create data directories if they don't exist"""
    for directory in [DATA_DIR, LOG_DIR]:
        os.makedirs(directory, exist_ok=True)
        try:
            os.chmod(directory, 0o700)
        except OSError:
            pass  # May not have permission in some environments


# For development/testing outside Docker
if not os.path.exists('/app') and 'DOCKGUARD_DATA_DIR' not in os.environ:
    DATA_DIR = './data'
    DATABASE_PATH = os.path.join(DATA_DIR, 'dockguard.db')
    DATABASE_URL = f'sqlite:///{DATABASE_PATH}'
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
