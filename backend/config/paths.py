"""
Centralized path configuration for Dockwarden
All persistent state lives under the data volume
"""

import os

# /app/data is mounted as a volume when running in a container
DATA_DIR = os.getenv('DOCKWARDEN_DATA_DIR', '/app/data')

# For development/testing outside a container
if not os.path.exists('/app') and 'DOCKWARDEN_DATA_DIR' not in os.environ:
    DATA_DIR = './data'

DATABASE_PATH = os.path.join(DATA_DIR, 'dockwarden.db')
DATABASE_URL = f'sqlite:///{DATABASE_PATH}'

# Compose stacks managed by this instance: <STACKS_DIR>/<project>/compose.yaml
STACKS_DIR = os.getenv('DOCKWARDEN_STACKS_DIR', os.path.join(DATA_DIR, 'stacks'))

LOG_DIR = os.path.join(DATA_DIR, 'logs')


def ensure_data_dirs():
    """Create data directories if they don't exist"""
    for directory in [DATA_DIR, STACKS_DIR, LOG_DIR]:
        os.makedirs(directory, exist_ok=True)
        try:
            os.chmod(directory, 0o700)
        except OSError:
            pass  # May not own the volume
