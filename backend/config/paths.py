"""
Centralized path configuration for Refit
Ensures all modules use consistent, volume-mounted paths
"""

import os

# Base paths - the /app/data directory is mounted as a volume in Docker
DATA_DIR = os.getenv('REFIT_DATA_DIR', '/app/data')

# For development/testing outside Docker
if not os.path.exists('/app') and 'REFIT_DATA_DIR' not in os.environ:
    DATA_DIR = './data'

DATABASE_PATH = os.path.join(DATA_DIR, 'refit.db')
DATABASE_URL = f'sqlite:///{DATABASE_PATH}'

# Fernet key for registry credential tokens
ENCRYPTION_KEY_PATH = os.path.join(DATA_DIR, 'encryption.key')

# One directory per stack, each holding compose.yaml
STACKS_DIR = os.getenv('STACKS_DIR', os.path.join(DATA_DIR, 'stacks'))


def ensure_data_dirs():
    """Create data directories if they don't exist"""
    for directory in [DATA_DIR, STACKS_DIR]:
        os.makedirs(directory, exist_ok=True)
        try:
            os.chmod(directory, 0o700)
        except OSError:
            pass  # May not have permission in some environments
