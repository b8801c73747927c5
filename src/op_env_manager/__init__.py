"""
op-env-manager -- keep local .env files and 1Password in step.

Bidirectional sync between a local variable file and a vault record,
with conflict resolution, backups, and parallel op:// reference resolution.
"""

import os

__version__ = "0.4.0"

DEFAULT_ITEM = os.environ.get("OP_ENV_ITEM", "env-secrets")
DEFAULT_ENV_FILE = ".env"

STATE_FILE_NAME = ".op-env-manager.state"
BACKUP_DIR_NAME = ".op-env-manager"
CONFIG_FILE_NAME = ".op-env-manager.yaml"
ITEM_TAG = "op-env-manager"
