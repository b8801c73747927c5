"""
Backup snapshots of the local variable file.

Before a sync mutates the local file, a byte-identical copy is taken:

    <env dir>/.op-env-manager/backups/<name>.<YYYYmmdd_HHMMSS_ffffff>.bak

Backups are owner-only (0600) and retained indefinitely. Restoring
writes the bytes back and reapplies the original permission bits.
"""

from __future__ import annotations

import logging
import os
import re
import stat
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .. import BACKUP_DIR_NAME
from ..errors import LocalIOError
from .models import BackupHandle

logger = logging.getLogger("op_env_manager.sync.backup")


class BackupManager:
    """Creates, lists and restores backups of local files."""

    def __init__(self, backup_dir: Optional[Path] = None):
        self._backup_dir = backup_dir

    def backup_dir_for(self, path: Path) -> Path:
        if self._backup_dir is not None:
            return self._backup_dir
        return Path(path).parent / BACKUP_DIR_NAME / "backups"

    def backup(self, path: Path) -> Optional[BackupHandle]:
        """Snapshot ``path``.

        Args:
            path: Local file to copy.

        Returns:
            BackupHandle, or None if the file does not exist.

        Raises:
            LocalIOError: If the snapshot cannot be written.
        """
        path = Path(path)
        try:
            data = path.read_bytes()
            mode = stat.S_IMODE(path.stat().st_mode)
        except FileNotFoundError:
            logger.debug("Nothing to back up, %s does not exist", path)
            return None
        except OSError as exc:
            raise LocalIOError(path, f"Cannot read file for backup ({exc})") from exc

        created = datetime.now(timezone.utc)
        target_dir = self.backup_dir_for(path)
        backup_path = target_dir / f"{path.name}.{created.strftime('%Y%m%d_%H%M%S_%f')}.bak"

        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(target_dir, 0o700)
            _write_bytes_atomic(backup_path, data, 0o600)
        except OSError as exc:
            raise LocalIOError(backup_path, f"Cannot write backup ({exc})") from exc

        logger.info("Backed up %s to %s", path, backup_path)
        return BackupHandle(
            source=path, backup_path=backup_path, mode=mode, created_at=created
        )

    def restore(self, handle: BackupHandle) -> None:
        """Write a snapshot back over its source file.

        Raises:
            LocalIOError: If the backup cannot be read or the source written.
        """
        try:
            data = handle.backup_path.read_bytes()
        except OSError as exc:
            raise LocalIOError(handle.backup_path, f"Cannot read backup ({exc})") from exc

        try:
            _write_bytes_atomic(handle.source, data, handle.mode)
        except OSError as exc:
            raise LocalIOError(handle.source, f"Cannot restore from backup ({exc})") from exc

        logger.info("Restored %s from %s", handle.source, handle.backup_path)

    def list_backups(self, path: Path) -> list[Path]:
        """Existing backups of ``path``, newest first."""
        path = Path(path)
        target_dir = self.backup_dir_for(path)
        if not target_dir.is_dir():
            return []
        pattern = re.compile(rf"{re.escape(path.name)}\.\d{{8}}_\d{{6}}_\d{{6}}\.bak")
        return sorted(
            (p for p in target_dir.iterdir() if pattern.fullmatch(p.name)),
            reverse=True,
        )


def _write_bytes_atomic(path: Path, data: bytes, mode: int) -> None:
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except OSError:
        Path(tmp_name).unlink(missing_ok=True)
        raise
