"""
Backup snapshots of the managed content paths, taken before a
deployment changes them.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import logging
import os
import shutil
import time
import uuid
from typing import List, Optional, Union

from pydantic import BaseModel, Field

from .config import SiteConfig
from .errors import ErrorKind, SyncError
from .fsutil import apply_plan, copy_tree, plan_merge, snapshot_tree
from .store import StateStore


logger = logging.getLogger(__name__)


MANIFEST_KEY = 'backups'
LAST_DEPLOYED_KEY = 'last_deployed_commit'
CONFIG_DIR = '_config'


class BackupSnapshot(BaseModel):
    id: str
    path: str
    created: float = Field(default_factory=time.time)
    commit: Optional[str] = None
    branch: Optional[str] = None
    config_file: Optional[str] = None


class BackupManager:
    """
    Creates, restores, and prunes the backups of one site
    """

    def __init__(self, site: SiteConfig, store: StateStore):
        self.site = site
        self.store = store


    def list_backups(self) -> List[BackupSnapshot]:
        """
        Known backups, most recent first
        """

        return [BackupSnapshot.model_validate(b) for b in self.store.get(MANIFEST_KEY, [])]


    def get_backup(self, backup_id: str) -> Optional[BackupSnapshot]:
        for snapshot in self.list_backups():
            if snapshot.id == backup_id:
                return snapshot
        return None


    def _save_manifest(self, snapshots: List[BackupSnapshot]) -> None:
        self.store.set(MANIFEST_KEY, [s.model_dump() for s in snapshots])


    def create_backup(self) -> Union[BackupSnapshot, SyncError]:
        """
        Copy the managed paths, minus ignored files, and optionally the
        site's configuration file into a new timestamped directory
        """

        site = self.site
        backup_id = f'{time.strftime("%Y-%m-%d-%H-%M-%S")}-{uuid.uuid4().hex[:10]}'
        path = os.path.join(site.get_backup_dir(), backup_id)

        logger.info(f'Creating backup of {site.name} at {path}')

        try:
            os.makedirs(path)
            count = copy_tree(site.directory, path, site.managed_paths, site.ignore_patterns)

            config_file = None
            if site.backup_config_file and site.config_file and os.path.isfile(site.config_file):
                os.makedirs(os.path.join(path, CONFIG_DIR), exist_ok=True)
                shutil.copy2(site.config_file,
                             os.path.join(path, CONFIG_DIR, os.path.basename(site.config_file)))
                config_file = site.config_file

        except OSError as e:
            logger.error(f'Failed to create backup at {path}: {e}', exc_info=True)
            shutil.rmtree(path, ignore_errors=True)
            return SyncError(ErrorKind.FILESYSTEM, f'Failed to create backup: {e}')

        snapshot = BackupSnapshot(
            id=backup_id,
            path=path,
            commit=self.store.get(LAST_DEPLOYED_KEY),
            branch=site.branch,
            config_file=config_file,
        )

        self._save_manifest([snapshot] + self.list_backups())
        self.prune()

        logger.info(f'Backed up {count} files to {path}')
        return snapshot


    def restore_backup(self, snapshot: BackupSnapshot) -> Optional[SyncError]:
        """
        Make the managed paths match the snapshot exactly. Files which
        differ are copied back and files the snapshot does not have are
        removed. Ignored files are left alone.
        """

        site = self.site
        if not os.path.isdir(snapshot.path):
            return SyncError(ErrorKind.FILESYSTEM, f'Backup not found: {snapshot.path}')

        logger.info(f'Restoring {site.name} from backup {snapshot.path}')

        try:
            source = snapshot_tree(snapshot.path, site.managed_paths, site.ignore_patterns)
            target = snapshot_tree(site.directory, site.managed_paths, site.ignore_patterns)
            apply_plan(plan_merge(source, target, delete_removed=True), snapshot.path, site.directory)

            if snapshot.config_file:
                saved = os.path.join(snapshot.path, CONFIG_DIR, os.path.basename(snapshot.config_file))
                if os.path.isfile(saved):
                    shutil.copy2(saved, snapshot.config_file)

        except OSError as e:
            logger.error(f'Failed to restore backup {snapshot.path}: {e}', exc_info=True)
            return SyncError(ErrorKind.FILESYSTEM, f'Failed to restore backup: {e}')

        logger.info(f'Restored {site.name} from backup {snapshot.id}')
        return None


    def prune(self) -> int:
        """
        Delete the backups beyond the retention count. Returns how many
        were removed.
        """

        snapshots = self.list_backups()
        keep = snapshots[:max(self.site.backup_retention, 1)]
        drop = snapshots[len(keep):]

        for snapshot in drop:
            logger.info(f'Removing old backup {snapshot.path}')
            shutil.rmtree(snapshot.path, ignore_errors=True)

        if drop:
            self._save_manifest(keep)
        return len(drop)


# The end.
