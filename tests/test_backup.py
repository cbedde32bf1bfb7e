"""
Unit tests for backup snapshots.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import os
from unittest.mock import patch

from preoccupied.contentsync.backup import (
    CONFIG_DIR, LAST_DEPLOYED_KEY, BackupManager, BackupSnapshot,
)
from preoccupied.contentsync.errors import ErrorKind
from preoccupied.contentsync.fsutil import snapshot_tree, walk_files


class TestBackupManager:
    """
    Tests for BackupManager.
    """

    def test_create_backup(self, site_config, store):
        store.set(LAST_DEPLOYED_KEY, 'a' * 40)
        backups = BackupManager(site_config, store)

        snapshot = backups.create_backup()

        assert isinstance(snapshot, BackupSnapshot)
        assert snapshot.path.startswith(site_config.get_backup_dir())
        assert snapshot.commit == 'a' * 40
        assert snapshot.branch == 'main'
        assert snapshot.config_file is None
        assert walk_files(snapshot.path) == walk_files(site_config.directory)
        assert backups.list_backups() == [snapshot]
        assert backups.get_backup(snapshot.id) == snapshot
        assert backups.get_backup('nope') is None

    def test_create_backup_skips_ignored(self, site_config, store):
        log = os.path.join(site_config.directory, 'plugins', 'plugin1', 'debug.log')
        with open(log, 'w') as f:
            f.write('noise')

        snapshot = BackupManager(site_config, store).create_backup()

        assert 'plugins/plugin1/debug.log' not in walk_files(snapshot.path)

    def test_backup_config_file(self, site_config, store, temp_dir):
        config_file = os.path.join(temp_dir, 'wp-config.php')
        with open(config_file, 'w') as f:
            f.write('<?php define("DB", "x");')

        site = site_config.model_copy(update={'backup_config_file': True, 'config_file': config_file})
        backups = BackupManager(site, store)
        snapshot = backups.create_backup()

        saved = os.path.join(snapshot.path, CONFIG_DIR, 'wp-config.php')
        assert snapshot.config_file == config_file
        assert os.path.isfile(saved)

        with open(config_file, 'w') as f:
            f.write('broken')

        assert backups.restore_backup(snapshot) is None
        with open(config_file) as f:
            assert f.read() == '<?php define("DB", "x");'

    def test_create_backup_failure(self, site_config, store):
        with patch('preoccupied.contentsync.backup.copy_tree', side_effect=OSError('disk full')):
            result = BackupManager(site_config, store).create_backup()

        assert result.kind is ErrorKind.FILESYSTEM
        assert 'disk full' in result.message
        assert BackupManager(site_config, store).list_backups() == []
        assert os.listdir(site_config.get_backup_dir()) == []

    def test_restore_mirrors_snapshot(self, site_config, store):
        """
        Test that a restore reverts changes and removes files added since.
        """

        backups = BackupManager(site_config, store)
        before = snapshot_tree(site_config.directory)
        snapshot = backups.create_backup()

        site = site_config.directory
        with open(os.path.join(site, 'themes/theme1/style.css'), 'w') as f:
            f.write('changed')
        os.unlink(os.path.join(site, 'themes/theme1/index.php'))
        os.makedirs(os.path.join(site, 'plugins/plugin2'))
        with open(os.path.join(site, 'plugins/plugin2/new.php'), 'w') as f:
            f.write('new')

        assert backups.restore_backup(snapshot) is None
        assert snapshot_tree(site) == before
        assert not os.path.exists(os.path.join(site, 'plugins/plugin2'))

    def test_restore_missing_backup(self, site_config, store, temp_dir):
        snapshot = BackupSnapshot(id='gone', path=os.path.join(temp_dir, 'gone'))
        result = BackupManager(site_config, store).restore_backup(snapshot)
        assert result.kind is ErrorKind.FILESYSTEM

    def test_prune(self, site_config, store):
        site = site_config.model_copy(update={'backup_retention': 2})
        backups = BackupManager(site, store)

        made = [backups.create_backup() for _ in range(4)]

        kept = backups.list_backups()
        assert [s.id for s in kept] == [made[3].id, made[2].id]
        assert not os.path.exists(made[0].path)
        assert not os.path.exists(made[1].path)
        assert os.path.isdir(made[3].path)


# The end.
