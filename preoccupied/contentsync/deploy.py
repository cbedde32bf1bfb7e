"""
Deployment of a repository reference onto the live content tree.

A deployment downloads the archive of a branch or commit, and merges it
into the managed paths of the site. It runs under a single-flight lock
which expires on its own, so a crashed worker cannot block deployments
forever. Before any file is touched a backup is taken, and if the
download or merge fails the backup is restored.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import logging
import os
import re
import shutil
import tempfile
import time
import zipfile
import zlib
from typing import Callable, List, Optional, Union

from pydantic import BaseModel, Field

from .backup import LAST_DEPLOYED_KEY, BackupManager, BackupSnapshot
from .branches import is_valid_branch_name
from .client import GitHubClient
from .config import SiteConfig
from .errors import ErrorKind, SyncError
from .fsutil import (
    apply_plan, disable_maintenance, enable_maintenance, is_safe_path,
    normalize_path, plan_merge, snapshot_tree)
from .progress import ProgressTracker
from .store import StateStore


logger = logging.getLogger(__name__)


LOCK_KEY = 'deployment_in_progress'
BRANCH_KEY = 'branch'
HISTORY_KEY = 'deployment_history'
LAST_DEPLOYMENT_TIME_KEY = 'last_deployment_time'
UPDATE_AVAILABLE_KEY = 'update_available'
LATEST_COMMIT_KEY = 'latest_commit'

DEFAULT_ACTOR = 'webhook/cron'

_COMMIT_SHA = re.compile(r'^[0-9a-fA-F]{40}$')


def is_commit_sha(reference: str) -> bool:
    return bool(_COMMIT_SHA.match(reference))


class DeployLock(BaseModel):
    reference: str
    actor: str = DEFAULT_ACTOR
    started: float = Field(default_factory=time.time)


class DeploymentRecord(BaseModel):
    reference: str
    commit: str
    timestamp: float = Field(default_factory=time.time)
    actor: str = DEFAULT_ACTOR
    message: Optional[str] = None
    author: Optional[str] = None
    date: Optional[str] = None


def extract_archive(archive: str, dest: str) -> Union[str, SyncError]:
    """
    Extract the zip archive into dest, and return the directory holding
    its content. Archives of a repository wrap everything in a single
    top-level folder, which is stepped over.
    """

    try:
        with zipfile.ZipFile(archive) as zf:
            for name in zf.namelist():
                if not is_safe_path(name):
                    return SyncError(ErrorKind.EXTRACTION, f'Unsafe path in archive: {name!r}')
            zf.extractall(dest)

    except (zipfile.BadZipFile, zlib.error, EOFError, OSError) as e:
        return SyncError(ErrorKind.EXTRACTION, f'Failed to extract archive: {e}')
    except (RuntimeError, NotImplementedError) as e:
        # encrypted members, or a compression method we cannot read
        return SyncError(ErrorKind.EXTRACTION, f'Failed to extract archive: {e}')

    entries = os.listdir(dest)
    if len(entries) == 1 and os.path.isdir(os.path.join(dest, entries[0])):
        return os.path.join(dest, entries[0])
    return dest


class DeploymentManager:
    """
    Deploys, rolls back, and tracks the deployment history of one site
    """

    def __init__(
            self,
            site: SiteConfig,
            client: GitHubClient,
            store: StateStore,
            backups: Optional[BackupManager] = None,
            progress: Optional[ProgressTracker] = None,
            clock: Callable[[], float] = time.time):

        self.site = site
        self.client = client
        self.store = store
        self.backups = backups or BackupManager(site, store)
        self.progress = progress
        self.clock = clock


    def _progress(self, step: int, detail: str, status: str = 'running') -> None:
        if status == 'running':
            self._refresh_lock()
        if self.progress is not None:
            self.progress.update(step, detail, status)


    def current_branch(self) -> str:
        return self.store.get(BRANCH_KEY) or self.site.branch


    def last_deployed_commit(self) -> Optional[str]:
        return self.store.get(LAST_DEPLOYED_KEY)


    def lock_status(self) -> Optional[DeployLock]:
        """
        The held deployment lock, or None. A lock older than the site's
        lock_expiry is stale, and is discarded.
        """

        data = self.store.get(LOCK_KEY)
        if not data:
            return None

        lock = DeployLock.model_validate(data)
        if self.clock() - lock.started > self.site.lock_expiry:
            logger.warning(f'Deployment lock for {lock.reference} expired, clearing it')
            self.store.delete(LOCK_KEY)
            return None

        return lock


    def is_deploying(self) -> bool:
        return self.lock_status() is not None


    def _acquire(self, reference: str, actor: str) -> Optional[SyncError]:
        held = self.lock_status()
        if held is not None:
            return SyncError(ErrorKind.LOCK_CONTENTION,
                             f'A deployment of {held.reference} is already in progress')

        lock = DeployLock(reference=reference, actor=actor, started=self.clock())
        self.store.set(LOCK_KEY, lock.model_dump())
        return None


    def _refresh_lock(self) -> None:
        data = self.store.get(LOCK_KEY)
        if data:
            lock = DeployLock.model_validate(data)
            lock.started = self.clock()
            self.store.set(LOCK_KEY, lock.model_dump())


    def _release(self) -> None:
        self.store.delete(LOCK_KEY)


    async def deploy(self, reference: str, actor: str = DEFAULT_ACTOR) -> Union[str, SyncError]:
        """
        Deploy a branch name or commit sha. Returns the deployed commit
        sha.
        """

        err = self._acquire(reference, actor)
        if err is not None:
            logger.info(err.message)
            return err

        logger.info(f'Deploying {reference} to {self.site.name}')
        try:
            result = await self._deploy(reference, actor)
        finally:
            self._release()

        if isinstance(result, SyncError):
            logger.error(f'Deployment of {reference} to {self.site.name} failed: {result.message}')
            self._progress(0, f'Deployment failed: {result.message}', 'failed')
        else:
            logger.info(f'Deployed {reference} ({result}) to {self.site.name}')
            self._progress(6, f'Deployed {reference}', 'complete')

        return result


    async def _deploy(self, reference: str, actor: str) -> Union[str, SyncError]:
        site = self.site

        snapshot: Optional[BackupSnapshot] = None
        if site.create_backup:
            self._progress(1, 'Creating backup')
            snapshot = self.backups.create_backup()
            if isinstance(snapshot, SyncError):
                return snapshot

        marker = site.get_maintenance_file()
        if site.maintenance_mode:
            self._progress(2, 'Enabling maintenance mode')
            try:
                enable_maintenance(marker)
            except OSError as e:
                return SyncError(ErrorKind.FILESYSTEM, f'Failed to enable maintenance mode: {e}')

        try:
            try:
                err = await self._download_and_merge(reference)
            except Exception as e:
                logger.exception(f'Unexpected failure deploying {reference}')
                err = SyncError(ErrorKind.FILESYSTEM, f'Failed to deploy {reference}: {e}')

            if err is not None:
                if snapshot is not None:
                    self._progress(5, 'Restoring backup')
                    restored = self.backups.restore_backup(snapshot)
                    if restored is not None:
                        logger.error(f'Restoring backup after failed deployment failed:'
                                     f' {restored.message}')
                return err

        finally:
            if site.maintenance_mode:
                disable_maintenance(marker)

        commit = await self.resolve_commit(reference)
        self._record_success(commit)
        await self._add_history(reference, commit, actor)
        return commit


    async def _download_and_merge(self, reference: str) -> Optional[SyncError]:
        site = self.site

        try:
            os.makedirs(site.state_dir, exist_ok=True)
            scratch = tempfile.mkdtemp(prefix='deploy-', dir=site.state_dir)
        except OSError as e:
            return SyncError(ErrorKind.FILESYSTEM, f'Failed to create scratch directory: {e}')

        try:
            self._progress(3, f'Downloading {reference}')
            archive = os.path.join(scratch, 'archive.zip')
            err = await self.client.download_archive(reference, archive)
            if err is not None:
                return err

            self._progress(4, f'Extracting {reference}')
            root = extract_archive(archive, os.path.join(scratch, 'extract'))
            if isinstance(root, SyncError):
                return root

            prefix = normalize_path(site.repo_prefix)
            source_root = os.path.join(root, prefix) if prefix else root
            if not os.path.isdir(source_root):
                return SyncError(ErrorKind.EXTRACTION,
                                 f'Archive of {reference} has no {site.repo_prefix} directory')

            # only managed paths the archive carries are merged, the rest are left alone
            managed = [p for p in site.managed_paths
                       if os.path.exists(os.path.join(source_root, normalize_path(p)))]
            if site.managed_paths and not managed:
                logger.warning(f'Archive of {reference} holds none of the managed paths')
                return None

            self._progress(5, f'Merging {reference} into {site.directory}')
            try:
                source = snapshot_tree(source_root, managed, site.ignore_patterns)
                target = snapshot_tree(site.directory, managed, site.ignore_patterns)
                apply_plan(plan_merge(source, target, site.delete_removed), source_root, site.directory)
            except OSError as e:
                return SyncError(ErrorKind.FILESYSTEM, f'Failed to merge {reference}: {e}')

            return None

        finally:
            shutil.rmtree(scratch, ignore_errors=True)


    async def resolve_commit(self, reference: str) -> str:
        """
        The commit sha for reference. A branch name is resolved to its
        head, and is kept as-is if that lookup fails.
        """

        if is_commit_sha(reference):
            return reference

        latest = await self.client.get_latest_commit(reference)
        if isinstance(latest, SyncError) or not latest.get('sha'):
            logger.warning(f'Could not resolve the head of {reference}, recording the name')
            return reference

        return latest['sha']


    def _record_success(self, commit: str) -> None:
        self.store.set(LAST_DEPLOYED_KEY, commit)
        self.store.set(LAST_DEPLOYMENT_TIME_KEY, self.clock())
        self.store.delete(UPDATE_AVAILABLE_KEY)
        logger.debug(f'Last deployed commit for {self.site.name} is now {commit[:8]}')


    async def _add_history(self, reference: str, commit: str, actor: str) -> None:
        record = DeploymentRecord(reference=reference, commit=commit,
                                  timestamp=self.clock(), actor=actor)

        details = await self.client.get_commit(commit)
        if not isinstance(details, SyncError):
            info = details.get('commit') or {}
            author = info.get('author') or {}
            record.message = info.get('message')
            record.author = author.get('name')
            record.date = author.get('date')

        history = self.store.get(HISTORY_KEY, [])
        history.append(record.model_dump())
        self.store.set(HISTORY_KEY, history[-self.site.history_limit:])


    def history(self) -> List[DeploymentRecord]:
        """
        Deployment history, oldest first
        """

        return [DeploymentRecord.model_validate(r) for r in self.store.get(HISTORY_KEY, [])]


    async def rollback(self, commit: str, actor: str = DEFAULT_ACTOR) -> Union[str, SyncError]:
        """
        Deploy an earlier commit. Rolling back to the commit which is
        already deployed does nothing.
        """

        if not is_commit_sha(commit):
            return SyncError(ErrorKind.VALIDATION, f'Not a commit sha: {commit!r}')

        if self.last_deployed_commit() == commit:
            logger.info(f'{commit[:8]} is already deployed to {self.site.name}')
            return commit

        return await self.deploy(commit, actor)


    async def switch_branch(self, branch: str, actor: str = DEFAULT_ACTOR) -> Union[str, SyncError]:
        """
        Track a different branch and deploy it. If the deployment fails
        the previously tracked branch is restored.
        """

        if not is_valid_branch_name(branch):
            return SyncError(ErrorKind.VALIDATION, f'Invalid branch name: {branch!r}')

        previous = self.current_branch()
        self.store.set(BRANCH_KEY, branch)

        result = await self.deploy(branch, actor)
        if isinstance(result, SyncError):
            logger.warning(f'Switch to {branch} failed, tracking {previous} again')
            self.store.set(BRANCH_KEY, previous)

        return result


    async def check_for_updates(self) -> Union[None, str, SyncError]:
        """
        Compare the head of the tracked branch with the deployed commit.
        Returns the new head if there is one. It is deployed right away
        when the site has auto_deploy, otherwise it is flagged as an
        available update.
        """

        if self.is_deploying():
            logger.info('Skipping update check because a deployment is in progress')
            return None

        branch = self.current_branch()
        latest = await self.client.get_latest_commit(branch)
        if isinstance(latest, SyncError):
            logger.error(f'Error checking for updates: {latest.message}')
            return latest

        sha = latest.get('sha')
        last = self.last_deployed_commit()
        if not sha or sha == last:
            logger.info('No new commits found')
            return None

        logger.info(f'New commit found: {sha} (last deployed: {last or "none"})')

        info = latest.get('commit') or {}
        author = info.get('author') or {}
        self.store.set(LATEST_COMMIT_KEY, {
            'sha': sha,
            'message': info.get('message', ''),
            'author': author.get('name', ''),
            'date': author.get('date', ''),
            'timestamp': self.clock(),
        })

        if self.site.auto_deploy:
            result = await self.deploy(sha, 'cron')
            if isinstance(result, SyncError):
                return result
        else:
            self.store.set(UPDATE_AVAILABLE_KEY, True)

        return sha


# The end.
