"""
Per-site wiring of the sync, deploy, and webhook components.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import logging
from typing import Dict, Optional

import httpx

from .backup import BackupManager
from .client import GitHubClient
from .config import SiteConfig, get_site_config
from .deploy import DeploymentManager
from .errors import SyncError
from .progress import ProgressTracker
from .store import FileStateStore, StateStore
from .sync import CHUNK_JOB, SyncOrchestrator
from .tasks import BackgroundTaskRunner, TaskQueue
from .webhook import DEPLOY_JOB, WebhookHandler


logger = logging.getLogger(__name__)


CHECK_JOB = 'check_updates'


_sites: Dict[str, 'Site'] = {}


class Site:
    """
    Everything needed to sync and deploy one configured site, sharing a
    single state store
    """

    def __init__(
            self,
            config: SiteConfig,
            store: Optional[StateStore] = None,
            transport: Optional[httpx.AsyncBaseTransport] = None):

        self.config = config
        self.name = config.name
        self.store = store if store is not None else FileStateStore(config.get_state_file())

        self.client = GitHubClient.for_site(config, transport)
        self.progress = ProgressTracker(self.store)
        self.runner = BackgroundTaskRunner(self.store)
        self.queue = TaskQueue(self.store, self.runner, self.progress)

        self.backups = BackupManager(config, self.store)
        self.deployer = DeploymentManager(config, self.client, self.store,
                                          backups=self.backups, progress=self.progress)
        self.sync = SyncOrchestrator(config, self.client, self.store, self.progress, self.queue)
        self.webhook = WebhookHandler(config, self.store, self.deployer, self.queue)

        self.queue.register(CHUNK_JOB, self.sync_chunk)
        self.queue.register(DEPLOY_JOB, self.deploy)
        self.queue.register(CHECK_JOB, self.check_updates)


    async def sync_chunk(self) -> str:
        result = await self.sync.run_chunk()
        return result.status


    async def deploy(self, reference: str, actor: str = 'webhook/cron') -> Optional[str]:
        result = await self.deployer.deploy(reference, actor)
        return None if isinstance(result, SyncError) else result


    async def check_updates(self) -> None:
        try:
            await self.deployer.check_for_updates()
        finally:
            self.schedule_update_checks()


    def schedule_update_checks(self) -> None:
        """
        Queue the next polling check of the tracked branch, if polling is
        enabled for this site
        """

        if self.config.check_interval > 0:
            self.queue.enqueue(CHECK_JOB, delay=self.config.check_interval * 60)


def get_site(name: str) -> Optional[Site]:
    """
    The wired Site for the named site configuration, or None
    """

    site = _sites.get(name)
    if site is not None:
        return site

    config = get_site_config(name)
    if config is None:
        return None

    site = _sites[name] = Site(config)
    logger.debug(f'Wired site {name}')
    return site


def clear_sites() -> None:
    _sites.clear()


# The end.
