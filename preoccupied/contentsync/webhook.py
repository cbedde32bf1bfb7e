"""
Inbound webhook verification and dispatch.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import hashlib
import hmac
import logging
import time
from typing import Any, Dict, Optional

from pydantic import BaseModel

from .config import EnvironmentConfig, SiteConfig
from .deploy import LATEST_COMMIT_KEY, UPDATE_AVAILABLE_KEY, DeploymentManager
from .errors import SyncError
from .store import StateStore
from .tasks import TaskQueue


logger = logging.getLogger(__name__)


DEPLOY_JOB = 'deploy'
DEPLOY_DELAY = 5
ZERO_SHA = '0' * 40

_DIGESTS = {
    'sha256': hashlib.sha256,
    'sha1': hashlib.sha1,
}


def verify_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Check a signature header of the form sha256=<hex> or sha1=<hex>
    against the HMAC of the raw payload under secret
    """

    if not signature or not secret:
        return False

    scheme, _, digest = signature.partition('=')
    algorithm = _DIGESTS.get(scheme.strip().lower())
    if algorithm is None or not digest:
        return False

    expected = hmac.new(secret.encode('utf-8'), payload, algorithm).hexdigest()
    return hmac.compare_digest(expected.encode('ascii'), digest.strip().encode('utf-8'))


class WebhookDecision(BaseModel):
    """
    What was done about one webhook event. Every decision is answered
    with HTTP 200.
    """

    action: str
    message: str
    branch: Optional[str] = None
    environment: Optional[str] = None
    commit: Optional[str] = None
    result: Optional[str] = None


class WebhookHandler:
    """
    Routes push and merged pull request events for one site
    """

    def __init__(
            self,
            site: SiteConfig,
            store: StateStore,
            deployer: DeploymentManager,
            queue: Optional[TaskQueue] = None):

        self.site = site
        self.store = store
        self.deployer = deployer
        self.queue = queue


    def environments(self) -> Dict[str, EnvironmentConfig]:
        return self.site.get_environments(self.deployer.current_branch())


    def environment_for(self, branch: str) -> Optional[str]:
        for name, env in self.environments().items():
            if env.enabled and env.branch == branch:
                return name
        return None


    def _repository_name(self, payload: Dict[str, Any]) -> Optional[str]:
        repository = payload.get('repository')
        if not isinstance(repository, dict):
            return None
        full_name = repository.get('full_name')
        return full_name if isinstance(full_name, str) else None


    def _same_repository(self, payload: Dict[str, Any]) -> bool:
        full_name = self._repository_name(payload)
        expected = self.site.full_name
        if not full_name or not expected:
            return True
        return full_name.lower() == expected.lower()


    async def handle(self, event_type: str, payload: Dict[str, Any]) -> WebhookDecision:
        if event_type == 'ping':
            return WebhookDecision(action='ack', message='pong')

        if not isinstance(payload, dict):
            logger.warning(f'Ignoring {event_type} event with a malformed payload')
            return WebhookDecision(action='ignored', message='Payload is not a JSON object')

        if not self._same_repository(payload):
            full_name = self._repository_name(payload)
            logger.info(f'Ignoring {event_type} event for repository {full_name}')
            return WebhookDecision(action='ignored',
                                   message=f'Repository {full_name} is not {self.site.full_name}')

        if event_type == 'push':
            return await self._handle_push(payload)
        elif event_type == 'pull_request':
            return await self._handle_pull_request(payload)

        logger.info(f'Ignoring webhook event {event_type}')
        return WebhookDecision(action='ignored', message=f'Event type {event_type} ignored')


    async def _handle_push(self, payload: Dict[str, Any]) -> WebhookDecision:
        ref = payload.get('ref')
        if not isinstance(ref, str) or not ref.startswith('refs/heads/'):
            return WebhookDecision(action='ignored', message=f'Push to {ref or "unknown ref"} ignored')

        branch = ref[len('refs/heads/'):]
        after = payload.get('after')
        if after == ZERO_SHA or payload.get('deleted'):
            return WebhookDecision(action='ignored', branch=branch,
                                   message=f'Branch {branch} was deleted')

        return await self.dispatch(branch, after if isinstance(after, str) else None)


    async def _handle_pull_request(self, payload: Dict[str, Any]) -> WebhookDecision:
        pr = payload.get('pull_request')
        if not isinstance(pr, dict) or payload.get('action') != 'closed' or not pr.get('merged'):
            return WebhookDecision(action='ignored', message='Pull request was not merged')

        base = pr.get('base')
        branch = base.get('ref') if isinstance(base, dict) else None
        if not isinstance(branch, str) or not branch:
            return WebhookDecision(action='ignored', message='Pull request has no base branch')

        commit = pr.get('merge_commit_sha')
        return await self.dispatch(branch, commit if isinstance(commit, str) else None)


    async def dispatch(self, branch: str, commit: Optional[str] = None) -> WebhookDecision:
        """
        Act on new commits arriving on branch
        """

        env_name = self.environment_for(branch)
        if env_name is None:
            logger.info(f'Push to unmapped branch {branch} ignored')
            return WebhookDecision(action='ignored', branch=branch, commit=commit,
                                   message=f'Branch {branch} is not mapped to an environment')

        env = self.environments()[env_name]
        if not env.auto_deploy:
            self.store.set(UPDATE_AVAILABLE_KEY, True)
            self.store.set(LATEST_COMMIT_KEY, {
                'sha': commit,
                'branch': branch,
                'timestamp': time.time(),
            })
            logger.info(f'Update available on {branch} for {env_name}')
            return WebhookDecision(action='update_available', branch=branch,
                                   environment=env_name, commit=commit,
                                   message=f'Auto-deploy disabled for {env_name}, update marked')

        if self.site.webhook_mode == 'schedule' and self.queue is not None:
            self.queue.enqueue(DEPLOY_JOB, {'reference': branch}, delay=DEPLOY_DELAY)
            return WebhookDecision(action='scheduled', branch=branch,
                                   environment=env_name, commit=commit,
                                   message=f'Deployment of {branch} queued')

        result = await self.deployer.deploy(branch)
        if isinstance(result, SyncError):
            return WebhookDecision(action='failed', branch=branch,
                                   environment=env_name, commit=commit,
                                   message=result.message)

        return WebhookDecision(action='deployed', branch=branch, environment=env_name,
                               commit=commit, result=result,
                               message=f'Deployed {branch} to {env_name}')


# The end.
