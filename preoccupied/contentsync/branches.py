"""
Branch reference resolution, creation, and update.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import base64
import logging
import re
from typing import Any, Dict, Union

from .client import GitHubClient
from .errors import ErrorKind, SyncError


logger = logging.getLogger(__name__)


SEED_FILE = 'README.md'
SEED_CONTENT = (
    '# Content Sync\n\n'
    'This repository was initialized by preoccupied.contentsync.\n'
)


_BRANCH_CHARS = re.compile(r'^[A-Za-z0-9_.\-/]+$')
_BRANCH_FORBIDDEN = re.compile(r'^\.|/$|\.\.|\s|[\x00-\x1f\x7f]')


def is_valid_branch_name(branch: str) -> bool:
    """
    Check a branch name against the git ref naming restrictions this
    service cares about
    """

    if not branch:
        return False
    if not _BRANCH_CHARS.match(branch):
        return False
    if _BRANCH_FORBIDDEN.search(branch):
        return False
    if branch == 'HEAD' or branch.endswith('.lock'):
        return False
    if '@{' in branch:
        return False
    return True


class BranchManager:
    """
    Resolves and moves the branch references of one repository
    """

    def __init__(self, client: GitHubClient):
        self.client = client


    async def get_branch_reference(self, branch: str) -> Union[Dict[str, Any], SyncError]:
        return await self.client.request(self.client.repo_path(f'git/ref/heads/{branch}'))


    async def get_or_create_branch_reference(
            self,
            branch: str,
            default_branch: str) -> Union[Dict[str, Any], SyncError]:
        """
        The reference for branch. A missing branch is created from the
        head of default_branch. If default_branch is missing as well the
        repository has no commits, and is seeded with a single file
        committed onto branch.
        """

        if not is_valid_branch_name(branch):
            return SyncError(ErrorKind.VALIDATION, f'Invalid branch name: {branch!r}')

        ref = await self.get_branch_reference(branch)
        if not isinstance(ref, SyncError):
            return ref

        if ref.kind is not ErrorKind.NOT_FOUND:
            logger.error(f'Failed to get reference for branch {branch}: {ref.message}')
            return ref

        logger.info(f'Branch {branch} not found, creating it from {default_branch}')
        return await self._create_from_default(branch, default_branch)


    async def _create_from_default(self, branch: str, default_branch: str):
        default_ref = await self.get_branch_reference(default_branch)

        if isinstance(default_ref, SyncError):
            if default_ref.kind is ErrorKind.NOT_FOUND:
                logger.info(f'Default branch {default_branch} not found, initializing'
                            f' empty repository with branch {branch}')
                return await self._create_initial_branch(branch)

            return default_ref.wrap(default_ref.kind,
                                    f'Failed to get default branch reference ({default_branch})')

        created = await self.client.request(
            self.client.repo_path('git/refs'), 'POST',
            {
                'ref': f'refs/heads/{branch}',
                'sha': default_ref['object']['sha'],
            })

        if isinstance(created, SyncError):
            logger.error(f'Failed to create branch {branch}: {created.message}')
            return created.wrap(created.kind, f'Failed to create branch {branch}')

        logger.info(f'Created branch {branch} from {default_branch}')
        return created


    async def _create_initial_branch(self, branch: str):
        # the git data endpoints refuse to work on a repository with no
        # commits, but the contents endpoint will create the first one
        seeded = await self.client.request(
            self.client.repo_path(f'contents/{SEED_FILE}'), 'PUT',
            {
                'message': 'Initial commit',
                'content': base64.b64encode(SEED_CONTENT.encode('utf-8')).decode('ascii'),
                'branch': branch,
            })

        if isinstance(seeded, SyncError):
            logger.error(f'Failed to initialize empty repository: {seeded.message}')
            return seeded.wrap(seeded.kind, 'Failed to initialize the empty repository')

        logger.info(f'Created initial commit on branch {branch}')

        ref = await self.get_branch_reference(branch)
        if isinstance(ref, SyncError):
            return ref.wrap(ref.kind, 'Repository initialized but the branch reference'
                                      ' could not be retrieved')
        return ref


    async def update_branch_reference(self, branch: str, commit_sha: str) -> Union[bool, SyncError]:
        """
        Point branch at commit_sha. The update is never forced, so a
        non-fast-forward update is refused by the remote and reported as
        a REF_UPDATE error.
        """

        if not is_valid_branch_name(branch):
            return SyncError(ErrorKind.VALIDATION, f'Invalid branch name: {branch!r}')

        result = await self.client.request(
            self.client.repo_path(f'git/refs/heads/{branch}'), 'PATCH',
            {
                'sha': commit_sha,
                'force': False,
            })

        if isinstance(result, SyncError):
            logger.error(f'Failed to update branch {branch} to {commit_sha}: {result.message}')
            return result.wrap(ErrorKind.REF_UPDATE, f'Failed to update branch {branch}')

        logger.info(f'Updated branch {branch} to {commit_sha}')
        return True


# The end.
