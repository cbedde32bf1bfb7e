"""
Push of the local content tree to the repository as a new commit.

The push is a resumable state machine. Each call to run_chunk performs
one bounded unit of work and persists a SyncState, then queues the next
call. The phases are:

  SCANNING       resolve the branch and its tree, list the files
  UPLOADING      create the blobs for one batch of files
  BUILDING_TREE  create one tree chunk, based on the previous chunk
  COMMITTING     create the commit with the branch head as its parent
  UPDATING_REF   move the branch to the new commit, never forcing

A failure in any phase leaves the SyncState marked fatal, with the
causing message, and stops the chain of queued chunks.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import logging
import os
import time
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Union

from pydantic import BaseModel, Field

from .blobs import BlobCreator
from .branches import BranchManager, is_valid_branch_name
from .client import GitHubClient
from .config import SiteConfig
from .errors import ErrorKind, SyncError
from .fsutil import normalize_path
from .progress import ProgressTracker
from .store import StateStore
from .tasks import IN_PROGRESS_KEY, SYNC_STATE_KEY, TaskQueue
from .trees import TreeBuilder, new_stats


logger = logging.getLogger(__name__)


CHUNK_JOB = 'sync_chunk'
CHUNK_DELAY = 5
LAST_PUSHED_KEY = 'last_pushed_commit'


class Phase(str, Enum):
    SCANNING = 'scanning'
    UPLOADING = 'uploading'
    BUILDING_TREE = 'building_tree'
    COMMITTING = 'committing'
    UPDATING_REF = 'updating_ref'
    COMPLETE = 'complete'
    FAILED = 'failed'


# progress step shown for each phase
PHASE_STEPS = {
    Phase.SCANNING: 1,
    Phase.UPLOADING: 2,
    Phase.BUILDING_TREE: 3,
    Phase.COMMITTING: 4,
    Phase.UPDATING_REF: 5,
    Phase.COMPLETE: 6,
}


class SyncState(BaseModel):
    branch: str
    message: str
    phase: Phase = Phase.SCANNING

    base_commit: Optional[str] = None
    base_tree: Optional[str] = None

    files: List[Dict[str, str]] = Field(default_factory=list)
    cursor: int = 0

    tree_items: List[Dict[str, str]] = Field(default_factory=list)
    tree_cursor: int = 0
    last_tree: Optional[str] = None

    commit: Optional[str] = None

    stats: Dict[str, int] = Field(default_factory=new_stats)
    skipped: List[Dict[str, str]] = Field(default_factory=list)

    error: Optional[str] = None
    fatal: bool = False

    started: float = Field(default_factory=time.time)
    updated: float = Field(default_factory=time.time)


class ChunkResult(NamedTuple):
    status: str
    commit: Optional[str] = None
    error: Optional[SyncError] = None


class SyncOrchestrator:
    """
    Drives the chunked push of one site's content tree
    """

    def __init__(
            self,
            site: SiteConfig,
            client: GitHubClient,
            store: StateStore,
            progress: ProgressTracker,
            queue: Optional[TaskQueue] = None,
            blob_creator: Optional[BlobCreator] = None):

        self.site = site
        self.client = client
        self.store = store
        self.progress = progress
        self.queue = queue

        self.branches = BranchManager(client)
        self.trees = TreeBuilder(client,
                                 blob_creator or BlobCreator(client),
                                 chunk_size=site.tree_chunk_size,
                                 progress_callback=progress.callback,
                                 ignore_patterns=site.ignore_patterns)


    def get_state(self) -> Optional[SyncState]:
        data = self.store.get(SYNC_STATE_KEY)
        return SyncState.model_validate(data) if data else None


    def save_state(self, state: SyncState) -> None:
        state.updated = time.time()
        self.store.set(SYNC_STATE_KEY, state.model_dump(mode='json'))


    def is_running(self) -> bool:
        state = self.get_state()
        return state is not None and not state.fatal


    def _schedule(self, delay: float) -> None:
        if self.queue is not None:
            self.queue.enqueue(CHUNK_JOB, delay=delay)


    def start(self, branch: Optional[str] = None,
              message: Optional[str] = None) -> Union[SyncState, SyncError]:
        """
        Begin a new push of the content tree onto branch (the tracked
        branch by default). The work itself happens in run_chunk.
        """

        branch = branch or self.site.branch
        if not is_valid_branch_name(branch):
            return SyncError(ErrorKind.VALIDATION, f'Invalid branch name: {branch!r}')

        current = self.get_state()
        if current is not None and not current.fatal:
            return SyncError(ErrorKind.LOCK_CONTENTION,
                             f'A sync to {current.branch} is already in progress')

        if current is not None:
            logger.info(f'Discarding failed sync state: {current.error}')

        state = SyncState(branch=branch, message=message or self.site.get_commit_message())
        self.save_state(state)
        self.store.set(IN_PROGRESS_KEY, True)

        self.progress.reset()
        self.progress.update(PHASE_STEPS[Phase.SCANNING], f'Starting sync to {branch}')
        logger.info(f'Starting sync of {self.site.name} to branch {branch}')

        self._schedule(0)
        return state


    async def run_chunk(self) -> ChunkResult:
        """
        Perform the next unit of work for the current SyncState
        """

        state = self.get_state()
        if state is None:
            return ChunkResult('failed', error=SyncError(ErrorKind.NOT_FOUND, 'No sync in progress'))

        if state.fatal:
            return ChunkResult('failed', error=SyncError(ErrorKind.VALIDATION,
                                                         f'Sync previously failed: {state.error}'))

        logger.info(f'Continuing sync of {self.site.name} at phase {state.phase.value}')

        step = getattr(self, f'_phase_{state.phase.value}')
        try:
            err = await step(state)
        except Exception as e:
            logger.exception(f'Unexpected failure in sync phase {state.phase.value}')
            err = SyncError(ErrorKind.VALIDATION, f'Unexpected error: {e}')

        if err is not None:
            return self._fail(state, err)

        if state.phase is Phase.COMPLETE:
            return self._complete(state)

        self.save_state(state)
        self.progress.update(PHASE_STEPS[state.phase], f'Sync phase: {state.phase.value}')
        self._schedule(CHUNK_DELAY)
        return ChunkResult('continuing')


    async def run(self) -> ChunkResult:
        """
        Run chunks back to back until the push completes or fails
        """

        result = await self.run_chunk()
        while result.status == 'continuing':
            result = await self.run_chunk()

        if self.queue is not None:
            self.queue.cancel(CHUNK_JOB)
        return result


    def _fail(self, state: SyncState, err: SyncError) -> ChunkResult:
        logger.error(f'Sync of {self.site.name} failed during {state.phase.value}: {err.message}')

        step = PHASE_STEPS.get(state.phase, 0)
        state.phase = Phase.FAILED
        state.error = err.message
        state.fatal = True
        self.save_state(state)

        if self.queue is not None:
            self.queue.cancel(CHUNK_JOB)
        self.store.delete(IN_PROGRESS_KEY)

        self.progress.update(step, f'Error: {err.message}', 'failed')
        return ChunkResult('failed', error=err)


    def _complete(self, state: SyncState) -> ChunkResult:
        self.store.delete(SYNC_STATE_KEY)
        self.store.delete(IN_PROGRESS_KEY)
        self.store.set(LAST_PUSHED_KEY, state.commit)

        self.progress.update_stats(state.stats)
        self.progress.update(PHASE_STEPS[Phase.COMPLETE],
                             f'Sync complete, {state.branch} is now at {state.commit}',
                             'complete')

        logger.info(f'Sync of {self.site.name} complete: {state.branch} -> {state.commit}')
        return ChunkResult('complete', commit=state.commit)


    async def _default_branch(self) -> str:
        repo = await self.client.get_repository()
        if isinstance(repo, SyncError) or not repo.get('default_branch'):
            return self.site.branch
        return repo['default_branch']


    async def _phase_scanning(self, state: SyncState) -> Optional[SyncError]:
        default_branch = await self._default_branch()

        ref = await self.branches.get_or_create_branch_reference(state.branch, default_branch)
        if isinstance(ref, SyncError):
            return ref

        state.base_commit = ref['object']['sha']
        commit = await self.client.get_git_commit(state.base_commit)
        if isinstance(commit, SyncError):
            return commit.wrap(commit.kind, f'Failed to read commit {state.base_commit}')
        state.base_tree = commit['tree']['sha']

        files = []
        prefix = normalize_path(self.site.repo_prefix)
        for managed in self.site.managed_paths:
            managed = normalize_path(managed)
            path = os.path.join(self.site.directory, managed)
            if not os.path.isdir(path):
                logger.debug(f'Managed path {path} does not exist')
                continue

            entries, skipped = self.trees.scan_directory(
                path, f'{prefix}/{managed}' if prefix else managed)
            files.extend(entries)
            state.skipped.extend(skipped)

        if not files:
            return SyncError(ErrorKind.TREE_CREATION, 'No valid files to upload')

        state.files = sorted(files, key=lambda e: e['path'])
        state.stats['total_files'] = len(files)
        state.last_tree = state.base_tree
        state.phase = Phase.UPLOADING

        self.progress.update_stats(state.stats)
        logger.info(f'Found {len(files)} files to upload ({len(state.skipped)} skipped)')
        return None


    async def _phase_uploading(self, state: SyncState) -> Optional[SyncError]:
        batch = state.files[state.cursor:state.cursor + self.site.files_per_chunk]

        self.trees.stats = dict(state.stats)
        items, failed = await self.trees.create_tree_items(batch)

        state.tree_items.extend(items)
        state.skipped.extend(failed)
        state.stats = dict(self.trees.stats)
        state.cursor += len(batch)

        self.progress.callback(2, f'Uploaded {state.cursor} of {len(state.files)} files',
                               state.stats)

        if state.cursor < len(state.files):
            return None

        if not state.tree_items:
            return SyncError(ErrorKind.TREE_CREATION, 'No valid files to upload')

        state.tree_items.sort(key=lambda i: i['path'])
        state.phase = Phase.BUILDING_TREE
        return None


    async def _phase_building_tree(self, state: SyncState) -> Optional[SyncError]:
        size = self.site.tree_chunk_size
        chunk = state.tree_items[state.tree_cursor:state.tree_cursor + size]

        tree = await self.trees.create_tree_chunk(chunk, state.last_tree)
        if isinstance(tree, SyncError):
            return tree

        state.last_tree = tree
        state.tree_cursor += len(chunk)

        if state.tree_cursor >= len(state.tree_items):
            state.phase = Phase.COMMITTING
        return None


    async def _phase_committing(self, state: SyncState) -> Optional[SyncError]:
        body: Dict[str, Any] = {
            'message': state.message,
            'tree': state.last_tree,
        }
        if state.base_commit:
            body['parents'] = [state.base_commit]

        commit = await self.client.request(self.client.repo_path('git/commits'), 'POST', body)
        if isinstance(commit, SyncError):
            return commit.wrap(ErrorKind.COMMIT, 'Failed to create commit')

        state.commit = commit['sha']
        state.phase = Phase.UPDATING_REF
        logger.info(f'Created commit {state.commit} with tree {state.last_tree}')
        return None


    async def _phase_updating_ref(self, state: SyncState) -> Optional[SyncError]:
        result = await self.branches.update_branch_reference(state.branch, state.commit)
        if isinstance(result, SyncError):
            return result.wrap(ErrorKind.REF_UPDATE, 'Commit created, but the branch was not updated')

        state.phase = Phase.COMPLETE
        return None


# The end.
