"""
Tree assembly from a local directory.

A single tree-create call has a practical ceiling on its item count, so
the items are sent in chunks. Each chunk names the tree produced by the
previous chunk as its base_tree, and the tree from the final chunk is
the tree of the whole directory.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import logging
import os
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from .blobs import BlobCreator
from .client import GitHubClient
from .errors import ErrorKind, SyncError
from .fsutil import is_safe_path, normalize_path, should_ignore


logger = logging.getLogger(__name__)


DEFAULT_CHUNK_SIZE = 500
PROGRESS_EVERY = 20
EXCLUDED_NAMES = frozenset(('node_modules', 'vendor', '.git', 'cache'))

MODE_FILE = '100644'
MODE_EXECUTABLE = '100755'


ProgressCallback = Callable[[int, str, Dict[str, int]], None]


def new_stats() -> Dict[str, int]:
    return {
        'total_files': 0,
        'processed_files': 0,
        'binary_files': 0,
        'text_files': 0,
        'blobs_created': 0,
        'failures': 0,
    }


def file_mode(path: str) -> str:
    return MODE_EXECUTABLE if os.access(path, os.X_OK) else MODE_FILE


class TreeBuilder:
    """
    Uploads the files of a directory as blobs and assembles them into a
    tree, reporting progress along the way
    """

    def __init__(
            self,
            client: GitHubClient,
            blob_creator: BlobCreator,
            chunk_size: int = DEFAULT_CHUNK_SIZE,
            progress_callback: Optional[ProgressCallback] = None,
            ignore_patterns: Sequence[str] = ()):

        self.client = client
        self.blob_creator = blob_creator
        self.chunk_size = chunk_size
        self.progress_callback = progress_callback
        self.ignore_patterns = list(ignore_patterns)
        self.stats = new_stats()


    def report(self, sub_step: int, detail: str) -> None:
        if self.progress_callback is not None:
            self.progress_callback(sub_step, detail, dict(self.stats))


    def scan_directory(self, directory: str, path_prefix: str = '') \
            -> Tuple[List[Dict[str, str]], List[Dict[str, str]]]:
        """
        Find the files under directory eligible for upload. Returns the
        entries (local_path, path, mode) sorted by repository path, and the
        skipped paths with a reason.
        """

        prefix = normalize_path(path_prefix)
        entries = []
        skipped = []

        for dirpath, dirnames, filenames in os.walk(directory):
            rel_dir = os.path.relpath(dirpath, directory)
            rel_dir = '' if rel_dir == '.' else normalize_path(rel_dir)

            keep = []
            for d in sorted(dirnames):
                rel = f'{rel_dir}/{d}' if rel_dir else d
                if d.startswith('.') or d in EXCLUDED_NAMES:
                    skipped.append({'path': rel, 'reason': 'excluded'})
                elif should_ignore(rel, self.ignore_patterns):
                    skipped.append({'path': rel, 'reason': 'ignored'})
                else:
                    keep.append(d)
            dirnames[:] = keep

            for name in sorted(filenames):
                rel = f'{rel_dir}/{name}' if rel_dir else name
                local = os.path.join(dirpath, name)

                if name.startswith('.') or os.path.islink(local):
                    skipped.append({'path': rel, 'reason': 'excluded'})
                    continue

                if not is_safe_path(rel):
                    skipped.append({'path': rel, 'reason': 'unsafe_path'})
                    continue

                if should_ignore(rel, self.ignore_patterns):
                    skipped.append({'path': rel, 'reason': 'ignored'})
                    continue

                entries.append({
                    'local_path': local,
                    'path': f'{prefix}/{rel}' if prefix else rel,
                    'mode': file_mode(local),
                })

        entries.sort(key=lambda e: e['path'])
        return entries, skipped


    async def create_tree_items(self, entries: List[Dict[str, str]]) \
            -> Tuple[List[Dict[str, str]], List[Dict[str, str]]]:
        """
        Create a blob for every entry. Returns the tree items for the
        blobs which were created, and the entries which failed.
        """

        items = []
        failed = []

        for entry in entries:
            blob = await self.blob_creator.create_blob(entry['local_path'], entry['path'])
            self.stats['processed_files'] += 1

            if isinstance(blob, SyncError):
                self.stats['failures'] += 1
                failed.append({'path': entry['path'], 'reason': blob.message})
                logger.warning(f'Skipping {entry["path"]}: {blob.message}')

            else:
                self.stats['blobs_created'] += 1
                if blob.get('binary'):
                    self.stats['binary_files'] += 1
                else:
                    self.stats['text_files'] += 1

                items.append({
                    'path': entry['path'],
                    'mode': entry['mode'],
                    'type': 'blob',
                    'sha': blob['sha'],
                })

            if self.stats['processed_files'] % PROGRESS_EVERY == 0:
                self.report(2, f'Processed {self.stats["processed_files"]} of'
                               f' {self.stats["total_files"]} files')

        return items, failed


    async def create_tree_chunk(self, items: List[Dict[str, str]],
                                base_tree: Optional[str] = None) -> Union[str, SyncError]:
        """
        One tree-create call. Returns the new tree's sha.
        """

        body: Dict[str, Any] = {'tree': items}
        if base_tree:
            body['base_tree'] = base_tree

        logger.info(f'Creating tree chunk with {len(items)} items based on {base_tree}')
        result = await self.client.request(self.client.repo_path('git/trees'), 'POST', body)

        if isinstance(result, SyncError):
            logger.error(f'Failed to create tree chunk: {result.message}')
            return result.wrap(ErrorKind.TREE_CREATION, 'Failed to create tree chunk')

        return result['sha']


    async def create_tree_from_items(self, items: List[Dict[str, str]],
                                     base_tree: Optional[str] = None) -> Union[str, SyncError]:
        """
        Chain tree chunks of at most chunk_size items, each built on the
        previous. Returns the final tree's sha.
        """

        tree = base_tree
        total = len(items)
        for offset in range(0, total, self.chunk_size):
            chunk = items[offset:offset + self.chunk_size]
            self.report(3, f'Creating tree chunk {offset // self.chunk_size + 1}'
                           f' ({offset + len(chunk)} of {total} items)')

            tree = await self.create_tree_chunk(chunk, tree)
            if isinstance(tree, SyncError):
                return tree

        return tree


    async def create_tree_from_directory(self, directory: str,
                                         base_tree: Optional[str] = None,
                                         path_prefix: str = '') -> Union[str, SyncError]:
        """
        Upload every eligible file under directory and return the sha of
        the resulting tree. Files which fail to upload are skipped, but if
        none succeed the whole operation fails.
        """

        if not os.path.isdir(directory):
            return SyncError(ErrorKind.FILESYSTEM, f'Directory not found: {directory}')

        self.stats = new_stats()
        entries, skipped = self.scan_directory(directory, path_prefix)
        self.stats['total_files'] = len(entries)
        self.report(1, f'Found {len(entries)} files to upload ({len(skipped)} skipped)')

        items, failed = await self.create_tree_items(entries)
        self.report(2, f'Created {len(items)} blobs ({len(failed)} failed)')

        if not items:
            return SyncError(ErrorKind.TREE_CREATION, 'No valid files to upload')

        return await self.create_tree_from_items(items, base_tree)


# The end.
