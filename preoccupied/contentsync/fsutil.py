"""
Filesystem helpers for the content tree: path safety, ignore matching,
the maintenance marker, and the snapshot diff used when merging a
deployment into the live tree.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import hashlib
import logging
import os
import shutil
from fnmatch import fnmatch
from pathlib import Path
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence


logger = logging.getLogger(__name__)


Snapshot = Dict[str, str]


def normalize_path(path: str) -> str:
    """
    Forward slashes, no leading slash or ./, no empty segments
    """

    parts = [p for p in path.replace('\\', '/').split('/') if p not in ('', '.')]
    return '/'.join(parts)


def is_safe_path(path: str) -> bool:
    """
    True if the relative path cannot escape the directory it is
    resolved against
    """

    if not path or '\0' in path:
        return False

    raw = path.replace('\\', '/')
    if raw.startswith('/') or (len(raw) > 1 and raw[1] == ':'):
        return False

    return '..' not in raw.split('/')


def should_ignore(relpath: str, patterns: Sequence[str]) -> bool:
    """
    True if any ignore pattern matches the relative path as a whole, or
    any single component of it
    """

    relpath = normalize_path(relpath)
    parts = relpath.split('/')

    for pattern in patterns:
        if fnmatch(relpath, pattern):
            return True
        if any(fnmatch(part, pattern) for part in parts):
            return True

    return False


def enable_maintenance(marker: str) -> None:
    with open(marker, 'w') as f:
        f.write('Site is undergoing maintenance. Please check back shortly.\n')
    logger.info(f'Maintenance mode enabled ({marker})')


def disable_maintenance(marker: str) -> None:
    if os.path.exists(marker):
        os.unlink(marker)
        logger.info(f'Maintenance mode disabled ({marker})')


def file_digest(path: str) -> str:
    h = hashlib.sha256()
    with open(path, 'rb') as f:
        for block in iter(lambda: f.read(65536), b''):
            h.update(block)
    return h.hexdigest()


def walk_files(root: str, subdirs: Optional[Iterable[str]] = None,
               patterns: Sequence[str] = ()) -> List[str]:
    """
    Relative paths of the regular files under root, limited to the given
    subdirectories when any are named. Ignored paths are pruned.
    """

    root_path = Path(root)
    tops = [root_path / normalize_path(s) for s in subdirs] if subdirs else [root_path]

    found = []
    for top in tops:
        if not top.is_dir():
            continue

        for dirpath, dirnames, filenames in os.walk(top):
            rel_dir = Path(dirpath).relative_to(root_path).as_posix()
            rel_dir = '' if rel_dir == '.' else rel_dir

            dirnames[:] = sorted(d for d in dirnames
                                 if not should_ignore(f'{rel_dir}/{d}' if rel_dir else d, patterns))

            for name in filenames:
                rel = f'{rel_dir}/{name}' if rel_dir else name
                full = os.path.join(dirpath, name)
                if should_ignore(rel, patterns) or os.path.islink(full):
                    continue
                found.append(rel)

    return sorted(found)


def snapshot_tree(root: str, subdirs: Optional[Iterable[str]] = None,
                  patterns: Sequence[str] = ()) -> Snapshot:
    """
    Map of relative path to content digest for the files under root
    """

    return {rel: file_digest(os.path.join(root, rel))
            for rel in walk_files(root, subdirs, patterns)}


class MergePlan(NamedTuple):
    copy: List[str]
    delete: List[str]


def plan_merge(source: Snapshot, target: Snapshot, delete_removed: bool = True) -> MergePlan:
    """
    Compare two snapshots. Files new in source, or whose digest differs,
    are to be copied. With delete_removed, files only in target are to be
    deleted. Neither snapshot is touched.
    """

    copy = sorted(p for p, digest in source.items() if target.get(p) != digest)
    delete = sorted(p for p in target if p not in source) if delete_removed else []
    return MergePlan(copy, delete)


def _prune_empty_dirs(root: str, relpath: str) -> None:
    parent = os.path.dirname(relpath)
    while parent:
        full = os.path.join(root, parent)
        try:
            os.rmdir(full)
        except OSError:
            break
        parent = os.path.dirname(parent)


def apply_plan(plan: MergePlan, source_root: str, target_root: str) -> None:
    """
    Carry out a MergePlan. Raises OSError on the first failure.
    """

    for rel in plan.copy:
        dest = os.path.join(target_root, rel)
        os.makedirs(os.path.dirname(dest), exist_ok=True)
        shutil.copy2(os.path.join(source_root, rel), dest)
        logger.debug(f'Copied {rel}')

    for rel in plan.delete:
        os.unlink(os.path.join(target_root, rel))
        _prune_empty_dirs(target_root, rel)
        logger.debug(f'Deleted {rel}')

    logger.info(f'Merged {len(plan.copy)} changed and {len(plan.delete)} removed files'
                f' into {target_root}')


def copy_tree(source_root: str, dest_root: str, subdirs: Optional[Iterable[str]] = None,
              patterns: Sequence[str] = ()) -> int:
    """
    Copy the non-ignored files under source_root into dest_root,
    preserving relative paths. Returns the number of files copied.
    """

    files = walk_files(source_root, subdirs, patterns)
    for rel in files:
        dest = os.path.join(dest_root, rel)
        os.makedirs(os.path.dirname(dest), exist_ok=True)
        shutil.copy2(os.path.join(source_root, rel), dest)
    return len(files)


# The end.
