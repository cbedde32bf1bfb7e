"""
Progress of the current long-running job, kept where an operator (or
the /progress endpoint) can poll it.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import logging
import time
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

from .store import MemoryStateStore, StateStore


logger = logging.getLogger(__name__)


PROGRESS_KEY = 'progress'
CACHE_TTL = 60 * 60  # 1 hour


Status = Literal['pending', 'running', 'failed', 'complete']


class ProgressState(BaseModel):
    step: int = 0
    sub_step: Optional[int] = None
    status: Status = 'pending'
    detail: str = ''
    stats: Dict[str, Any] = Field(default_factory=dict)
    percentage: int = 0
    timestamp: float = 0.0


def compute_percentage(stats: Dict[str, Any]) -> int:
    total = stats.get('total_files') or 0
    processed = stats.get('processed_files') or 0
    if total <= 0:
        return 0
    return min(100, round(processed * 100 / total))


class ProgressTracker:
    """
    Holds the one current ProgressState. Every update overwrites it, and
    is written to the durable store and to a fast-read cache.
    """

    def __init__(self, store: StateStore, cache: Optional[StateStore] = None):
        self.store = store
        self.cache = cache if cache is not None else MemoryStateStore()
        self.state = self.get()


    def _save(self) -> None:
        data = self.state.model_dump()
        self.store.set(PROGRESS_KEY, data)
        self.cache.set(PROGRESS_KEY, data, ttl=CACHE_TTL)


    def update(self, step: int, detail: str = '', status: Status = 'running',
               sub_step: Optional[int] = None) -> ProgressState:

        stats = dict(self.state.stats)
        self.state = ProgressState(
            step=step,
            sub_step=sub_step,
            status=status,
            detail=detail,
            stats=stats,
            percentage=compute_percentage(stats),
            timestamp=max(time.time(), self.state.timestamp),
        )
        self._save()

        sub = f', sub-step {sub_step}' if sub_step is not None else ''
        logger.debug(f'Progress: step {step}{sub} - {detail} [{status}]')
        return self.state


    def update_stats(self, stats: Dict[str, Any]) -> None:
        """
        Replace the named statistics. Producers report running totals, so
        values are never added together.
        """

        self.state.stats.update(stats)


    def callback(self, sub_step: int, detail: str, stats: Optional[Dict[str, Any]] = None) -> None:
        """
        Progress callback for producers such as the TreeBuilder. Keeps the
        current step, and updates the sub-step, detail, and statistics.
        """

        if stats:
            self.update_stats(stats)
        self.update(self.state.step, detail, 'running', sub_step)


    def fail(self, detail: str) -> ProgressState:
        return self.update(self.state.step, detail, 'failed')


    def reset(self) -> None:
        self.state = ProgressState()
        self.store.set(PROGRESS_KEY, self.state.model_dump())
        self.cache.delete(PROGRESS_KEY)
        logger.info('Progress tracker reset')


    def get(self) -> ProgressState:
        data = self.cache.get(PROGRESS_KEY)
        if data is None:
            data = self.store.get(PROGRESS_KEY)
        return ProgressState.model_validate(data) if data else ProgressState()


# The end.
