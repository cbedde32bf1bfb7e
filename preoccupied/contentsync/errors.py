"""
Structured error values for the contentsync service.

Every component boundary hands back a SyncError rather than raising one.
Internally a component may raise the same object and convert it back to a
value before returning.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """
    Closed set of failure categories
    """

    AUTH = 'auth'
    NOT_FOUND = 'not_found'
    RATE_LIMIT = 'rate_limit'
    TRANSPORT = 'transport'
    ENCODING = 'encoding'
    TREE_CREATION = 'tree_creation'
    COMMIT = 'commit'
    REF_UPDATE = 'ref_update'
    DOWNLOAD = 'download'
    EXTRACTION = 'extraction'
    FILESYSTEM = 'filesystem'
    SIGNATURE = 'signature'
    LOCK_CONTENTION = 'lock_contention'
    VALIDATION = 'validation'


class SyncError(Exception):
    """
    A failure with a kind, a human readable message, and the HTTP status
    which produced it (if any)
    """

    def __init__(self, kind: ErrorKind, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status = status


    def __repr__(self):
        return f'SyncError({self.kind.value!r}, {self.message!r}, status={self.status!r})'


    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, SyncError):
            return NotImplemented
        return (self.kind, self.message, self.status) == \
            (other.kind, other.message, other.status)


    def __hash__(self):
        return hash((self.kind, self.message, self.status))


    def wrap(self, kind: ErrorKind, prefix: str) -> 'SyncError':
        """
        A new error of the given kind whose message is prefixed onto this
        one. The HTTP status is carried along.
        """

        return SyncError(kind, f'{prefix}: {self.message}', self.status)


    def as_dict(self):
        return {
            'kind': self.kind.value,
            'message': self.message,
            'status': self.status,
        }


# The end.
