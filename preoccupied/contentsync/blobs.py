"""
Blob upload for single files.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import asyncio
import base64
import logging
from typing import Any, Dict, Union

from .client import GitHubClient
from .errors import ErrorKind, SyncError


logger = logging.getLogger(__name__)


SAMPLE_SIZE = 1024
CONTROL_RATIO = 0.1
LARGE_FILE_THRESHOLD = 3 * 1024 * 1024  # 3MB
DEFAULT_TIMEOUT = 30.0
LARGE_FILE_TIMEOUT = 60.0
MAX_ATTEMPTS = 3

_WHITESPACE = (9, 10, 13)


def is_binary(sample: bytes) -> bool:
    """
    Heuristic over the first SAMPLE_SIZE bytes. A NUL byte, or more than
    CONTROL_RATIO of the sample being control characters other than tab,
    newline and carriage return, marks the content as binary.
    """

    sample = sample[:SAMPLE_SIZE]
    if not sample:
        return False

    if b'\0' in sample:
        return True

    control = sum(1 for b in sample if (b < 32 and b not in _WHITESPACE) or b == 127)
    return (control / len(sample)) > CONTROL_RATIO


def is_valid_text(content: bytes) -> bool:
    if b'\0' in content:
        return False
    try:
        content.decode('utf-8')
    except UnicodeDecodeError:
        return False
    return True


def encode_content(content: bytes, force_base64: bool = False) -> Dict[str, str]:
    """
    The blob request body for content
    """

    if force_base64 or is_binary(content) or not is_valid_text(content):
        return {
            'content': base64.b64encode(content).decode('ascii'),
            'encoding': 'base64',
        }

    return {
        'content': content.decode('utf-8'),
        'encoding': 'utf-8',
    }


def is_encoding_failure(err: SyncError) -> bool:
    return 'encoding' in err.message.lower() or err.status in (400, 422)


class BlobCreator:
    """
    Creates content-addressed blobs, one file at a time
    """

    def __init__(self, client: GitHubClient, max_attempts: int = MAX_ATTEMPTS,
                 backoff: float = 1.0):
        self.client = client
        self.max_attempts = max_attempts
        self.backoff = backoff


    async def create_blob(self, file_path: str, logical_path: str) -> Union[Dict[str, Any], SyncError]:
        """
        Upload the file at file_path. logical_path is its path in the
        repository, used for log and error messages. On success returns
        the API's blob record plus 'binary' and 'encoding' keys.
        """

        try:
            with open(file_path, 'rb') as f:
                content = f.read()
        except OSError as e:
            logger.error(f'Failed to read {logical_path}: {e}')
            return SyncError(ErrorKind.FILESYSTEM, f'Could not read {logical_path}: {e}')

        binary = is_binary(content)
        blob_data = encode_content(content)
        if not binary and blob_data['encoding'] == 'base64':
            logger.debug(f'{logical_path} contains null bytes or invalid UTF-8, using base64')

        timeout = DEFAULT_TIMEOUT
        if len(content) > LARGE_FILE_THRESHOLD:
            logger.info(f'Large file detected ({len(content)} bytes): {logical_path}')
            timeout = LARGE_FILE_TIMEOUT

        result, blob_data = await self._create_with_retries(content, blob_data, logical_path, timeout)
        if isinstance(result, SyncError):
            logger.error(f'Failed to create blob for {logical_path}: {result.message}')
            return result

        result = dict(result)
        result['binary'] = binary
        result['encoding'] = blob_data['encoding']
        return result


    async def _create_with_retries(self, content: bytes, blob_data: Dict[str, str],
                                   logical_path: str, timeout: float):
        """
        Returns the API result and the request body which produced it
        """

        path = self.client.repo_path('git/blobs')
        result = None

        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                logger.debug(f'Retry #{attempt} for blob creation: {logical_path}')
                await asyncio.sleep(self.backoff * attempt)

            result = await self.client.request(path, 'POST', blob_data, timeout=timeout)
            if not isinstance(result, SyncError):
                return result, blob_data

            logger.warning(f'Blob creation attempt #{attempt} failed for {logical_path}: {result.message}')

            if is_encoding_failure(result):
                if blob_data['encoding'] == 'base64':
                    result = result.wrap(ErrorKind.ENCODING, f'{logical_path} rejected as base64')
                    break
                logger.debug(f'Retrying blob creation with forced base64 encoding for {logical_path}')
                blob_data = encode_content(content, force_base64=True)
            elif result.kind is not ErrorKind.TRANSPORT:
                break

        return result, blob_data


# The end.
