"""
Authenticated transport to the remote Git-data API.

Requests never raise for HTTP or network failures. Every call returns
either the decoded JSON body or a SyncError describing what went wrong.
Retrying is left to the callers.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx

from . import __version__
from .errors import ErrorKind, SyncError


logger = logging.getLogger(__name__)


API_VERSION = '2022-11-28'
DEFAULT_TIMEOUT = 30.0
ARCHIVE_TIMEOUT = 300.0
RATE_LIMIT_WARNING = 100
RATE_LIMIT_THRESHOLD = 10
RATE_LIMIT_MAX_WAIT = 60.0


TokenFactory = Callable[[], Awaitable[Optional[str]]]


def classify_status(status: int, headers: Optional[httpx.Headers] = None, message: str = '') -> ErrorKind:
    """
    Map an HTTP failure status onto an ErrorKind
    """

    remaining = headers.get('x-ratelimit-remaining') if headers is not None else None

    if status == 429 or (status == 403 and remaining == '0'):
        return ErrorKind.RATE_LIMIT
    elif status in (401, 403):
        return ErrorKind.AUTH
    elif status == 404:
        return ErrorKind.NOT_FOUND
    elif status == 409 and 'empty' in message.lower():
        # GitHub answers 409 for the git data endpoints of an empty repository
        return ErrorKind.NOT_FOUND
    elif status in (400, 422):
        return ErrorKind.VALIDATION
    else:
        return ErrorKind.TRANSPORT


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None

    if isinstance(data, dict) and data.get('message'):
        message = data['message']
        errors = data.get('errors')
        if errors:
            details = '; '.join(str(e.get('message', e)) if isinstance(e, dict) else str(e)
                                for e in errors)
            message = f'{message} ({details})'
        return message

    return response.text or response.reason_phrase or f'HTTP {response.status_code}'


def _header_int(headers: httpx.Headers, name: str) -> Optional[int]:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


class RateLimitGate:
    """
    Tracks the quota reported by the API and how long to hold off before
    the next request. A request is never repeated here; callers simply
    wait out an exhausted quota or a secondary limit before sending.
    """

    def __init__(self, threshold: int = RATE_LIMIT_THRESHOLD,
                 max_wait: float = RATE_LIMIT_MAX_WAIT):

        self.threshold = threshold
        self.max_wait = max_wait

        self.remaining: Optional[int] = None
        self.reset: Optional[int] = None
        self.blocked_until = 0.0
        self.attempts = 0


    def delay(self, now: Optional[float] = None) -> float:
        """
        Seconds to wait before the next request, capped at max_wait
        """

        if now is None:
            now = time.time()

        wait = self.blocked_until - now
        if self.remaining is not None and self.remaining < self.threshold and self.reset:
            wait = max(wait, self.reset - now)

        return min(max(wait, 0.0), self.max_wait)


    def observe(self, response: httpx.Response, now: Optional[float] = None) -> None:
        if now is None:
            now = time.time()

        headers = response.headers
        remaining = _header_int(headers, 'x-ratelimit-remaining')
        if remaining is not None:
            self.remaining = remaining
            self.reset = _header_int(headers, 'x-ratelimit-reset')

        status = response.status_code
        if status == 429 or (status == 403 and ('retry-after' in headers or remaining == 0)):
            retry_after = _header_int(headers, 'retry-after')
            if retry_after is not None:
                self.blocked_until = now + retry_after
            elif remaining != 0:
                # secondary limit without a hint, back off exponentially
                self.attempts += 1
                backoff = 2 ** min(self.attempts, 6) + random.random()
                self.blocked_until = now + backoff
            logger.warning(f'API rate limit hit, holding requests for {self.delay(now):.0f}s')

        elif status < 400:
            self.attempts = 0


    async def wait(self) -> None:
        delay = self.delay()
        if delay > 0:
            logger.warning(f'API rate limit exhausted, waiting {delay:.0f}s')
            await asyncio.sleep(delay)


class GitHubClient:
    """
    Client for one repository on the remote API
    """

    def __init__(
            self,
            owner: str,
            repo: str,
            token: Optional[str] = None,
            token_factory: Optional[TokenFactory] = None,
            api_url: str = 'https://api.github.com',
            transport: Optional[httpx.AsyncBaseTransport] = None):

        self.owner = owner
        self.repo = repo
        self.api_url = api_url.rstrip('/')
        self.transport = transport

        self._token = token
        self._token_factory = token_factory
        self.rate_limit = RateLimitGate()


    @classmethod
    def for_site(cls, site, transport: Optional[httpx.AsyncBaseTransport] = None) -> 'GitHubClient':
        """
        Build a client from a SiteConfig
        """

        parsed = site.owner_repo
        if parsed is None:
            raise ValueError(f'Cannot parse repository URL {site.git_url!r} for site {site.name!r}')

        owner, repo = parsed
        return cls(owner, repo,
                   token_factory=site.token,
                   api_url=site.api_url,
                   transport=transport)


    def repo_path(self, suffix: str = '') -> str:
        path = f'repos/{self.owner}/{self.repo}'
        return f'{path}/{suffix.lstrip("/")}' if suffix else path


    async def token(self) -> Optional[str]:
        # the factory does its own caching and refreshes near expiry
        if self._token_factory is not None:
            return await self._token_factory()
        return self._token


    async def headers(self) -> Dict[str, str]:
        headers = {
            'Accept': 'application/vnd.github+json',
            'User-Agent': f'preoccupied-contentsync/{__version__}',
            'X-GitHub-Api-Version': API_VERSION,
        }

        token = await self.token()
        if token:
            headers['Authorization'] = f'Bearer {token}'

        return headers


    async def _prepare(self, path: str) -> Union[Dict[str, str], SyncError]:
        """
        Wait out any rate limit, then build the request headers. A
        failure to obtain credentials is reported as an AUTH error.
        """

        await self.rate_limit.wait()

        try:
            return await self.headers()
        except Exception as e:
            logger.error(f'Could not obtain credentials for {path}: {e}')
            return SyncError(ErrorKind.AUTH, f'Could not obtain credentials: {e}')


    def _log_rate_limit(self, response: httpx.Response) -> None:
        remaining = response.headers.get('x-ratelimit-remaining')
        if remaining is None:
            return

        limit = response.headers.get('x-ratelimit-limit', '?')
        if remaining.isdigit() and int(remaining) < RATE_LIMIT_WARNING:
            logger.warning(f'API rate limit low: {remaining}/{limit} requests remaining')
        else:
            logger.debug(f'API rate limit: {remaining}/{limit} requests remaining')


    async def request(
            self,
            path: str,
            method: str = 'GET',
            body: Optional[Any] = None,
            timeout: Optional[float] = None,
            params: Optional[Dict[str, Any]] = None) -> Union[Any, SyncError]:
        """
        Issue a single API request. Returns the decoded JSON response
        (an empty dict for bodiless responses) or a SyncError.
        """

        url = f'{self.api_url}/{path.lstrip("/")}'

        headers = await self._prepare(path)
        if isinstance(headers, SyncError):
            return headers

        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                response = await client.request(
                    method, url,
                    headers=headers,
                    json=body,
                    params=params,
                    timeout=timeout or DEFAULT_TIMEOUT,
                )
        except httpx.HTTPError as e:
            logger.error(f'{method} {path} failed: {e}')
            return SyncError(ErrorKind.TRANSPORT, f'Request to {path} failed: {e}')

        self._log_rate_limit(response)
        self.rate_limit.observe(response)

        if response.status_code >= 400:
            message = _error_message(response)
            kind = classify_status(response.status_code, response.headers, message)
            logger.debug(f'{method} {path} returned {response.status_code}: {message}')
            return SyncError(kind, message, response.status_code)

        if not response.content:
            return {}

        try:
            return response.json()
        except ValueError:
            return SyncError(ErrorKind.TRANSPORT,
                             f'Invalid JSON in response from {path}',
                             response.status_code)


    async def get_repository(self):
        return await self.request(self.repo_path())


    async def get_branches(self):
        return await self.request(self.repo_path('branches'), params={'per_page': 100})


    async def get_commits(self, branch: str, per_page: int = 10):
        return await self.request(self.repo_path('commits'),
                                  params={'sha': branch, 'per_page': per_page})


    async def get_latest_commit(self, branch: str):
        """
        The head commit of branch
        """

        commits = await self.get_commits(branch, per_page=1)
        if isinstance(commits, SyncError):
            return commits
        if not commits:
            return SyncError(ErrorKind.NOT_FOUND, f'No commits found on branch {branch}')
        return commits[0]


    async def get_commit(self, sha: str):
        return await self.request(self.repo_path(f'commits/{sha}'))


    async def get_git_commit(self, sha: str):
        return await self.request(self.repo_path(f'git/commits/{sha}'))


    async def get_contents(self, path: str, ref: Optional[str] = None):
        params = {'ref': ref} if ref else None
        return await self.request(self.repo_path(f'contents/{path.lstrip("/")}'), params=params)


    async def compare(self, base: str, head: str):
        return await self.request(self.repo_path(f'compare/{base}...{head}'))


    async def changed_files(self, base: str, head: str) -> Union[List[str], SyncError]:
        """
        Filenames changed between base and head
        """

        result = await self.compare(base, head)
        if isinstance(result, SyncError):
            return result
        return [f['filename'] for f in result.get('files', ())]


    async def download_archive(self, ref: str, dest: str) -> Optional[SyncError]:
        """
        Stream the zip archive of ref into the file at dest
        """

        url = f'{self.api_url}/{self.repo_path(f"zipball/{ref}")}'
        logger.info(f'Downloading archive of {ref} from {self.owner}/{self.repo}')

        headers = await self._prepare(url)
        if isinstance(headers, SyncError):
            return headers

        try:
            async with httpx.AsyncClient(transport=self.transport, follow_redirects=True) as client:
                async with client.stream('GET', url, headers=headers, timeout=ARCHIVE_TIMEOUT) as response:
                    self._log_rate_limit(response)
                    self.rate_limit.observe(response)

                    if response.status_code >= 400:
                        await response.aread()
                        message = _error_message(response)
                        return SyncError(ErrorKind.DOWNLOAD,
                                         f'Failed to download archive of {ref}: {message}',
                                         response.status_code)

                    with open(dest, 'wb') as out:
                        async for chunk in response.aiter_bytes():
                            out.write(chunk)

        except httpx.HTTPError as e:
            return SyncError(ErrorKind.DOWNLOAD, f'Failed to download archive of {ref}: {e}')
        except OSError as e:
            return SyncError(ErrorKind.FILESYSTEM, f'Failed to write archive of {ref}: {e}')

        return None


# The end.
