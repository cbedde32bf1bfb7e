"""
Unit tests for the API client and error classification.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import os
from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest

from preoccupied.contentsync.client import GitHubClient, RateLimitGate, classify_status
from preoccupied.contentsync.config import SiteConfig
from preoccupied.contentsync.errors import ErrorKind, SyncError


class TestSyncError:
    """
    Tests for the SyncError value type.
    """

    def test_wrap_keeps_status(self):
        err = SyncError(ErrorKind.VALIDATION, 'Update is not a fast forward', 422)
        wrapped = err.wrap(ErrorKind.REF_UPDATE, 'Failed to update branch main')

        assert wrapped.kind is ErrorKind.REF_UPDATE
        assert wrapped.message == 'Failed to update branch main: Update is not a fast forward'
        assert wrapped.status == 422

    def test_equality_and_dict(self):
        a = SyncError(ErrorKind.NOT_FOUND, 'Not Found', 404)
        b = SyncError(ErrorKind.NOT_FOUND, 'Not Found', 404)

        assert a == b
        assert hash(a) == hash(b)
        assert a.as_dict() == {'kind': 'not_found', 'message': 'Not Found', 'status': 404}


class TestClassifyStatus:
    """
    Tests for classify_status().
    """

    @pytest.mark.parametrize('status,headers,message,kind', [
        (401, None, '', ErrorKind.AUTH),
        (403, {'x-ratelimit-remaining': '10'}, '', ErrorKind.AUTH),
        (403, {'x-ratelimit-remaining': '0'}, '', ErrorKind.RATE_LIMIT),
        (429, None, '', ErrorKind.RATE_LIMIT),
        (404, None, '', ErrorKind.NOT_FOUND),
        (409, None, 'Git Repository is empty.', ErrorKind.NOT_FOUND),
        (409, None, 'Conflict', ErrorKind.TRANSPORT),
        (422, None, '', ErrorKind.VALIDATION),
        (400, None, '', ErrorKind.VALIDATION),
        (502, None, '', ErrorKind.TRANSPORT),
    ])
    def test_classify(self, status, headers, message, kind):
        hdrs = httpx.Headers(headers) if headers else None
        assert classify_status(status, hdrs, message) is kind


@pytest.mark.asyncio
class TestGitHubClient:
    """
    Tests for GitHubClient requests.
    """

    async def test_request_success(self, client, fake_github):
        """
        Test a successful request decodes JSON and sends credentials.
        """

        data = await client.get_repository()
        assert data['default_branch'] == 'main'

        captured = []

        def handler(request):
            captured.append(request)
            return httpx.Response(200, json={'ok': True})

        api = GitHubClient('test', 'repo', token='abc', transport=httpx.MockTransport(handler))
        assert await api.request('repos/test/repo') == {'ok': True}

        headers = captured[0].headers
        assert headers['Authorization'] == 'Bearer abc'
        assert headers['Accept'] == 'application/vnd.github+json'
        assert headers['X-GitHub-Api-Version'] == '2022-11-28'
        assert headers['User-Agent'].startswith('preoccupied-contentsync/')

    async def test_request_error_message(self):
        """
        Test an HTTP failure becomes a SyncError carrying the API message.
        """

        def handler(request):
            return httpx.Response(422, json={
                'message': 'Validation Failed',
                'errors': [{'message': 'bad sha'}],
            })

        api = GitHubClient('test', 'repo', transport=httpx.MockTransport(handler))
        result = await api.request('repos/test/repo/git/trees', method='POST', body={})

        assert result == SyncError(ErrorKind.VALIDATION, 'Validation Failed (bad sha)', 422)

    async def test_request_network_failure(self):
        """
        Test a network failure becomes a TRANSPORT error.
        """

        def handler(request):
            raise httpx.ConnectError('connection refused', request=request)

        api = GitHubClient('test', 'repo', transport=httpx.MockTransport(handler))
        result = await api.request('repos/test/repo')

        assert isinstance(result, SyncError)
        assert result.kind is ErrorKind.TRANSPORT
        assert result.status is None

    async def test_request_empty_body(self):
        """
        Test a bodiless success decodes to an empty dict.
        """

        api = GitHubClient('test', 'repo',
                           transport=httpx.MockTransport(lambda r: httpx.Response(204)))
        assert await api.request('repos/test/repo', method='DELETE') == {}

    async def test_token_factory_consulted_per_request(self):
        """
        Test the token factory is asked for credentials on every request,
        so a refreshed installation token is picked up.
        """

        factory = AsyncMock(side_effect=['tok1', 'tok2'])
        seen = []

        def handler(request):
            seen.append(request.headers['Authorization'])
            return httpx.Response(200, json={})

        api = GitHubClient('test', 'repo', token_factory=factory,
                           transport=httpx.MockTransport(handler))

        await api.request('repos/test/repo')
        await api.request('repos/test/repo')

        assert seen == ['Bearer tok1', 'Bearer tok2']
        assert factory.await_count == 2

    async def test_token_factory_failure(self, temp_dir):
        """
        Test a failure to produce credentials becomes an AUTH error and no
        request is sent.
        """

        factory = AsyncMock(side_effect=FileNotFoundError('No such file: key.pem'))
        handler = Mock(return_value=httpx.Response(200, json={}))
        api = GitHubClient('test', 'repo', token_factory=factory,
                           transport=httpx.MockTransport(handler))

        result = await api.request('repos/test/repo')

        assert isinstance(result, SyncError)
        assert result.kind is ErrorKind.AUTH
        assert 'key.pem' in result.message
        handler.assert_not_called()

        result = await api.download_archive('main', os.path.join(temp_dir, 'archive.zip'))
        assert result.kind is ErrorKind.AUTH

    async def test_latest_commit_and_changed_files(self, client, fake_github):
        first = fake_github.commit_files({'a.txt': b'a'})
        second = fake_github.commit_files({'b.txt': b'b'})

        latest = await client.get_latest_commit('main')
        assert latest['sha'] == second

        changed = await client.changed_files(first, second)
        assert changed == ['b.txt']

    async def test_latest_commit_empty_repo(self, client):
        result = await client.get_latest_commit('main')
        assert isinstance(result, SyncError)
        assert result.kind is ErrorKind.NOT_FOUND

    async def test_download_archive(self, client, fake_github, temp_dir):
        """
        Test the archive of a ref is streamed into a file.
        """

        fake_github.commit_files({'themes/a.css': b'a'})
        dest = os.path.join(temp_dir, 'archive.zip')

        assert await client.download_archive('main', dest) is None
        with open(dest, 'rb') as f:
            assert f.read(2) == b'PK'

    async def test_download_archive_missing(self, client, fake_github, temp_dir):
        fake_github.commit_files({'themes/a.css': b'a'})
        result = await client.download_archive('nope', os.path.join(temp_dir, 'archive.zip'))

        assert result.kind is ErrorKind.DOWNLOAD
        assert result.status == 404


def _response(status=200, **headers):
    return httpx.Response(status, headers=headers, json={})


class TestRateLimitGate:
    """
    Tests for RateLimitGate.
    """

    def test_no_information(self):
        gate = RateLimitGate()
        gate.observe(_response(), now=1000)
        assert gate.delay(now=1000) == 0

    def test_plenty_remaining(self):
        gate = RateLimitGate()
        gate.observe(_response(**{'x-ratelimit-remaining': '4000',
                                  'x-ratelimit-reset': '1030'}), now=1000)
        assert gate.delay(now=1000) == 0

    def test_low_quota_waits_for_reset(self):
        gate = RateLimitGate()
        gate.observe(_response(**{'x-ratelimit-remaining': '3',
                                  'x-ratelimit-reset': '1030'}), now=1000)

        assert gate.delay(now=1000) == 30
        assert gate.delay(now=1020) == 10
        assert gate.delay(now=1031) == 0

    def test_wait_is_capped(self):
        gate = RateLimitGate()
        gate.observe(_response(403, **{'x-ratelimit-remaining': '0',
                                       'x-ratelimit-reset': '5000'}), now=1000)
        assert gate.delay(now=1000) == 60

    def test_retry_after(self):
        gate = RateLimitGate()
        gate.observe(_response(429, **{'retry-after': '12'}), now=1000)

        assert gate.delay(now=1000) == 12
        assert gate.delay(now=1012) == 0

    def test_secondary_limit_backs_off(self):
        gate = RateLimitGate()

        gate.observe(_response(429), now=1000)
        first = gate.delay(now=1000)
        gate.observe(_response(429), now=1000)
        second = gate.delay(now=1000)

        assert 2 <= first < 3
        assert 4 <= second < 5

        gate.observe(_response(200), now=2000)
        assert gate.attempts == 0

    @pytest.mark.asyncio
    async def test_request_waits_before_sending(self):
        """
        Test a client holds off after an exhausted quota, and sends the
        request once without repeating it.
        """

        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={}, headers={'x-ratelimit-remaining': '0',
                                                         'x-ratelimit-reset': '1045'})

        api = GitHubClient('test', 'repo', transport=httpx.MockTransport(handler))

        with patch('preoccupied.contentsync.client.time.time', return_value=1000), \
             patch('preoccupied.contentsync.client.asyncio.sleep', new_callable=AsyncMock) as sleep:

            await api.request('repos/test/repo')
            sleep.assert_not_awaited()

            await api.request('repos/test/repo')
            sleep.assert_awaited_once_with(45)

        assert len(calls) == 2


class TestForSite:
    """
    Tests for GitHubClient.for_site().
    """

    def test_for_site(self, site_config):
        api = GitHubClient.for_site(site_config)
        assert (api.owner, api.repo) == ('test', 'repo')
        assert api.repo_path('git/blobs') == 'repos/test/repo/git/blobs'

    def test_for_site_bad_url(self):
        config = SiteConfig(name='bad', directory='/tmp/bad', git_url='not a url')
        with pytest.raises(ValueError, match='Cannot parse repository URL'):
            GitHubClient.for_site(config)


# The end.
