"""
Shared pytest fixtures for contentsync tests.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import base64
import hashlib
import io
import json
import os
import re
import tempfile
import zipfile
from typing import Dict, List, Optional

import httpx
import pytest

from preoccupied.contentsync import github
from preoccupied.contentsync.client import GitHubClient
from preoccupied.contentsync.config import GlobalConfig, RootConfig, SiteConfig
from preoccupied.contentsync.store import MemoryStateStore


def _sha(kind: str, data: bytes) -> str:
    return hashlib.sha1(kind.encode('ascii') + b' %d\0' % len(data) + data).hexdigest()


def _json(status: int, data=None, headers=None) -> httpx.Response:
    return httpx.Response(status, json=data if data is not None else {}, headers=headers)


def make_zip(files: Dict[str, bytes], wrapper: Optional[str] = 'owner-repo-abc1234') -> bytes:
    """
    A zip archive holding files, inside a single wrapper folder the way
    repository archives are laid out
    """

    buf = io.BytesIO()
    with zipfile.ZipFile(buf, 'w') as zf:
        if wrapper:
            zf.writestr(f'{wrapper}/', b'')
        for path, content in files.items():
            zf.writestr(f'{wrapper}/{path}' if wrapper else path, content)
    return buf.getvalue()


class FakeGitHub:
    """
    In-memory stand-in for the parts of the GitHub REST API used by
    contentsync, served through httpx.MockTransport
    """

    def __init__(self, owner: str = 'test', repo: str = 'repo', default_branch: str = 'main'):
        self.owner = owner
        self.repo = repo
        self.default_branch = default_branch

        self.blobs: Dict[str, bytes] = {}
        self.trees: Dict[str, Dict[str, dict]] = {}
        self.commits: Dict[str, dict] = {}
        self.refs: Dict[str, str] = {}

        self.calls: List[tuple] = []
        self.fail: Dict[tuple, httpx.Response] = {}
        self.archive_override: Optional[bytes] = None

        self.transport = httpx.MockTransport(self.handle)


    # --- repository state helpers

    def add_blob(self, content: bytes) -> str:
        sha = _sha('blob', content)
        self.blobs[sha] = content
        return sha


    def add_tree(self, items: Dict[str, dict]) -> str:
        data = json.dumps(sorted(items.items()), sort_keys=True).encode('utf-8')
        sha = _sha('tree', data)
        self.trees[sha] = dict(items)
        return sha


    def add_commit(self, tree: str, parents: List[str], message: str) -> str:
        data = json.dumps([tree, parents, message, len(self.commits)]).encode('utf-8')
        sha = _sha('commit', data)
        self.commits[sha] = {'tree': tree, 'parents': list(parents), 'message': message}
        return sha


    def commit_files(self, files: Dict[str, bytes], branch: Optional[str] = None,
                     message: str = 'Add files') -> str:
        """
        Commit files on top of branch, creating the branch if needed
        """

        branch = branch or self.default_branch
        parent = self.refs.get(branch)
        items = dict(self.trees[self.commits[parent]['tree']]) if parent else {}
        for path, content in files.items():
            items[path] = {'path': path, 'mode': '100644', 'type': 'blob',
                           'sha': self.add_blob(content)}

        sha = self.add_commit(self.add_tree(items), [parent] if parent else [], message)
        self.refs[branch] = sha
        return sha


    def files_at(self, ref: str) -> Dict[str, bytes]:
        sha = self.refs.get(ref, ref)
        tree = self.trees[self.commits[sha]['tree']]
        return {path: self.blobs[item['sha']] for path, item in tree.items()}


    def ancestors(self, sha: str) -> List[str]:
        seen = []
        todo = [sha]
        while todo:
            current = todo.pop()
            if current in seen:
                continue
            seen.append(current)
            todo.extend(self.commits[current]['parents'])
        return seen


    def requests(self, method: str, suffix: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == method and c[1].endswith(suffix)]


    # --- request handling

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content) if request.content else None
        self.calls.append((request.method, path, body))

        failure = self.fail.get((request.method, path))
        if failure is not None:
            return failure

        prefix = f'/repos/{self.owner}/{self.repo}'
        if not path.startswith(prefix):
            return _json(404, {'message': 'Not Found'})

        return self.route(request, path[len(prefix):].lstrip('/'), body)


    def route(self, request: httpx.Request, path: str, body) -> httpx.Response:
        method = request.method
        empty = not self.commits

        if method == 'GET' and path == '':
            return _json(200, {'full_name': f'{self.owner}/{self.repo}',
                               'default_branch': self.default_branch})

        m = re.fullmatch(r'git/ref/heads/(.+)', path)
        if method == 'GET' and m:
            if empty:
                return _json(409, {'message': 'Git Repository is empty.'})
            sha = self.refs.get(m.group(1))
            if sha is None:
                return _json(404, {'message': 'Not Found'})
            return _json(200, {'ref': f'refs/heads/{m.group(1)}', 'object': {'sha': sha}})

        if method == 'POST' and path == 'git/refs':
            branch = body['ref'][len('refs/heads/'):]
            if branch in self.refs:
                return _json(422, {'message': 'Reference already exists'})
            self.refs[branch] = body['sha']
            return _json(201, {'ref': body['ref'], 'object': {'sha': body['sha']}})

        m = re.fullmatch(r'git/refs/heads/(.+)', path)
        if method == 'PATCH' and m:
            branch = m.group(1)
            current = self.refs.get(branch)
            if current is None:
                return _json(422, {'message': 'Reference does not exist'})
            if not body.get('force') and current not in self.ancestors(body['sha']):
                return _json(422, {'message': 'Update is not a fast forward'})
            self.refs[branch] = body['sha']
            return _json(200, {'ref': f'refs/heads/{branch}', 'object': {'sha': body['sha']}})

        m = re.fullmatch(r'contents/(.+)', path)
        if method == 'PUT' and m:
            content = base64.b64decode(body['content'])
            sha = self.commit_files({m.group(1): content}, body.get('branch'), body['message'])
            return _json(201, {'commit': {'sha': sha}})

        if method == 'POST' and path == 'git/blobs':
            if body['encoding'] == 'base64':
                content = base64.b64decode(body['content'])
            else:
                content = body['content'].encode('utf-8')
            return _json(201, {'sha': self.add_blob(content)})

        if method == 'POST' and path == 'git/trees':
            items = {}
            base = body.get('base_tree')
            if base:
                if base not in self.trees:
                    return _json(422, {'message': 'Invalid base_tree'})
                items.update(self.trees[base])
            for item in body['tree']:
                items[item['path']] = dict(item)
            return _json(201, {'sha': self.add_tree(items)})

        m = re.fullmatch(r'git/commits/([0-9a-f]+)', path)
        if method == 'GET' and m:
            commit = self.commits.get(m.group(1))
            if commit is None:
                return _json(404, {'message': 'Not Found'})
            return _json(200, {'sha': m.group(1), 'tree': {'sha': commit['tree']},
                               'parents': [{'sha': p} for p in commit['parents']]})

        if method == 'POST' and path == 'git/commits':
            sha = self.add_commit(body['tree'], body.get('parents', []), body['message'])
            return _json(201, {'sha': sha})

        if method == 'GET' and path == 'commits':
            if empty:
                return _json(409, {'message': 'Git Repository is empty.'})
            ref = request.url.params.get('sha', self.default_branch)
            head = self.refs.get(ref, ref if ref in self.commits else None)
            if head is None:
                return _json(404, {'message': 'Not Found'})
            per_page = int(request.url.params.get('per_page', 30))
            history = []
            while head and len(history) < per_page:
                history.append(self._commit_info(head))
                parents = self.commits[head]['parents']
                head = parents[0] if parents else None
            return _json(200, history)

        m = re.fullmatch(r'commits/([0-9a-f]+)', path)
        if method == 'GET' and m:
            if m.group(1) not in self.commits:
                return _json(404, {'message': 'Not Found'})
            return _json(200, self._commit_info(m.group(1)))

        m = re.fullmatch(r'compare/([^.]+)\.\.\.(.+)', path)
        if method == 'GET' and m:
            base = self.files_at(m.group(1))
            head = self.files_at(m.group(2))
            changed = sorted(p for p in set(base) | set(head) if base.get(p) != head.get(p))
            return _json(200, {'files': [{'filename': p} for p in changed]})

        if method == 'GET' and path == 'branches':
            return _json(200, [{'name': b, 'commit': {'sha': s}} for b, s in self.refs.items()])

        m = re.fullmatch(r'zipball/(.+)', path)
        if method == 'GET' and m:
            if self.archive_override is not None:
                return httpx.Response(200, content=self.archive_override)
            ref = m.group(1)
            if ref not in self.refs and ref not in self.commits:
                return _json(404, {'message': 'Not Found'})
            return httpx.Response(200, content=make_zip(self.files_at(ref)))

        return _json(404, {'message': f'No fake for {method} {path}'})


    def _commit_info(self, sha: str) -> dict:
        return {
            'sha': sha,
            'commit': {
                'message': self.commits[sha]['message'],
                'author': {'name': 'Test Author', 'date': '2024-01-01T00:00:00Z'},
            },
        }


@pytest.fixture
def temp_dir():
    """
    Create a temporary directory for tests.
    """

    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture(autouse=True)
def clear_token_cache():
    """
    Clear the installation token cache before each test.
    """

    github._token_cache.clear()
    yield
    github._token_cache.clear()


@pytest.fixture
def fake_github():
    return FakeGitHub()


@pytest.fixture
def archive_file(temp_dir):
    """
    Write a repository archive of files into the temporary directory, and
    return its path.
    """

    def write(files: Dict[str, bytes], name: str = 'archive.zip') -> str:
        path = os.path.join(temp_dir, name)
        with open(path, 'wb') as f:
            f.write(make_zip(files))
        return path

    return write


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def client(fake_github):
    return GitHubClient('test', 'repo', token='test-token', transport=fake_github.transport)


@pytest.fixture
def site_dir(temp_dir):
    """
    A live content tree with a theme and a plugin.
    """

    root = os.path.join(temp_dir, 'site')
    for rel, content in (('themes/theme1/style.css', 'body { color: red; }\n'),
                         ('themes/theme1/index.php', '<?php echo "hi"; ?>\n'),
                         ('plugins/plugin1/plugin1.php', '<?php // plugin ?>\n')):
        path = os.path.join(root, rel)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'w') as f:
            f.write(content)
    return root


@pytest.fixture
def site_config(temp_dir, site_dir):
    """
    Create a SiteConfig rooted in the temporary directory.
    """

    return SiteConfig(
        name='test-site',
        directory=site_dir,
        git_url='https://github.com/test/repo.git',
        branch='main',
        github_token='test-token',
        state_dir=os.path.join(temp_dir, 'state'),
        maintenance_file=os.path.join(temp_dir, '.maintenance'),
    )


@pytest.fixture
def mock_config(site_config):
    """
    Create a RootConfig holding the test site.
    """

    return RootConfig(
        global_=GlobalConfig(),
        sites={'test-site': site_config},
    )


@pytest.fixture
def mock_env_vars(monkeypatch):
    """
    Clear and optionally set environment variables for testing.
    """

    env_vars_to_clear = [
        'CONFIG_PATH',
        'CONTENTSYNC_GITHUB_TOKEN',
        'CONTENTSYNC_GITHUB_APP_ID',
        'CONTENTSYNC_GITHUB_INSTALLATION_ID',
        'CONTENTSYNC_GITHUB_KEYFILE',
        'CONTENTSYNC_WEBHOOK_SECRET',
        'CONTENTSYNC_STATE_DIR',
        'CONTENTSYNC_SITE_NAME',
        'CONTENTSYNC_SITE_DIRECTORY',
        'CONTENTSYNC_SITE_GIT_URL',
        'CONTENTSYNC_SITE_BRANCH',
    ]

    for var in env_vars_to_clear:
        monkeypatch.delenv(var, raising=False)

    return monkeypatch


# The end.
