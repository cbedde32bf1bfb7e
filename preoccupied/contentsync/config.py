"""
Configuration models and loading for the contentsync application.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import logging
import os
import re
from typing import Any, Dict, List, Literal, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, model_validator

from .github import resolve_token


logger = logging.getLogger(__name__)


CONFIG_PATH = os.environ.get('CONFIG_PATH', '/config/config.yaml')


DEFAULT_IGNORES = [
    '.git',
    'node_modules',
    'uploads',
    'cache',
    '*.log',
    '.env',
    'wp-config.php',
]


_config: Optional['RootConfig'] = None


_REPO_URL_PATTERNS = (
    re.compile(r'^https?://github\.com/([^/]+)/([^/]+?)(?:\.git)?/?$'),
    re.compile(r'^git@github\.com:([^/]+)/([^/]+?)(?:\.git)?$'),
    re.compile(r'^https?://api\.github\.com/repos/([^/]+)/([^/]+?)(?:/.*)?$'),
    re.compile(r'^([^/:@\s]+)/([^/\s]+?)(?:\.git)?$'),
)


def parse_repo_url(url: str) -> Optional[Tuple[str, str]]:
    """
    Parse a repository URL into an (owner, repo) pair. Accepts https and
    ssh clone URLs, API URLs, and the bare owner/repo form. Returns None
    if the URL is not recognized.
    """

    url = (url or '').strip()
    if not url:
        return None

    for pattern in _REPO_URL_PATTERNS:
        match = pattern.match(url)
        if match:
            return match.group(1), match.group(2)

    logger.error(f'Failed to parse repository URL: {url}')
    return None


class GlobalConfig(BaseModel):
    """
    Global configuration settings
    """

    github_token: Optional[str] = None
    github_app_id: Optional[str] = None
    github_installation_id: Optional[str] = None
    github_keyfile: Optional[str] = None

    webhook_secret: Optional[str] = None

    api_url: str = 'https://api.github.com'
    state_dir: str = '/var/lib/contentsync'
    worker_interval: float = 5.0


class EnvironmentConfig(BaseModel):
    """
    A deployment environment fed by a single branch
    """

    branch: str
    auto_deploy: bool = True
    enabled: bool = True


class SiteConfig(BaseModel):
    """
    Site configuration. The directory is the live content tree mirrored
    against the repository at git_url.
    """

    name: str
    directory: str
    git_url: str
    branch: str = 'main'

    managed_paths: List[str] = Field(default_factory=lambda: ['themes', 'plugins'])
    repo_prefix: str = ''
    ignore_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_IGNORES))

    github_token: Optional[str] = None
    github_app_id: Optional[str] = None
    github_installation_id: Optional[str] = None
    github_keyfile: Optional[str] = None
    api_url: str = 'https://api.github.com'

    webhook_secret: Optional[str] = None
    webhook_mode: Literal['schedule', 'direct'] = 'schedule'
    webhook_deploy: bool = True
    environments: Dict[str, EnvironmentConfig] = Field(default_factory=dict)

    auto_deploy: bool = False
    check_interval: int = 0

    create_backup: bool = True
    backup_config_file: bool = False
    config_file: Optional[str] = None
    backup_dir: Optional[str] = None
    backup_retention: int = 5

    maintenance_mode: bool = True
    maintenance_file: Optional[str] = None
    delete_removed: bool = True

    lock_expiry: int = 600
    history_limit: int = 20
    files_per_chunk: int = 50
    tree_chunk_size: int = 500
    commit_message: Optional[str] = None

    state_dir: str = '/var/lib/contentsync'
    state_file: Optional[str] = None


    @property
    def owner_repo(self) -> Optional[Tuple[str, str]]:
        return parse_repo_url(self.git_url)


    @property
    def full_name(self) -> Optional[str]:
        parsed = self.owner_repo
        return f'{parsed[0]}/{parsed[1]}' if parsed else None


    def get_state_file(self) -> str:
        return self.state_file or os.path.join(self.state_dir, f'{self.name}.json')


    def get_backup_dir(self) -> str:
        return self.backup_dir or os.path.join(self.state_dir, 'backups', self.name)


    def get_maintenance_file(self) -> str:
        return self.maintenance_file or \
            os.path.join(os.path.dirname(os.path.abspath(self.directory)), '.maintenance')


    def get_commit_message(self) -> str:
        return self.commit_message or f'Sync from {self.name}'


    def get_environments(self, branch: Optional[str] = None) -> Dict[str, EnvironmentConfig]:
        """
        The branch to environment mapping. Without any explicit
        environments, the tracked branch (or the given branch, when the
        site has been switched onto another) feeds 'production'.
        """

        if self.environments:
            return self.environments

        return {
            'production': EnvironmentConfig(branch=branch or self.branch,
                                            auto_deploy=self.webhook_deploy),
        }


    async def token(self) -> Optional[str]:
        """
        The API token for this site, either the configured personal token
        or a freshly exchanged GitHub App installation token.
        """

        return await resolve_token(
            github_token=self.github_token,
            github_keyfile=self.github_keyfile,
            github_app_id=self.github_app_id,
            github_installation_id=self.github_installation_id,
            api_url=self.api_url,
        )


class RootConfig(BaseModel):
    """
    Root configuration model
    """

    global_: GlobalConfig = Field(alias='global', default_factory=GlobalConfig)
    sites: Dict[str, SiteConfig] = Field(default_factory=dict)

    model_config = {'populate_by_name': True}


    @model_validator(mode='before')
    def apply_global_defaults(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply global config defaults to sites that don't have them set.
        """

        if not isinstance(v, dict):
            return v

        glbl = v.get('global', v.get('global_', {}))
        if isinstance(glbl, GlobalConfig):
            glbl = glbl.model_dump()
        glbl = GlobalConfig.model_validate(glbl or {})

        fixed = {'global': glbl}
        sites = fixed['sites'] = {}

        for site_name, site in (v.get('sites') or {}).items():
            if isinstance(site, SiteConfig):
                sites[site_name] = site
                continue

            site = sites[site_name] = dict(site)
            site.setdefault('name', site_name)
            site.setdefault('github_token', glbl.github_token)
            site.setdefault('github_keyfile', glbl.github_keyfile)
            site.setdefault('github_app_id', glbl.github_app_id)
            site.setdefault('github_installation_id', glbl.github_installation_id)
            site.setdefault('webhook_secret', glbl.webhook_secret)
            site.setdefault('api_url', glbl.api_url)
            site.setdefault('state_dir', glbl.state_dir)

        return fixed


def _config_from_env() -> Dict[str, Any]:
    """
    Build configuration dictionary from CONTENTSYNC_* environment variables.
    """

    # credentials and the webhook secret are global, and will be the
    # baseline for the ENV site and any site loaded from the config file
    global_config = {}
    pairs = (
        ('CONTENTSYNC_GITHUB_TOKEN', 'github_token'),
        ('CONTENTSYNC_GITHUB_APP_ID', 'github_app_id'),
        ('CONTENTSYNC_GITHUB_INSTALLATION_ID', 'github_installation_id'),
        ('CONTENTSYNC_GITHUB_KEYFILE', 'github_keyfile'),
        ('CONTENTSYNC_WEBHOOK_SECRET', 'webhook_secret'),
        ('CONTENTSYNC_STATE_DIR', 'state_dir'))

    for env_var, config_key in pairs:
        value = os.environ.get(env_var)
        if value is not None:
            global_config[config_key] = value

    site_config = {}
    pairs = (
        ('CONTENTSYNC_SITE_NAME', 'name'),
        ('CONTENTSYNC_SITE_DIRECTORY', 'directory'),
        ('CONTENTSYNC_SITE_GIT_URL', 'git_url'),
        ('CONTENTSYNC_SITE_BRANCH', 'branch'))

    for env_var, config_key in pairs:
        value = os.environ.get(env_var)
        if value is not None:
            site_config[config_key] = value

    if site_config:
        site_config.setdefault('name', 'default')

    result = {'global': global_config,}
    if site_config:
        result['sites'] = {site_config['name']: site_config}
    return result


def get_config() -> RootConfig:
    """
    Get the global config object.
    """

    global _config

    if _config is None:
        env_config = _config_from_env()

        if os.path.exists(CONFIG_PATH):
            with open(CONFIG_PATH, 'r') as f:
                config_data = yaml.safe_load(f) or {}
            config_data.setdefault('global', {}).update(env_config.get('global', {}))
            config_data.setdefault('sites', {}).update(env_config.get('sites', {}))
        else:
            config_data = env_config

        _config = RootConfig.model_validate(config_data)
        logger.info(f'Loaded configuration with {len(_config.sites)} sites')

    return _config


def get_site_config(site_name: str) -> Optional[SiteConfig]:
    """
    Get the site configuration for the given site name.
    """

    return get_config().sites.get(site_name)


# The end.
