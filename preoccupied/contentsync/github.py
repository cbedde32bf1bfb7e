"""
GitHub credential resolution for the contentsync application.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Union

import httpx
import jwt


logger = logging.getLogger(__name__)


CACHE_THRESHOLD = 50 * 60  # 50 minutes


# Installation tokens, keyed by (app_id, installation_id)
_token_cache: Dict[Tuple[str, str], Dict[str, Union[str, datetime]]] = {}
_cache_lock = asyncio.Lock()


def app_jwt(github_keyfile: str, github_app_id: str) -> str:
    """
    Sign a short-lived JWT identifying the GitHub App, using the private
    key in github_keyfile.
    """

    with open(github_keyfile, 'r') as fk:
        private_key = fk.read()

    now = int(time.time())
    payload = {
        'iat': now - 60,
        'exp': now + (10 * 60),
        'iss': github_app_id,
    }

    return jwt.encode(payload, private_key, algorithm='RS256')


async def github_installation_token(
        github_keyfile: str,
        github_app_id: str,
        github_installation_id: str,
        api_url: str = 'https://api.github.com') -> str:
    """
    Exchange an app JWT for an installation token. Tokens are cached
    until they come within CACHE_THRESHOLD of their expiry.
    """

    if not (github_app_id and github_installation_id and github_keyfile):
        raise ValueError('github_app_id, github_installation_id, and github_keyfile must be set')

    cache_key = (github_app_id, github_installation_id)
    now = datetime.now(timezone.utc)

    async with _cache_lock:
        cached = _token_cache.get(cache_key)
        if cached is not None:
            threshold = cached['expires_at'].timestamp() - CACHE_THRESHOLD
            if now.timestamp() < threshold:
                logger.debug(f'Using cached token for {github_app_id} / {github_installation_id}')
                return cached['token']

            logger.debug(f'Token for {github_app_id} / {github_installation_id} is near expiry')
            del _token_cache[cache_key]

    headers = {
        'Authorization': f'Bearer {app_jwt(github_keyfile, github_app_id)}',
        'Accept': 'application/vnd.github+json',
    }

    async with httpx.AsyncClient() as client:
        r = await client.post(
            f'{api_url.rstrip("/")}/app/installations/{github_installation_id}/access_tokens',
            headers=headers,
        )
        r.raise_for_status()
        response_data = r.json()

    token = response_data['token']
    expires_at = datetime.fromisoformat(response_data['expires_at'].replace('Z', '+00:00'))

    async with _cache_lock:
        _token_cache[cache_key] = {
            'token': token,
            'expires_at': expires_at,
        }

    logger.debug(f'New token for {github_app_id} / {github_installation_id} expires at {expires_at}')
    return token


async def resolve_token(
        github_token: Optional[str] = None,
        github_keyfile: Optional[str] = None,
        github_app_id: Optional[str] = None,
        github_installation_id: Optional[str] = None,
        api_url: str = 'https://api.github.com') -> Optional[str]:
    """
    Pick the credential for API requests. A personal access token wins,
    then a GitHub App installation. Returns None when neither is set.
    """

    if github_token:
        return github_token

    if github_keyfile:
        return await github_installation_token(
            github_keyfile=github_keyfile,
            github_app_id=github_app_id,
            github_installation_id=github_installation_id,
            api_url=api_url,
        )

    return None


# The end.
