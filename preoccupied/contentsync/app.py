"""
FastAPI application for the contentsync service.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request

from .config import get_config
from .errors import ErrorKind, SyncError
from .site import Site, get_site
from .webhook import verify_signature


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.SIGNATURE: 401,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.LOCK_CONTENTION: 409,
}


async def app_startup():
    """
    Startup event handler for the app. Returns the worker tasks which
    run each site's queue.
    """

    # fetch configuration for the first time
    try:
        config = get_config()
    except Exception as e:
        logger.error(f'Failed to load configuration: {e}', exc_info=True)
        raise

    workers = []
    for site_name in config.sites:
        try:
            site = get_site(site_name)
            site.schedule_update_checks()
        except Exception as e:
            logger.error(f"Failed to start site '{site_name}': {e}", exc_info=True)
            continue

        logger.info(f"Starting worker for site '{site_name}'")
        workers.append(asyncio.create_task(site.queue.worker(config.global_.worker_interval)))

    return workers


@asynccontextmanager
async def app_lifespan(app: FastAPI):
    """
    Lifespan event handler for the app
    """

    logger.info('Starting up...')

    workers = await app_startup()

    try:
        yield
    finally:

        logger.info('Shutting down...')
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)


app = FastAPI(lifespan=app_lifespan)


def _get_site(name: str) -> Site:
    site = get_site(name)
    if site is None:
        raise HTTPException(status_code=404, detail=f"Site '{name}' not found")
    return site


def _check_token(site: Site, token: Optional[str]) -> None:
    webhook_secret = site.config.webhook_secret
    if webhook_secret and token != webhook_secret:
        _reject(SyncError(ErrorKind.SIGNATURE, 'Bad secret'))


def _reject(err: SyncError) -> None:
    raise HTTPException(status_code=_STATUS.get(err.kind, 500), detail=err.message)


def _raise_for_error(err: SyncError, action: str) -> None:
    status = _STATUS.get(err.kind, 500)
    raise HTTPException(status_code=status, detail=f'{action} failed: {err.message}')


@app.post('/webhook/{name}')
async def webhook(
        name: str,
        request: Request,
        x_github_event: str = Header(None),
        x_hub_signature_256: str = Header(None),
        x_hub_signature: str = Header(None)):
    """
    Receive a repository event for a specific site
    """

    site = _get_site(name)
    payload = await request.body()

    webhook_secret = site.config.webhook_secret
    if webhook_secret:
        signature = x_hub_signature_256 or x_hub_signature
        if not verify_signature(payload, signature, webhook_secret):
            logger.warning(f"Webhook signature verification failed for site '{name}'")
            _reject(SyncError(ErrorKind.SIGNATURE, 'Signature verification failed'))

    if not x_github_event:
        raise HTTPException(status_code=400, detail='Missing event type')

    try:
        data = json.loads(payload or b'{}')
    except ValueError:
        raise HTTPException(status_code=400, detail='Invalid JSON payload')

    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail='Webhook payload must be a JSON object')

    try:
        decision = await site.webhook.handle(x_github_event, data)
    except Exception as e:
        logger.error(f"Error handling webhook for site '{name}': {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f'Webhook failed: {str(e)}')

    logger.info(f"Webhook {x_github_event} for site '{name}': {decision.action}")
    return {'status': 'ok', 'site': name, **decision.model_dump()}


@app.post('/sync/{name}')
async def sync(name: str, branch: Optional[str] = None, x_sync_token: str = Header(None)):
    """
    Start pushing the content tree of a specific site to its repository
    """

    site = _get_site(name)
    _check_token(site, x_sync_token)

    result = site.sync.start(branch)
    if isinstance(result, SyncError):
        _raise_for_error(result, 'Sync')

    return {'status': 'ok', 'site': name, 'branch': result.branch}


@app.post('/deploy/{name}')
async def deploy(name: str, reference: Optional[str] = None, x_sync_token: str = Header(None)):
    """
    Deploy a branch or commit to a specific site, by default the head of
    its tracked branch
    """

    site = _get_site(name)
    _check_token(site, x_sync_token)

    reference = reference or site.deployer.current_branch()
    result = await site.deployer.deploy(reference, actor='api')
    if isinstance(result, SyncError):
        _raise_for_error(result, 'Deploy')

    return {'status': 'ok', 'site': name, 'reference': reference, 'commit': result}


@app.post('/rollback/{name}/{commit}')
async def rollback(name: str, commit: str, x_sync_token: str = Header(None)):
    """
    Redeploy an earlier commit to a specific site
    """

    site = _get_site(name)
    _check_token(site, x_sync_token)

    result = await site.deployer.rollback(commit, actor='api')
    if isinstance(result, SyncError):
        _raise_for_error(result, 'Rollback')

    return {'status': 'ok', 'site': name, 'commit': result}


@app.get('/progress/{name}')
async def progress(name: str, x_sync_token: str = Header(None)):
    """
    Current progress of the running job for a specific site
    """

    site = _get_site(name)
    _check_token(site, x_sync_token)

    state = site.sync.get_state()
    return {
        'site': name,
        'progress': site.progress.get().model_dump(),
        'sync_phase': state.phase.value if state else None,
        'sync_error': state.error if state else None,
        'deploying': site.deployer.is_deploying(),
    }


@app.get('/history/{name}')
async def history(name: str, x_sync_token: str = Header(None)):
    """
    Deployment history of a specific site, most recent first
    """

    site = _get_site(name)
    _check_token(site, x_sync_token)

    records = site.deployer.history()
    return {
        'site': name,
        'last_deployed_commit': site.deployer.last_deployed_commit(),
        'history': [r.model_dump() for r in reversed(records)],
    }


# The end.
