"""
Content tree synchronization and deployment service, backed by a
GitHub repository.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

__version__ = '0.1.0'


from preoccupied.contentsync.app import app  # noqa: E402
from preoccupied.contentsync.config import get_config, get_site_config  # noqa: E402


__all__ = ['app', 'get_config', 'get_site_config']


# The end.
