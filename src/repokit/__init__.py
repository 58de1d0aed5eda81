"""
repokit - typed repositories, a chainable query builder and safe batch
mutations over SQLAlchemy Core.

The public API lives in :mod:`repokit.core` and is re-exported here.
"""

__version__ = "0.1.0"

from repokit.core import *  # noqa
