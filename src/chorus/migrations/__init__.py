"""Schema migrations for the Chorus database.

Each module here is named ``NNN_name.py`` and applied once, in order. A
module defines ``VERSION`` (matching its prefix), ``DESCRIPTION``, an
``upgrade(engine)`` function and, optionally, ``check(engine) -> bool``
telling the runner the change is already present so it can be recorded
without re-running it.
"""

from chorus.migrations.runner import (
    get_current_version,
    get_migrations,
    get_pending_migrations,
    migrate,
)

__all__ = ["get_current_version", "get_migrations", "get_pending_migrations", "migrate"]
