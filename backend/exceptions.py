"""Server-side exception types.

- ``InternalServerError``: stored data the server cannot read back, such as
  an unparseable snapshot. Logged with its message; clients only ever see
  500 "Data integrity error".
- ``ValueError``: a request the server refuses for a reason safe to show,
  answered as 422 with ``str(exc)``.
- Missing or wrong sync credentials are ``HTTPException`` from
  ``backend.api.deps``.
"""

from __future__ import annotations


class InternalServerError(Exception):
    """Stored state is unreadable; details stay in the server log."""
