"""Central error mapping for ordering usage errors.

Single source of truth mapping ``ArrangeableError.code`` values to
problem+json titles and HTTP statuses. Handlers import from here instead
of hardcoding strings or numbers.
"""

from __future__ import annotations

ARRANGE_ERROR_MAP = {
    "ARRANGE_TABLE_UNKNOWN": {"title": "Not Found", "status": 404},
    "ARRANGE_AMBIGUOUS_TARGET": {"title": "Conflict", "status": 409},
    "ARRANGE_GROUP_KEY_MISSING": {"title": "Unprocessable Entity", "status": 422},
    "ARRANGE_RECORD_MOVING": {"title": "Conflict", "status": 409},
    "ARRANGE_ERROR": {"title": "Bad Request", "status": 400},
}

__all__ = ["ARRANGE_ERROR_MAP"]
