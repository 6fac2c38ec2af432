"""
app/api/dependencies.py

Shared FastAPI dependencies for request validation.
"""

from __future__ import annotations

from fastapi import HTTPException, Query, status

from app.domain.monitoring import ChangeType


def get_change_types(
    change_type: list[str] | None = Query(
        default=None,
        description="Repeatable change type filter: new, updated, deleted, unchanged",
    ),
) -> list[str] | None:
    """
    Validate repeated or comma-separated change type filters.
    """

    if not change_type:
        return None

    requested: list[str] = []
    for raw in change_type:
        for token in raw.split(","):
            value = token.strip().lower()
            if value and value not in requested:
                requested.append(value)

    unknown = [value for value in requested if value not in ChangeType.ALL]
    if unknown:
        allowed = ", ".join(sorted(ChangeType.ALL))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown change type(s): {', '.join(unknown)}. Allowed: {allowed}.",
        )
    return requested or None
