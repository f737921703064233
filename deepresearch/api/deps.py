from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header, HTTPException

from deepresearch.services.research_service import ResearchService, get_research_service


@dataclass(frozen=True)
class Caller:
    household_id: str
    user_id: str


def get_caller(
    x_household_id: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
) -> Caller:
    """Identity is asserted by the upstream gateway through these headers."""
    if not x_household_id or not x_user_id:
        raise HTTPException(status_code=401, detail="Missing household or user identity")
    return Caller(household_id=x_household_id, user_id=x_user_id)


def get_service() -> ResearchService:
    return get_research_service()
