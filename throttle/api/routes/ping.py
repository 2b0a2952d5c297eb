from __future__ import annotations

from fastapi import APIRouter, Depends

from throttle.core.rate_limit import enforce_rate_limit

router = APIRouter(tags=["Ping"], dependencies=[Depends(enforce_rate_limit)])


@router.get("/ping")
def ping() -> dict:
    """Rate-limited resource.

    Answers only while the caller is within its admission window; callers
    over the limit get 429 from the rate limit dependency before this runs.

    Returns:
        dict: ``{"status": "ok"}``.
    """

    return {"status": "ok"}
