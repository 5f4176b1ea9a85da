"""
Summary cache read router.

Serves precomputed summaries only; nothing is computed on the request path.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from rollup.models.enums import SummaryPeriod
from rollup.storage import get_storage
from rollup.storage.base import MetricStore

router = APIRouter()


@router.get("/{owner_id}")
async def get_owner_summaries(
    owner_id: str,
    period: Optional[SummaryPeriod] = None,
    metric: Optional[str] = None,
    storage: MetricStore = Depends(get_storage),
):
    """
    Cached summaries for an owner, optionally filtered by period and metric.

    Returns 404 when nothing has been computed for the owner yet.
    """
    entries = storage.read_summary_entries(owner_id, period=period, metric=metric)
    if not entries:
        raise HTTPException(status_code=404, detail=f"No summaries for owner {owner_id}")

    return {
        "success": True,
        "data": [entry.model_dump(mode="json") for entry in entries],
        "total": len(entries),
    }
