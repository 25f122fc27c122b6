"""Usage reporting for the authenticated user."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from receiptflow.api.dependencies import get_usage_meter, get_user_id
from receiptflow.models.enums import UsageEventType
from receiptflow.services.usage_service import UsageMeter

router = APIRouter(prefix="/usage", tags=["usage"])


@router.get("")
async def get_usage(
    user_id: str = Depends(get_user_id),
    meter: UsageMeter = Depends(get_usage_meter),
) -> Dict[str, Any]:
    """Scans recorded for the caller: this calendar month and all time."""
    return {
        "event": UsageEventType.SCAN.value,
        "month": await meter.monthly_count(user_id),
        "total": await meter.count(user_id),
    }
