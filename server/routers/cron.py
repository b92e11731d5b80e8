"""Trigger endpoint for the subscription worker.

Called by an external scheduler (or manually). When CRON_SECRET is set the
request must carry it as a bearer token.
"""

import hmac
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse

from core.config import Settings
from core.container import container
from core.logging import get_logger
from services.errors import PaperAlertsError
from services.subscription_worker import SubscriptionWorker

logger = get_logger(__name__)
router = APIRouter(prefix="/api/cron", tags=["cron"])


def verify_cron_secret(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(lambda: container.settings())
) -> None:
    if not settings.cron_secret:
        return
    expected = f"Bearer {settings.cron_secret}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        logger.warning("Rejected cron trigger with invalid secret")
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.api_route("/subscriptions", methods=["GET", "POST"], dependencies=[Depends(verify_cron_secret)])
async def process_subscriptions(
    max_subscriptions: Optional[int] = Query(default=None, alias="max", ge=1),
    dry_run: bool = Query(default=False, alias="dryRun"),
    worker: SubscriptionWorker = Depends(lambda: container.subscription_worker())
):
    """Run one subscription batch and return its BatchResult."""
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        result = await worker.process_subscriptions(max_subscriptions=max_subscriptions, dry_run=dry_run)
    except PaperAlertsError as e:
        logger.error("Subscription batch failed", error=str(e))
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(e), "timestamp": timestamp}
        )

    return {"success": True, **result.to_dict(), "timestamp": timestamp}
