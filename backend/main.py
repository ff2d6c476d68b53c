"""
Clip Campaign Payout Engine: FastAPI application.

Scheduled triggers:

  GET  /api/cron/payout-calculation
    1. Authorise the caller (cron secret or Vercel cron user agent)
    2. calculate_all_campaign_payouts() → per-campaign results
    3. process_pending_payouts() → hand PENDING records to the sink
    4. Return JSON run summary

  HEAD /api/cron/payout-calculation   health check for cron monitoring
  GET  /api/cron/view-tracking        record today's view counts

Admin / monitoring:

  GET  /api/admin/campaigns/near-completion
  GET  /api/admin/campaigns/{campaign_id}/stats
  POST /api/admin/campaigns/{campaign_id}/sync-spend
  GET  /api/admin/scheduler
  POST /api/admin/payout-summary      generate .xlsx of pending payouts
  GET  /api/download/{filename}

Error handling:
  - Bad/missing cron credentials → 401
  - Unknown campaign → 404
  - View supplier not configured → 503
  - Payout run fails as a whole (e.g. database unreachable) → 500
"""

import os
import logging
import time
from decimal import Decimal
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

import config
from db.database import get_db, init_db
from db.models import PayoutStatus
from models.schemas import CampaignStats, SpendSyncResult, ViewTrackingSummary
from services.disbursement import build_disbursement_sink
from services.excel_export import generate_payout_report
from services.payout import calculate_all_campaign_payouts, process_pending_payouts
from services.payout_ledger import (
    CampaignNotFoundError,
    get_campaign_stats,
    get_near_completion_campaigns,
    load_payout_records,
    sync_campaign_spend,
)
from services.schedule_runner import (
    get_payout_schedule_status,
    start_payout_schedule_runner,
    stop_payout_schedule_runner,
)
from services.view_supplier import build_view_supplier
from services.view_tracking import run_view_tracking

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Clip Campaign Payout Engine",
    description="Turns clip view growth into creator payouts within campaign budgets",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    init_db()
    if config.PAYOUT_SCHEDULE_ENABLED:
        start_payout_schedule_runner()


@app.on_event("shutdown")
async def shutdown_event():
    stop_payout_schedule_runner()


# ===========================================================================
# Cron authorisation
# ===========================================================================

def _authorize_cron(request: Request) -> None:
    """
    Allow the call if it comes from Vercel cron, carries the right bearer
    token, or no CRON_SECRET is configured (local development).
    """
    user_agent = request.headers.get("user-agent", "")
    is_vercel_cron = "vercel-cron" in user_agent.lower()
    auth_header = request.headers.get("authorization")

    if not is_vercel_cron and config.CRON_SECRET and auth_header != f"Bearer {config.CRON_SECRET}":
        raise HTTPException(
            status_code=401,
            detail={"status": "error", "message": "Unauthorized"},
        )


# ===========================================================================
# GET /api/cron/payout-calculation: scheduled payout run
# ===========================================================================

@app.get("/api/cron/payout-calculation")
def payout_calculation(request: Request, db: Session = Depends(get_db)):
    _authorize_cron(request)

    logger.info("=" * 60)
    logger.info("PAYOUT CALCULATION RUN")
    logger.info("=" * 60)
    start_time = time.monotonic()

    sink = build_disbursement_sink()
    try:
        results = calculate_all_campaign_payouts(db)
        process_pending_payouts(db, sink)
    except Exception as e:
        logger.error(f"Payout calculation run failed: {e}", exc_info=True)
        raise HTTPException(
            status_code=500,
            detail={"status": "error", "message": "Failed to calculate payouts"},
        )
    finally:
        if sink is not None:
            sink.close()

    duration_ms = int((time.monotonic() - start_time) * 1000)
    completed_campaigns = sum(1 for r in results if r.should_complete)
    total_payouts = sum(len(r.payouts) for r in results)
    total_spent = sum((r.total_spent for r in results), Decimal("0.00"))

    summary = {
        "completed_campaigns": completed_campaigns,
        "total_payouts": total_payouts,
        "total_spent": f"${total_spent:,.2f}",
    }
    logger.info(f"Payout run complete in {duration_ms}ms: {summary}")

    return {
        "success": True,
        "message": "Payout calculation completed successfully",
        "duration": f"{duration_ms}ms",
        "summary": summary,
        "results": [r.model_dump(mode="json") for r in results],
    }


@app.head("/api/cron/payout-calculation")
def payout_calculation_health():
    return Response(status_code=200)


# ===========================================================================
# GET /api/cron/view-tracking: record today's view counts
# ===========================================================================

@app.get("/api/cron/view-tracking", response_model=ViewTrackingSummary)
def view_tracking(request: Request, db: Session = Depends(get_db)):
    _authorize_cron(request)

    supplier = build_view_supplier()
    if supplier is None:
        raise HTTPException(
            status_code=503,
            detail={"status": "error", "message": "View supplier is not configured"},
        )

    try:
        return run_view_tracking(db, supplier)
    finally:
        supplier.close()


# ===========================================================================
# Admin: campaign monitoring
# ===========================================================================

@app.get("/api/admin/campaigns/near-completion", response_model=list[CampaignStats])
def near_completion_campaigns(
    threshold: Optional[float] = None,
    db: Session = Depends(get_db),
):
    if threshold is None:
        threshold = config.NEAR_COMPLETION_THRESHOLD
    return get_near_completion_campaigns(db, threshold)


@app.get("/api/admin/campaigns/{campaign_id}/stats", response_model=CampaignStats)
def campaign_stats(campaign_id: int, db: Session = Depends(get_db)):
    try:
        return get_campaign_stats(db, campaign_id)
    except CampaignNotFoundError as e:
        raise HTTPException(status_code=404, detail={"status": "error", "message": str(e)})


@app.post("/api/admin/campaigns/{campaign_id}/sync-spend", response_model=SpendSyncResult)
def sync_spend(campaign_id: int, db: Session = Depends(get_db)):
    try:
        result = sync_campaign_spend(db, campaign_id)
    except CampaignNotFoundError as e:
        db.rollback()
        raise HTTPException(status_code=404, detail={"status": "error", "message": str(e)})
    db.commit()
    return result


@app.get("/api/admin/scheduler")
def scheduler_status():
    return get_payout_schedule_status()


# ===========================================================================
# Admin: payout summary spreadsheet
# ===========================================================================

@app.post("/api/admin/payout-summary")
def payout_summary(db: Session = Depends(get_db)):
    records = load_payout_records(db, status=PayoutStatus.PENDING)
    filepath = generate_payout_report(records)
    return {
        "status": "success",
        "filename": os.path.basename(filepath),
        "record_count": len(records),
    }


@app.get("/api/download/{filename}")
async def download_report(filename: str):
    """
    Download a generated .xlsx report from the output directory.

    Returns 404 if the file doesn't exist.
    """
    file_path = os.path.join(config.OUTPUT_DIR, os.path.basename(filename))

    if not os.path.exists(file_path):
        raise HTTPException(
            status_code=404,
            detail={
                "status": "error",
                "message": f"Report not found: {filename}",
            },
        )

    return FileResponse(
        file_path,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
        },
    )


# ===========================================================================
# Main entry point
# ===========================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
