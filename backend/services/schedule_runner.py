import asyncio
import logging
import threading
from typing import Callable, Optional

from sqlalchemy.orm import Session

import config
from db.database import SessionLocal
from models.schemas import CampaignPayoutResult
from services.disbursement import build_disbursement_sink
from services.payout import calculate_all_campaign_payouts, process_pending_payouts

logger = logging.getLogger(__name__)


def run_payout_job(
    session_factory: Callable[[], Session] = SessionLocal,
) -> list[CampaignPayoutResult]:
    """One scheduled run: calculate payouts, then hand pending ones to the sink."""
    session = session_factory()
    sink = build_disbursement_sink()
    try:
        results = calculate_all_campaign_payouts(session)
        process_pending_payouts(session, sink)
        return results
    finally:
        if sink is not None:
            sink.close()
        session.close()


class PayoutScheduleRunner:
    def __init__(
        self,
        interval_seconds: Optional[int] = None,
        job: Callable[[], object] = run_payout_job,
    ) -> None:
        self.interval_seconds = interval_seconds or config.PAYOUT_SCHEDULE_INTERVAL_SECONDS
        self.job = job
        self.is_running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    async def start(self) -> None:
        if self.is_running:
            logger.info("Payout scheduler already running")
            return

        self.is_running = True
        logger.info(f"Payout scheduler started (every {self.interval_seconds}s)")

        while self.is_running:
            try:
                self.job()
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Scheduled payout run failed: {exc}", exc_info=True)
            await asyncio.to_thread(self._stop_event.wait, self.interval_seconds)

    def _run_forever(self) -> None:
        try:
            asyncio.run(self.start())
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Payout scheduler thread error: {exc}")
        finally:
            self.is_running = False
            self._thread = None

    def start_background(self) -> None:
        if self._thread and self._thread.is_alive():
            logger.info("Payout scheduler thread already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_forever,
            name="payout-schedule-runner",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self.is_running = False
        self._stop_event.set()
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=5)
        self._thread = None
        logger.info("Payout scheduler stopped")

    def is_active(self) -> bool:
        thread = self._thread
        return bool(thread and thread.is_alive())


_runner_instance: Optional[PayoutScheduleRunner] = None


def start_payout_schedule_runner() -> None:
    global _runner_instance
    if _runner_instance is None:
        _runner_instance = PayoutScheduleRunner()

    if _runner_instance.is_active():
        return

    _runner_instance.start_background()


def stop_payout_schedule_runner() -> None:
    global _runner_instance
    if _runner_instance:
        _runner_instance.stop()


def get_payout_schedule_status() -> dict:
    if _runner_instance:
        return {
            "is_running": _runner_instance.is_running,
            "status": "running" if _runner_instance.is_running else "stopped",
            "thread_alive": _runner_instance.is_active(),
        }
    return {
        "is_running": False,
        "status": "not_initialized",
        "thread_alive": False,
    }
