import os
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./payouts.db")

# Payout rate is expressed per this many views (CPM model)
PAYOUT_RATE_UNIT = int(os.getenv("PAYOUT_RATE_UNIT", "1000"))

PENDING_PAYOUT_MIN_AGE_MINUTES = int(os.getenv("PENDING_PAYOUT_MIN_AGE_MINUTES", "0"))
PENDING_PAYOUT_BATCH_SIZE = int(os.getenv("PENDING_PAYOUT_BATCH_SIZE", "100"))
NEAR_COMPLETION_THRESHOLD = float(os.getenv("NEAR_COMPLETION_THRESHOLD", "80"))

CRON_SECRET = os.getenv("CRON_SECRET", "")

VIEW_SUPPLIER_BASE_URL = os.getenv("VIEW_SUPPLIER_BASE_URL", "")
VIEW_SUPPLIER_API_KEY = os.getenv("VIEW_SUPPLIER_API_KEY", "")
DISBURSEMENT_WEBHOOK_URL = os.getenv("DISBURSEMENT_WEBHOOK_URL", "")
DISBURSEMENT_API_KEY = os.getenv("DISBURSEMENT_API_KEY", "")
HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "30"))

PAYOUT_SCHEDULE_ENABLED = os.getenv("PAYOUT_SCHEDULE_ENABLED", "false").lower() == "true"
PAYOUT_SCHEDULE_INTERVAL_SECONDS = int(os.getenv("PAYOUT_SCHEDULE_INTERVAL_SECONDS", "3600"))

OUTPUT_DIR = os.getenv("OUTPUT_DIR", "/tmp/payout_reports")
