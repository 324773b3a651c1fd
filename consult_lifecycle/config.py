"""Runtime configuration loaded from the environment / .env file."""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(override=True)

LIFECYCLE_DB_PATH = Path(
    os.environ.get(
        "LIFECYCLE_DB_PATH",
        Path(__file__).parent / "case_records" / "consult_lifecycle.db",
    )
)

# External payment processor
PAYMENT_API_URL = os.environ.get("PAYMENT_API_URL", "https://payments.example.com/v1/charges")
PAYMENT_API_KEY = os.getenv("PAYMENT_API_KEY")
PAYMENT_TIMEOUT_SECONDS = float(os.environ.get("PAYMENT_TIMEOUT_SECONDS", "10"))

# Fee composition (display/quote only, never used by settlement)
PLATFORM_FEE_BPS = int(os.environ.get("PLATFORM_FEE_BPS", "500"))
PROCESSING_FEE_MINOR = int(os.environ.get("PROCESSING_FEE_MINOR", "0"))
DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "USD")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
