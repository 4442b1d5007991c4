# config.py
"""
Environment-driven defaults.

Values come from the process environment; a `.env` file in the working
directory is loaded first so local runs don't need exported variables.
Per-run overrides live in schemas.AssessmentConfig.
"""
from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path.cwd() / ".env")

DB_URL = os.getenv("ICMS_TAXCALC_DB_URL", "sqlite:///./icmstaxcalc.db")

# Percentages, not fractions (18 means 18%)
DEFAULT_RATE = Decimal(os.getenv("ICMS_DEFAULT_RATE", "18"))
DEFAULT_INTERSTATE_RATE = Decimal(os.getenv("ICMS_DEFAULT_INTERSTATE_RATE", "7"))
FALLBACK_DEST_RATE = Decimal(os.getenv("ICMS_FALLBACK_DEST_RATE", "18"))

DEFAULT_RECOVERY_MONTHS = int(os.getenv("ICMS_DEFAULT_RECOVERY_MONTHS", "60"))
MAX_WORKERS = int(os.getenv("ICMS_MAX_WORKERS", "1"))

LOG_LEVEL = os.getenv("ICMS_LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("ICMS_LOG_FORMAT", "text")
