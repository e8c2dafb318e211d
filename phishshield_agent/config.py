from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv


# Load environment variables from the repo root .env for local dev.
_HERE = Path(__file__).resolve()
_REPO_ROOT = _HERE.parents[1]
load_dotenv(_REPO_ROOT / ".env", override=False)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


STATE_PATH = Path(os.getenv("PHISHSHIELD_STATE_PATH", "phishshield_state.json").strip() or "phishshield_state.json")

# Remote prediction call deadline; the service is allowed 1..22 seconds.
REQUEST_TIMEOUT_S = max(1.0, min(22.0, _env_float("PHISHSHIELD_REQUEST_TIMEOUT_S", 8.0)))
HEALTH_TIMEOUT_S = max(0.1, min(3.0, _env_float("PHISHSHIELD_HEALTH_TIMEOUT_S", 3.0)))

# Bounds the whole user-visible analyze call, not just the remote request.
WATCHDOG_S = max(1.0, _env_float("PHISHSHIELD_WATCHDOG_S", 25.0))

HISTORY_LIMIT = 30
LEDGER_CHAIN_LIMIT = 500
LEDGER_BOOST_CAP = 0.35
AUTO_REPORT_COOLDOWN_MS = 1000 * 60 * 60 * 12


def cors_allow_origins() -> list[str]:
    raw = os.getenv("PHISHSHIELD_CORS_ORIGINS", "").strip()
    if not raw:
        return ["http://localhost:3000"]
    return [o.strip() for o in raw.split(",") if o.strip()]
