"""Centralized helpers for resolving where local artefacts are written."""
from __future__ import annotations

import logging
import os
from pathlib import Path

LOGGER = logging.getLogger(__name__)

APP_ROOT = Path(__file__).resolve().parent
DATA_ROOT = Path(os.environ.get("RECONCILE_DATA_DIR") or APP_ROOT / "data")
REPORTS_DIRNAME = "reports"


def ensure_data_root() -> Path:
    """Return the data root, creating it when missing."""
    if not DATA_ROOT.exists():
        LOGGER.info("Creating data directory at %s", DATA_ROOT)
    DATA_ROOT.mkdir(parents=True, exist_ok=True)
    return DATA_ROOT


def ensure_reports_dir() -> Path:
    """Return the directory where audit and duplicate reports are saved."""
    reports = ensure_data_root() / REPORTS_DIRNAME
    reports.mkdir(parents=True, exist_ok=True)
    return reports
