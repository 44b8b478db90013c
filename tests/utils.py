"""Builders for site datasets and API records."""
from __future__ import annotations

from typing import Dict, List, Sequence

import pandas as pd

PRIMARY_HEADERS: Sequence[str] = (
    "SL NO",
    "CIRCLE",
    "DIVISION",
    "SUB DIVISION",
    "HRN",
    "ATTRIBUTE",
    "SITE CODE",
)

ONLINE_OFFLINE_HEADERS: Sequence[str] = (
    "SITE CODE",
    "DATE 01-01-2025",
    "DEVICE STATUS",
    "NO OF DAYS OFFLINE",
    "DATE 05-01-2025",
    "DEVICE STATUS.1",
    "NO OF DAYS OFFLINE.1",
)


def frame(headers: Sequence[str], rows: List[Sequence[str]]) -> pd.DataFrame:
    return pd.DataFrame([list(r) for r in rows], columns=list(headers))


def upload(headers: Sequence[str], rows: List[Sequence[str]]) -> Dict:
    """Upload payload as the dashboard API returns it."""
    return {
        "headers": list(headers),
        "rows": [dict(zip(headers, r)) for r in rows],
    }


def primary_frame() -> pd.DataFrame:
    return frame(PRIMARY_HEADERS, [
        ["1", "North", "Div A", "Sub 1", "H-1", "IN PRODUCTION", "ABC1"],
        ["2", "North", "Div B", "Sub 2", "H-2", "IN PRODUCTION", "xyz 2"],
        ["3", "South", "Div C", "Sub 3", "H-3", "UNDER TESTING", "PQR3"],
    ])


def online_offline_frame() -> pd.DataFrame:
    return frame(ONLINE_OFFLINE_HEADERS, [
        ["ABC1", "01-01-2025", "OFFLINE", "3", "05-01-2025", "ONLINE", "0"],
        ["XYZ2", "01-01-2025", "ONLINE", "0", "05-01-2025", "OFFLINE", "4"],
        ["PQR3", "01-01-2025", "OFFLINE", "9", "05-01-2025", "OFFLINE", "13"],
    ])
