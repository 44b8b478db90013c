import pandas as pd
import numpy as np
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
import re

from process_sites import (
    MIN_DAYS_OFFLINE, SITE_COLUMN_ALIASES, normalize_header, parse_header_date, resolve_field, resolve_header,
)

TIME_RANGES = ('All', 'This Day', 'This Week', 'This Month', 'Date Range')


@dataclass
class FilterState:
    """UI filter state for one view.

    ``selections`` maps a semantic field name ('circle', 'division', ...) or a
    literal header to the selected values; an empty list selects everything.
    """
    selections: dict = field(default_factory=dict)
    search: str = ''
    search_columns: list | None = None
    time_range: str = 'All'
    start_date: date | None = None
    end_date: date | None = None
    date_column: str = 'Date'
    today: date | None = None


def _resolve_filter_column(columns, name):
    columns = list(columns)
    if name in columns:
        return name
    if name in SITE_COLUMN_ALIASES:
        return resolve_field(columns, name)
    return resolve_header(columns, [name])


def filter_multi_select(df: pd.DataFrame, column, selected) -> pd.DataFrame:
    """Keep rows whose normalized value equals any normalized selected value."""
    selected = [s for s in (selected or []) if s is not None]
    if not selected or column is None or column not in df.columns:
        return df
    wanted = {normalize_header(s) for s in selected}
    mask = df[column].map(normalize_header).isin(wanted)
    return df[mask]


def filter_search(df: pd.DataFrame, term, columns=None) -> pd.DataFrame:
    term = str(term or '').lower()
    if not term:
        return df
    columns = list(df.columns) if columns is None else list(columns)
    mask = pd.Series(False, index=df.index)
    for col in columns:
        if col not in df.columns:
            continue
        mask |= df[col].fillna('').astype(str).str.lower().str.contains(term, regex=False)
    return df[mask]


def parse_row_date(value):
    """Parse a cell date: DD-MM-YYYY first, then YYYY-MM-DD, then pandas.

    Returns:
        date | None: The calendar date, or None for blanks and unparsable text.
    """
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text or text == '-':
        return None
    parsed = parse_header_date(text)
    if parsed is not None:
        return parsed
    parsed = pd.to_datetime(text, errors='coerce')
    if pd.isna(parsed):
        return None
    return parsed.date()


def in_time_range(day, time_range, today, start_date=None, end_date=None) -> bool:
    if time_range in (None, '', 'All'):
        return True
    if day is None:
        return False
    if time_range == 'This Day':
        return day == today
    if time_range == 'This Week':
        week_start = today - timedelta(days=(today.weekday() + 1) % 7)
        return week_start <= day <= today
    if time_range == 'This Month':
        return day.year == today.year and day.month == today.month
    if time_range == 'Date Range':
        start = parse_row_date(start_date)
        end = parse_row_date(end_date)
        if start and day < start:
            return False
        if end and day > end:
            return False
        return True
    return True


def filter_time_range(df: pd.DataFrame, column, time_range, today=None, start_date=None, end_date=None) -> pd.DataFrame:
    if time_range in (None, '', 'All') or column is None or column not in df.columns:
        return df
    if time_range == 'Date Range' and not start_date and not end_date:
        return df
    today = today or date.today()
    days = df[column].map(parse_row_date)
    mask = days.map(lambda d: in_time_range(d, time_range, today, start_date, end_date)).astype(bool)
    return df[mask]


def apply_filters(df: pd.DataFrame, state: FilterState) -> pd.DataFrame:
    """Apply multi-select, search and time-range filters (AND-combined).

    A filter whose column cannot be found in ``df`` is skipped with a warning.
    """
    out = df
    for name, selected in (state.selections or {}).items():
        column = _resolve_filter_column(out.columns, name)
        if column is None and selected:
            print(f"Warning: {name} column not found. Skipping filter.")
        out = filter_multi_select(out, column, selected)
    out = filter_search(out, state.search, state.search_columns)
    date_column = _resolve_filter_column(out.columns, state.date_column) if state.date_column else None
    if date_column is None and state.time_range not in (None, '', 'All'):
        print(f"Warning: {state.date_column} column not found. Skipping time range filter.")
    out = filter_time_range(out, date_column, state.time_range, state.today, state.start_date, state.end_date)
    return out


def filter_options(df: pd.DataFrame, field_name) -> list:
    """Sorted distinct non-blank values for a dropdown."""
    column = _resolve_filter_column(df.columns, field_name)
    if column is None:
        return []
    values = df[column].fillna('').astype(str).str.strip()
    return sorted(v for v in values.unique() if v and v != '-')


def parse_days_offline(value):
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return None
    if isinstance(value, (int, float, np.integer, np.floating)):
        return float(value)
    cleaned = re.sub(r"[^\d.]", '', str(value).strip())
    try:
        return float(cleaned)
    except ValueError:
        return None


def select_offline_sites(df: pd.DataFrame, columns, min_days_offline=MIN_DAYS_OFFLINE) -> pd.DataFrame:
    """Keep sites that are OFFLINE, offline for ``min_days_offline`` days or more, and IN PRODUCTION."""
    print("Selecting offline sites...")
    initial_count = len(df)
    if not columns.device_status or not columns.attribute:
        missing = [n for n, c in (('DEVICE STATUS', columns.device_status), ('ATTRIBUTE', columns.attribute)) if not c]
        print(f"Warning: columns not found: {missing}. No offline sites selected.")
        return df.iloc[0:0]

    status = df[columns.device_status].map(normalize_header)
    attribute = df[columns.attribute].map(normalize_header)
    mask = (status == 'offline') & (attribute == 'inproduction')
    if columns.days_offline:
        days = df[columns.days_offline].map(parse_days_offline).fillna(0).astype(float)
        mask &= days >= min_days_offline
    else:
        print("Warning: NO OF DAYS OFFLINE column not found. Skipping days filter.")
    df = df[mask]
    print(f"Selected {len(df)} offline sites out of {initial_count} rows")
    return df
