import pandas as pd
import numpy as np
from dataclasses import dataclass, field
from datetime import date
import re
import os

# Minimum offline days for a site to be listed on the Device Status page.
MIN_DAYS_OFFLINE = float(os.getenv('MIN_DAYS_OFFLINE', '2'))


class MissingColumnError(ValueError):
    """Raised when a column the view cannot work without (the primary SITE CODE) is absent."""


# ------------------------------
# Header key resolution
# ------------------------------

_HEADER_STRIP = re.compile(r"[_\s-]+")

SITE_CODE_CANDIDATES = ['site code', 'sitecode', 'site_code']

# field -> (exact candidates, substring tokens, excluded tokens)
SITE_COLUMN_ALIASES = {
    'site_code': (SITE_CODE_CANDIDATES, ('site', 'code'), ()),
    'circle': (['circle', 'circle name', 'the circle'], (), ()),
    'division': (['division', 'division name'], (), ()),
    'sub_division': (['subdivision', 'sub division', 'sub_division'], (), ()),
    'hrn': (['hrn'], (), ()),
    'attribute': (['attribute', 'attributes'], (), ()),
    'device_status': (['device status', 'device_status', 'devicestatus'], ('device', 'status'), ('rtu',)),
    'switch_status': (['equipment l/r switch status'], ('equipment', 'switch', 'status'), ()),
    'days_offline': (['no of days offline', 'no_of_days_offline', 'noofdaysoffline'], ('days', 'offline'), ()),
    'production_observations': (['production observations'], ('production', 'observation'), ()),
    'rtu_tracker_observation': (['rtu tracker observation'], ('rtu', 'tracker', 'observ'), ()),
}


def normalize_header(header) -> str:
    """Lower-case a header and drop underscores, whitespace and hyphens."""
    if header is None:
        return ''
    return _HEADER_STRIP.sub('', str(header).strip().lower())


def resolve_header(headers, candidates, contains=(), excludes=()):
    """Find the header a dataset uses for a semantic field.

    Exact normalized matches against ``candidates`` win over the substring
    heuristic (all of ``contains`` present, none of ``excludes``). Within each
    pass the first header in dataset order is returned.

    Returns:
        str | None: The literal header, or None when the dataset lacks the field.
    """
    wanted = {normalize_header(c) for c in candidates}
    for h in headers:
        if normalize_header(h) in wanted:
            return h
    if not contains:
        return None
    for h in headers:
        n = normalize_header(h)
        if all(tok in n for tok in contains) and not any(tok in n for tok in excludes):
            return h
    return None


@dataclass(frozen=True)
class SiteColumns:
    """Literal headers for the semantic columns of one dataset (None = absent)."""
    site_code: str | None = None
    circle: str | None = None
    division: str | None = None
    sub_division: str | None = None
    hrn: str | None = None
    attribute: str | None = None
    device_status: str | None = None
    switch_status: str | None = None
    days_offline: str | None = None
    production_observations: str | None = None
    rtu_tracker_observation: str | None = None

    def get(self, field_name):
        return getattr(self, field_name, None)


def resolve_site_columns(headers) -> SiteColumns:
    """Resolve every known semantic column once for a dataset."""
    headers = list(headers)
    resolved = {
        name: resolve_header(headers, candidates, contains, excludes)
        for name, (candidates, contains, excludes) in SITE_COLUMN_ALIASES.items()
    }
    return SiteColumns(**resolved)


def resolve_field(headers, field_name):
    candidates, contains, excludes = SITE_COLUMN_ALIASES[field_name]
    return resolve_header(list(headers), candidates, contains, excludes)


# ------------------------------
# Dataset helpers
# ------------------------------

def _is_blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and np.isnan(value):
        return True
    return str(value).strip() == ''


def dataset_from_upload(payload) -> pd.DataFrame:
    """Build a frame from an upload payload ``{headers, rows}``.

    Header order comes from ``headers`` (or the first row's keys when the list
    is empty). Repeated literal headers keep their first occurrence; cells a
    row does not carry become ''.
    """
    payload = payload or {}
    rows = payload.get('rows') or []
    headers = list(payload.get('headers') or [])
    if not headers and rows:
        headers = list(rows[0].keys())
    headers = list(dict.fromkeys(str(h) for h in headers))
    df = pd.DataFrame(rows)
    df.columns = [str(c) for c in df.columns]
    df = df.reindex(columns=headers)
    return df.fillna('').reset_index(drop=True)


def normalize_site_code(value) -> str:
    """Comparison key for a site code: upper-case, no whitespace or punctuation."""
    if _is_blank(value):
        return ''
    return re.sub(r"[\W_]+", '', str(value).upper())


def _site_key_series(df: pd.DataFrame, column: str) -> pd.Series:
    return df[column].map(normalize_site_code)


# ------------------------------
# Date column grouping
# ------------------------------

_DAY_FIRST = re.compile(r"(\d{1,2})[-/](\d{1,2})[-/](\d{4})")
_YEAR_FIRST = re.compile(r"(\d{4})[-/](\d{1,2})[-/](\d{1,2})")


@dataclass(frozen=True)
class ColumnGroup:
    """A dated snapshot: the date header plus the columns that trail it."""
    date_header: str | None
    date: date | None
    member_headers: tuple = field(default_factory=tuple)
    index: int = -1

    @property
    def is_synthetic(self) -> bool:
        return self.date_header is None


def parse_header_date(header):
    """Parse the calendar date embedded in a header.

    Day-first (DD-MM-YYYY, DD/MM/YYYY) is tried before year-first; the first
    pattern that matches decides. Impossible dates such as 31-02-2025 yield None.
    """
    text = str(header or '')
    for pattern, day_first in ((_DAY_FIRST, True), (_YEAR_FIRST, False)):
        m = pattern.search(text)
        if not m:
            continue
        a, b, c = (int(g) for g in m.groups())
        try:
            return date(c, b, a) if day_first else date(a, b, c)
        except ValueError:
            return None
    return None


def is_date_header(header) -> bool:
    n = normalize_header(header)
    if 'date' not in n and 'time' not in n:
        return False
    return parse_header_date(header) is not None


def fallback_group_columns(headers) -> tuple:
    """Device status, switch status and days offline, whichever the dataset has."""
    cols = []
    for name in ('device_status', 'switch_status', 'days_offline'):
        h = resolve_field(headers, name)
        if h and h not in cols:
            cols.append(h)
    return tuple(cols)


def group_date_columns(headers, site_code_header=None, fallback_columns=None):
    """Split headers into dated column groups.

    Args:
        headers (list[str]): Dataset headers in file order.
        site_code_header (str, optional): Excluded from every group.
        fallback_columns (list[str], optional): Members of the synthetic group
            emitted when no date header exists. Defaults to the resolved
            device status / switch status / days offline headers.

    Returns:
        list[ColumnGroup]: One group per date header in header order, or a single
        synthetic group (``date_header=None``) when there are none.
    """
    headers = list(headers)
    date_positions = [(i, parse_header_date(h)) for i, h in enumerate(headers) if is_date_header(h)]
    if not date_positions:
        if fallback_columns is None:
            fallback_columns = fallback_group_columns(headers)
        members = tuple(c for c in fallback_columns if c != site_code_header)
        return [ColumnGroup(None, None, members, -1)]

    groups = []
    boundaries = [i for i, _ in date_positions] + [len(headers)]
    for (i, parsed), j in zip(date_positions, boundaries[1:]):
        members = tuple(h for h in headers[i + 1:j] if h != site_code_header)
        groups.append(ColumnGroup(headers[i], parsed, members, i))
    return groups


def select_latest_group(groups):
    """Pick the most recent dated group; a date tie goes to the later header."""
    groups = list(groups or [])
    if not groups:
        return None
    dated = [g for g in groups if g.date is not None]
    if not dated:
        return groups[0]
    return max(dated, key=lambda g: (g.date, g.index))


# ------------------------------
# Site key join
# ------------------------------

_DEDUPE_SUFFIX = re.compile(r"^(.*?)(?:\.|_)(\d+)$")


def merged_column_name(header, headers) -> str:
    """Name a member column takes in the primary frame.

    Spreadsheet readers disambiguate repeated headers as ``NAME.1`` / ``NAME_1``;
    when the base name is itself a header the suffix is dropped so every dated
    snapshot lands under the same column.
    """
    m = _DEDUPE_SUFFIX.match(str(header))
    if m and m.group(1) in headers:
        return m.group(1)
    return header


def _latest_rows_by_site(secondary: pd.DataFrame, secondary_key: str, date_header) -> pd.DataFrame:
    df = secondary.copy()
    df['_site_key'] = _site_key_series(df, secondary_key)
    df = df[df['_site_key'] != '']
    if date_header and date_header in df.columns:
        has_date = ~df[date_header].map(_is_blank)
        # stable sort keeps first-seen order among equals
        df = df.assign(_has_date=has_date).sort_values('_has_date', ascending=False, kind='mergesort')
        df = df.drop(columns=['_has_date'])
    return df.drop_duplicates(subset=['_site_key'], keep='first')


def member_targets(group: ColumnGroup, secondary_headers, secondary_key, primary_key) -> dict:
    """Map merged column name -> secondary header for the members of ``group``."""
    headers = list(secondary_headers)
    targets = {}
    for h in group.member_headers:
        if h not in headers or h == secondary_key:
            continue
        name = merged_column_name(h, headers)
        if name == primary_key or name in targets:
            continue
        targets[name] = h
    return targets


def join_latest_group(primary: pd.DataFrame, primary_key: str, secondary: pd.DataFrame,
                      secondary_key: str, group: ColumnGroup) -> pd.DataFrame:
    """Left-join one column group of a secondary dataset into the primary frame.

    Every primary row receives every member column; sites missing from the
    secondary dataset get ''. Member columns already present in the primary
    frame are replaced, so joining the same group twice changes nothing.
    """
    targets = member_targets(group, secondary.columns, secondary_key, primary_key)
    latest = _latest_rows_by_site(secondary, secondary_key, group.date_header)
    lookup = latest.set_index('_site_key')

    out = primary.drop(columns=[t for t in targets if t in primary.columns])
    keys = _site_key_series(out, primary_key)
    for name, source in targets.items():
        out[name] = keys.map(lookup[source]).fillna('').values
    return out


# ------------------------------
# Header surgery
# ------------------------------

SERIAL_SPELLINGS = {'slno', 'sl.no', 's.no', 'sno', 'serial', 'serialno', 'srno', 'sr.no'}


def is_serial_header(header) -> bool:
    n = normalize_header(header)
    return n in SERIAL_SPELLINGS or ('sl' in n and 'no' in n)


def dedupe_serial_columns(headers):
    """Keep the first serial-number-like header and drop any later ones."""
    kept = []
    seen_serial = False
    for h in headers:
        if is_serial_header(h):
            if seen_serial:
                continue
            seen_serial = True
        kept.append(h)
    return kept


def insert_columns_at_anchor(headers, anchor_header, columns):
    """Place ``columns`` directly before ``anchor_header`` (appended if absent)."""
    columns = [c for c in dict.fromkeys(columns)]
    rest = [h for h in headers if h not in columns]
    if anchor_header in rest:
        i = rest.index(anchor_header)
        return rest[:i] + columns + rest[i:]
    return rest + columns


def reorder_headers(headers, anchor_header, merged_columns, attribute_header=None):
    """Move identity columns and merged columns to the end in canonical order.

    Resulting tail: [attribute anchor] -> [site code anchor] -> merged columns
    (original relative order). Returns ``headers`` unchanged when the site code
    anchor is absent.
    """
    headers = list(headers)
    if anchor_header not in headers:
        return headers
    wanted = set(merged_columns)
    merged = [c for c in headers if c in wanted and c not in (anchor_header, attribute_header)]
    moved = set(merged) | {anchor_header}
    tail = []
    if attribute_header and attribute_header in headers:
        moved.add(attribute_header)
        tail.append(attribute_header)
    tail.append(anchor_header)
    tail.extend(merged)
    return [h for h in headers if h not in moved] + tail


# ------------------------------
# Merge pipeline
# ------------------------------

@dataclass
class SecondarySource:
    """A secondary dataset to merge; ``frame`` None means the source is absent."""
    label: str
    frame: pd.DataFrame | None
    columns: list | None = None


@dataclass
class MergeResult:
    frame: pd.DataFrame
    site_code_header: str
    columns: SiteColumns
    merged_columns: list = field(default_factory=list)
    groups: dict = field(default_factory=dict)

    @property
    def headers(self):
        return list(self.frame.columns)


def merge_secondary_source(df: pd.DataFrame, site_code_header: str, source: SecondarySource):
    """Merge the latest column group of one secondary source.

    Returns:
        tuple: (frame, merged column names, selected ColumnGroup or None)
    """
    print(f"Merging {source.label} data...")
    if source.frame is None:
        print(f"Warning: {source.label} dataset not available. Skipping merge.")
        return df, [], None
    headers = list(source.frame.columns)
    secondary_key = resolve_field(headers, 'site_code')
    if not secondary_key:
        print(f"Warning: SITE CODE column not found in {source.label}. Skipping merge.")
        return df, [], None

    groups = group_date_columns(headers, secondary_key, source.columns)
    group = select_latest_group(groups)
    if source.columns is not None and group is not None and not group.is_synthetic:
        wanted = set(source.columns)
        group = ColumnGroup(group.date_header, group.date,
                            tuple(h for h in group.member_headers
                                  if h in wanted or merged_column_name(h, headers) in wanted),
                            group.index)
    targets = member_targets(group, headers, secondary_key, site_code_header) if group else {}
    if not targets:
        print(f"Warning: no columns to merge from {source.label}. Skipping merge.")
        return df, [], group

    df = join_latest_group(df, site_code_header, source.frame, secondary_key, group)
    merged = list(targets)
    matched = int((df[merged] != '').any(axis=1).sum())
    label = group.date_header or 'no dated column'
    print(f"{source.label}: merged {len(merged)} columns from '{label}'. Matched: {matched} of {len(df)} rows")
    return df, merged, group


def merge_site_datasets(primary: pd.DataFrame, sources) -> MergeResult:
    """Reconcile the Device Status Upload dataset with dated secondary datasets.

    Args:
        primary (pd.DataFrame): Device Status Upload rows.
        sources (list[SecondarySource]): Secondary datasets in merge order.

    Returns:
        MergeResult: Merged frame with uniform columns and canonical header order.
    """
    print("Starting site data reconciliation...")
    headers = list(primary.columns)
    site_code_header = resolve_field(headers, 'site_code')
    if not site_code_header:
        raise MissingColumnError("Site Code column not found")

    df = primary.copy().fillna('')
    merged_columns = []
    groups = {}
    for source in sources:
        try:
            df, merged, group = merge_secondary_source(df, site_code_header, source)
        except (KeyError, ValueError) as e:
            print(f"Warning: could not merge {source.label}: {e}")
            continue
        groups[source.label] = group
        if not merged:
            continue
        order = insert_columns_at_anchor(list(df.columns), site_code_header, merged)
        df = df[order]
        merged_columns.extend(c for c in merged if c not in merged_columns)

    primary_columns = resolve_site_columns(headers)
    ordered = reorder_headers(list(df.columns), site_code_header, merged_columns, primary_columns.attribute)
    ordered = dedupe_serial_columns(ordered)
    df = df[ordered].reset_index(drop=True)
    merged_columns = [c for c in merged_columns if c in ordered]

    print(f"Reconciliation completed: {len(df)} rows, {len(df.columns)} columns")
    return MergeResult(df, site_code_header, resolve_site_columns(ordered), merged_columns, groups)


# ------------------------------
# Offline-since dates
# ------------------------------

def offline_since_dates(frame: pd.DataFrame, site_code_header=None) -> dict:
    """Date each site most recently went OFFLINE according to the dated groups.

    The latest ONLINE -> OFFLINE transition wins; with no transition the first
    OFFLINE snapshot is used. Sites never seen OFFLINE are left out.
    """
    if frame is None or frame.empty:
        return {}
    headers = list(frame.columns)
    site_code_header = site_code_header or resolve_field(headers, 'site_code')
    if not site_code_header:
        return {}
    groups = [g for g in group_date_columns(headers, site_code_header) if not g.is_synthetic]
    snapshots = []
    for g in sorted(groups, key=lambda g: (g.date, g.index)):
        status_header = resolve_field(g.member_headers, 'device_status')
        if status_header:
            snapshots.append((g.date, status_header))
    if not snapshots:
        return {}

    result = {}
    for _, row in frame.iterrows():
        code = normalize_site_code(row.get(site_code_header))
        if not code:
            continue
        history = [(d, str(row.get(h, '')).strip().upper()) for d, h in snapshots]
        target = None
        for i in range(len(history) - 1, 0, -1):
            if history[i - 1][1] == 'ONLINE' and history[i][1] == 'OFFLINE':
                target = history[i][0]
                break
        if target is None:
            target = next((d for d, s in history if s == 'OFFLINE'), None)
        if target is not None:
            result[code] = target
    return result
