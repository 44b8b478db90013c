import pandas as pd
from dataclasses import dataclass
from datetime import date, datetime
from typing import NamedTuple

from process_sites import normalize_header, normalize_site_code, SITE_CODE_CANDIDATES

DEFAULT_TASK_STATUS = 'Pending at Equipment Team'

KEPT_FOR_MONITORING = 'Kept for Monitoring'
RECHECK_INITIATED = 'Recheck Initiated'
RESOLVED_AND_APPROVED = 'Resolved and Approved'
WAITING_FOR_CCR = 'Resolved at Equipment Team and Waiting for CCR Approval'

CCR_PHRASES = ('pending at ccr', 'ccr team', 'ccr approval')
APPROVAL_ACTION_TYPES = {'AMC Resolution Approval', 'CCR Resolution Approval'}
CCR_APPROVAL_TYPES = {'CCR Resolution Approval', 'RTU Tracker Resolution Approval'}
RESOLVING_ROLES = {'Equipment', 'AMC'}

STATUS_COLUMNS = [
    'SITE CODE', 'Circle', 'Division', 'Sub Division', 'HRN', 'Device Status',
    'No of Days Offline', 'Attribute', 'Task Status', 'Present Status',
    'Date Label', 'Date', 'Type of Issue', 'Remarks',
]


class StatusResult(NamedTuple):
    present_status: str
    date_label: str
    date: datetime | date | None


def to_timestamp(value):
    """Parse an API timestamp; anything unparsable is None."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    parsed = pd.to_datetime(value, errors='coerce', utc=True)
    if pd.isna(parsed):
        return None
    return parsed.to_pydatetime().replace(tzinfo=None)


def _text(value) -> str:
    if value is None:
        return ''
    return str(value).strip()


def site_code_from_row_data(row_data) -> str:
    """Site code out of an action's copied spreadsheet row."""
    row_data = row_data or {}
    for key in ('Site Code', 'SITE CODE', 'SiteCode', 'Site_Code', 'site code', 'site_code'):
        if row_data.get(key):
            return _text(row_data[key]).upper()
    wanted = {normalize_header(c) for c in SITE_CODE_CANDIDATES}
    for key, value in row_data.items():
        n = normalize_header(key)
        if n in wanted or ('site' in n and 'code' in n):
            return _text(value).upper()
    return ''


@dataclass(frozen=True)
class TaskRecord:
    """Equipment offline-site record: task status and CCR decision for a site."""
    site_code: str
    task_status: str = ''
    ccr_status: str = ''
    type_of_issue: str = ''
    remarks: str = ''
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_api(cls, data):
        return cls(
            site_code=_text(data.get('siteCode')).upper(),
            task_status=_text(data.get('taskStatus')),
            ccr_status=_text(data.get('ccrStatus')),
            type_of_issue=_text(data.get('typeOfIssue')),
            remarks=_text(data.get('remarks')),
            created_at=to_timestamp(data.get('createdAt')),
            updated_at=to_timestamp(data.get('updatedAt')),
        )

    @property
    def last_updated(self):
        return self.updated_at or self.created_at


@dataclass(frozen=True)
class ActionRecord:
    """Routed workflow action."""
    site_code: str
    type_of_issue: str = ''
    status: str = ''
    assigned_to_role: str = ''
    assigned_by_role: str = ''
    approved_by_role: str = ''
    assigned_date: datetime | None = None
    completed_date: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_api(cls, data):
        code = _text(data.get('siteCode')).upper() or site_code_from_row_data(data.get('rowData'))
        return cls(
            site_code=code,
            type_of_issue=_text(data.get('typeOfIssue')),
            status=_text(data.get('status')),
            assigned_to_role=_text(data.get('assignedToRole')),
            assigned_by_role=_text(data.get('assignedByRole')),
            approved_by_role=_text(data.get('approvedByRole')),
            assigned_date=to_timestamp(data.get('assignedDate')),
            completed_date=to_timestamp(data.get('completedDate')),
            created_at=to_timestamp(data.get('createdAt')),
            updated_at=to_timestamp(data.get('updatedAt')),
        )

    @property
    def is_ccr_approval(self) -> bool:
        return (self.type_of_issue in APPROVAL_ACTION_TYPES and self.status == 'Completed'
                and 'CCR' in (self.approved_by_role, self.assigned_to_role))

    @property
    def routed_at(self):
        return self.assigned_date or self.created_at


@dataclass(frozen=True)
class ApprovalRecord:
    """Approval request raised for a site (CCR or RTU tracker)."""
    site_code: str
    approval_type: str = ''
    status: str = ''
    assigned_to_role: str = ''
    approved_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_api(cls, data, default_type=''):
        return cls(
            site_code=_text(data.get('siteCode')).upper(),
            approval_type=_text(data.get('approvalType')) or default_type,
            status=_text(data.get('status') or data.get('ccrStatus')),
            assigned_to_role=_text(data.get('assignedToRole')),
            approved_at=to_timestamp(data.get('approvedAt')),
            created_at=to_timestamp(data.get('createdAt')),
            updated_at=to_timestamp(data.get('updatedAt')),
        )

    @property
    def is_ccr(self) -> bool:
        return self.approval_type in CCR_APPROVAL_TYPES and self.assigned_to_role == 'CCR'


def latest_record_per_site(records) -> dict:
    """Normalized site code -> record, keeping the most recently updated one."""
    latest = {}
    for record in records:
        code = normalize_site_code(record.site_code)
        if not code:
            continue
        current = latest.get(code)
        if current is None:
            latest[code] = record
        elif record.updated_at and current.updated_at and record.updated_at > current.updated_at:
            latest[code] = record
    return latest


def _for_site(records, code):
    return [r for r in records if normalize_site_code(r.site_code) == code]


def _earliest(values):
    values = [v for v in values if v is not None]
    return min(values) if values else None


def _ccr_outcome(task, actions, approvals) -> StatusResult:
    """Monitoring / recheck / approved / waiting sub-branch shared by resolved and CCR-pending tasks."""
    ccr_approval = None
    for approval in approvals:
        if approval.is_ccr and (ccr_approval is None or
                                (approval.updated_at and ccr_approval.updated_at
                                 and approval.updated_at > ccr_approval.updated_at)):
            ccr_approval = approval
    approval_status = ccr_approval.status if ccr_approval else ''
    ccr_status = task.ccr_status if task else ''
    last_updated = task.last_updated if task else None

    if KEPT_FOR_MONITORING in (ccr_status, approval_status):
        return StatusResult(KEPT_FOR_MONITORING, 'Date', last_updated)
    if approval_status == 'Recheck Requested' or ccr_status in ('Recheck', 'Recheck Requested'):
        return StatusResult(RECHECK_INITIATED, 'Date', last_updated)

    approval_action = next((a for a in actions if a.is_ccr_approval), None)
    if approval_action or approval_status == 'Approved' or ccr_status == 'Approved':
        candidates = [
            ccr_approval.approved_at if ccr_approval else None,
            approval_action.completed_date if approval_action else None,
            ccr_approval.updated_at if ccr_approval else None,
            approval_action.updated_at if approval_action else None,
            task.updated_at if task else None,
        ]
        approved_on = next((c for c in candidates if c is not None), None)
        return StatusResult(RESOLVED_AND_APPROVED, 'CCR Approved Date', approved_on)

    resolved_on = _earliest(a.completed_date or a.updated_at for a in actions
                            if a.status == 'Completed' and a.assigned_by_role in RESOLVING_ROLES)
    if resolved_on is None and task:
        resolved_on = task.updated_at or task.created_at
    return StatusResult(WAITING_FOR_CCR, 'Resolved Date', resolved_on)


def derive_present_status(site_code, task=None, actions=(), approvals=(), offline_since=None) -> StatusResult:
    """Work out what a site's issue currently looks like to a human.

    Decision order:
      1. a blank task status reads as 'Pending at Equipment Team';
      2. 'resolved' tasks go through the CCR sub-branch (monitoring, recheck,
         approved, waiting);
      3. so do tasks pending at / with the CCR team;
      4. other 'pending at ...' statuses are shown literally, dated from the
         offline-since date for the equipment team, else the first routing;
      5. any other status is shown literally, dated from the first routing.

    Args:
        site_code (str): Site the records belong to.
        task (TaskRecord, optional): Offline-site record for the site.
        actions (iterable[ActionRecord]): Workflow actions (any site; filtered here).
        approvals (iterable[ApprovalRecord]): Approval requests (any site).
        offline_since (date, optional): When the site last went OFFLINE.

    Returns:
        StatusResult: (present_status, date_label, date)
    """
    code = normalize_site_code(site_code)
    actions = _for_site(actions, code)
    approvals = _for_site(approvals, code)

    task_status = task.task_status if task else ''
    if not task_status or task_status == '-':
        task_status = DEFAULT_TASK_STATUS
    status_lower = task_status.lower()

    if 'resolved' in status_lower or any(p in status_lower for p in CCR_PHRASES):
        return _ccr_outcome(task, actions, approvals)

    routed_on = _earliest(a.routed_at for a in actions)
    created_on = task.created_at if task else None

    if 'pending at' in status_lower:
        if 'pending at equipment' in status_lower:
            return StatusResult(task_status, 'Pending from Date', offline_since or routed_on or created_on)
        return StatusResult(task_status, 'Date of Routing', routed_on or created_on)

    return StatusResult(task_status, 'Date of Routing', routed_on or created_on)


def format_date(value) -> str:
    """DD-MM-YYYY, or '-' when there is no date."""
    if value is None:
        return '-'
    if isinstance(value, str):
        value = to_timestamp(value)
        if value is None:
            return '-'
    return value.strftime('%d-%m-%Y')


def build_status_table(merged, columns, offline_sites=(), actions=(), approvals=(), offline_dates=None) -> pd.DataFrame:
    """One display row per site in ``merged`` with its derived present status.

    Args:
        merged (pd.DataFrame): Reconciled rows (already narrowed to the sites to show).
        columns (SiteColumns): Resolved headers of ``merged``.
        offline_sites (iterable[TaskRecord]): Offline-site records, any order.
        actions (iterable[ActionRecord]): Workflow actions.
        approvals (iterable[ApprovalRecord]): Approval requests.
        offline_dates (dict, optional): Normalized site code -> offline-since date.

    Returns:
        pd.DataFrame: Rows with ``STATUS_COLUMNS``, sorted by site code.
    """
    print("Deriving present status for sites...")
    offline_dates = offline_dates or {}
    tasks = latest_record_per_site(offline_sites)
    actions = list(actions)
    approvals = list(approvals)

    def cell(row, header):
        if not header:
            return ''
        value = row.get(header, '')
        return '' if pd.isna(value) else _text(value)

    rows = []
    for _, row in merged.iterrows():
        display_code = cell(row, columns.site_code)
        code = normalize_site_code(display_code)
        if not code:
            continue
        task = tasks.get(code)
        result = derive_present_status(code, task, actions, approvals, offline_dates.get(code))
        rows.append({
            'SITE CODE': display_code,
            'Circle': cell(row, columns.circle),
            'Division': cell(row, columns.division),
            'Sub Division': cell(row, columns.sub_division),
            'HRN': cell(row, columns.hrn) or '-',
            'Device Status': cell(row, columns.device_status) or '-',
            'No of Days Offline': cell(row, columns.days_offline) or '-',
            'Attribute': cell(row, columns.attribute) or '-',
            'Task Status': (task.task_status if task and task.task_status else DEFAULT_TASK_STATUS),
            'Present Status': result.present_status,
            'Date Label': result.date_label,
            'Date': format_date(result.date),
            'Type of Issue': (task.type_of_issue if task and task.type_of_issue else '-'),
            'Remarks': (task.remarks if task and task.remarks else '-'),
        })

    table = pd.DataFrame(rows, columns=STATUS_COLUMNS)
    table = table.sort_values('SITE CODE', kind='mergesort', key=lambda s: s.map(normalize_site_code))
    table = table.reset_index(drop=True)
    print(f"Status rows built: {len(table)}")
    return table
