import os
from dataclasses import dataclass, field

import pandas as pd

from dashboard_api import (
    DEVICE_STATUS_UPLOAD, ONLINE_OFFLINE_DATA, RTU_TRACKER, DashboardAPIError, find_latest_upload, uploads_version,
)
from process_sites import (
    MIN_DAYS_OFFLINE, MergeResult, SecondarySource, dataset_from_upload, merge_site_datasets, offline_since_dates,
)
from site_filters import filter_options, select_offline_sites
from site_status import ActionRecord, ApprovalRecord, TaskRecord, build_status_table

REQUIRED_ROLE = os.getenv('DEVICE_STATUS_ROLE', 'CCR')

OFFLINE_SITES = 'OFFLINE SITES'
RTU_TRACKER_SITES = 'RTU TRACKER'
APPLICATION_TYPES = (OFFLINE_SITES, RTU_TRACKER_SITES)


class RoleMismatchError(PermissionError):
    """The signed-in user's role may not open this view."""


@dataclass
class DeviceStatusView:
    merged: MergeResult
    offline_sites: pd.DataFrame
    status_table: pd.DataFrame
    version: str = ''
    options: dict = field(default_factory=dict)


def check_role(user, required_role=REQUIRED_ROLE):
    if not user or user.role != required_role:
        raise RoleMismatchError(f"This page is only accessible to {required_role} role users")


def _fetch_secondary(client, files, kind, label):
    """Fetch a secondary dataset; any failure means the source is absent."""
    upload = find_latest_upload(files, kind)
    if upload is None:
        print(f"Warning: no {label} upload found.")
        return None
    try:
        return dataset_from_upload(client.get_upload(upload.get('fileId')))
    except DashboardAPIError as e:
        print(f"Warning: could not load {label} data: {e}")
        return None


def _fetch_records(client, method, label, *args):
    try:
        return getattr(client, method)(*args)
    except DashboardAPIError as e:
        print(f"Warning: could not load {label}: {e}")
        return []


def load_device_status_view(client, user, application_type=OFFLINE_SITES, min_days_offline=MIN_DAYS_OFFLINE,
                            required_role=REQUIRED_ROLE, files=None):
    """Build the Device Status page data for ``user``.

    Fetches run one after another: uploads list, Device Status Upload file,
    ONLINE-OFFLINE and RTU-TRACKER files, then the offline-site, action and
    approval collections. RTU TRACKER views read approvals from the RTU tracker
    collection instead of the CCR one. Only the role check and the primary file
    are fatal. ``files`` is an uploads list the caller already fetched.

    Returns:
        DeviceStatusView: Merged rows, selected offline sites and the status table.
    """
    check_role(user, required_role)

    if files is None:
        files = client.list_uploads()
    primary_upload = find_latest_upload(files, DEVICE_STATUS_UPLOAD)
    if primary_upload is None:
        raise DashboardAPIError("No Device Status Upload file found")
    primary = dataset_from_upload(client.get_upload(primary_upload.get('fileId')))
    print(f"Device Status Upload loaded: {len(primary)} rows")

    online_offline = _fetch_secondary(client, files, ONLINE_OFFLINE_DATA, 'ONLINE-OFFLINE')
    rtu_tracker = _fetch_secondary(client, files, RTU_TRACKER, 'RTU-TRACKER')

    merged = merge_site_datasets(primary, [
        SecondarySource('ONLINE-OFFLINE', online_offline),
        SecondarySource('RTU-TRACKER', rtu_tracker),
    ])
    offline = select_offline_sites(merged.frame, merged.columns, min_days_offline)
    offline_dates = offline_since_dates(online_offline) if online_offline is not None else {}

    tasks = [TaskRecord.from_api(r) for r in _fetch_records(client, 'list_offline_sites', 'offline sites', True)]
    actions = [ActionRecord.from_api(r) for r in _fetch_records(client, 'list_actions', 'actions')]
    if application_type == RTU_TRACKER_SITES:
        approvals = [ApprovalRecord.from_api(r, default_type='RTU Tracker Resolution Approval')
                     for r in _fetch_records(client, 'list_rtu_tracker_approvals', 'RTU tracker approvals')]
    else:
        approvals = [ApprovalRecord.from_api(r) for r in _fetch_records(client, 'list_approvals', 'approvals')]

    table = build_status_table(offline, merged.columns, tasks, actions, approvals, offline_dates)
    options = {name: filter_options(table, name) for name in ('circle', 'division', 'sub_division')}
    return DeviceStatusView(merged, offline, table, uploads_version(files), options)
