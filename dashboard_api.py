import hashlib
import os
import re
from dataclasses import dataclass, field

import pandas as pd
import requests

API_BASE = os.getenv('DASHBOARD_API_BASE', 'http://localhost:5000').rstrip('/')
API_TOKEN = os.getenv('DASHBOARD_API_TOKEN', '')
# Seconds; 0 disables the timeout.
HTTP_TIMEOUT = float(os.getenv('DASHBOARD_HTTP_TIMEOUT', '30'))

DEVICE_STATUS_UPLOAD = 'device-status-upload'
ONLINE_OFFLINE_DATA = 'online-offline-data'
RTU_TRACKER = 'rtu-tracker'


class DashboardAPIError(RuntimeError):
    """Transport failure or an unsuccessful response from the dashboard API."""


@dataclass(frozen=True)
class UserContext:
    """Who is loading the page; built once per request and never mutated."""
    user_id: str = ''
    role: str = ''
    divisions: tuple = field(default_factory=tuple)


class DashboardClient:
    """Bearer-token JSON client for the dashboard's REST collaborators."""

    def __init__(self, base_url=API_BASE, token=API_TOKEN, session=None, timeout=HTTP_TIMEOUT):
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.session = session or requests.Session()
        self.timeout = timeout or None

    def _request(self, method, path, **kwargs):
        headers = kwargs.pop('headers', {})
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise DashboardAPIError(f"{method} {path} failed: {e}") from e
        if isinstance(data, dict) and data.get('success') is False:
            raise DashboardAPIError(f"{method} {path} failed: {data.get('message') or 'unsuccessful response'}")
        return data

    def _get(self, path, **kwargs):
        return self._request('GET', path, **kwargs)

    @staticmethod
    def _records(data, *keys):
        for key in keys:
            value = data.get(key) if isinstance(data, dict) else None
            if isinstance(value, list):
                return value
        return data if isinstance(data, list) else []

    def list_uploads(self):
        return self._records(self._get('/api/uploads'), 'files', 'data')

    def get_upload(self, file_id):
        """Upload detail: ``{'headers': [...], 'rows': [...]}``."""
        data = self._get(f'/api/uploads/{file_id}')
        upload = data.get('file') if isinstance(data, dict) else None
        if not upload:
            raise DashboardAPIError(f"Upload {file_id} has no file data")
        return upload

    def list_offline_sites(self, include_approved=False):
        params = {'includeApproved': 'true'} if include_approved else None
        return self._records(self._get('/api/equipment-offline-sites', params=params), 'data')

    def list_actions(self):
        return self._records(self._get('/api/actions'), 'data', 'actions')

    def list_approvals(self):
        return self._records(self._get('/api/approvals'), 'data')

    def list_rtu_tracker_approvals(self):
        return self._records(self._get('/api/rtu-tracker-approvals'), 'data')

    def save_rows(self, file_id, rows):
        return self._request('PUT', f'/api/uploads/{file_id}/rows', json={'rows': rows})


# ------------------------------
# Upload discovery
# ------------------------------

def _squash(name) -> str:
    return re.sub(r"[-_\s]", '', str(name or '').lower())


def is_online_offline_name(name) -> bool:
    return 'onlineoffline' in _squash(name)


def is_rtu_tracker_name(name) -> bool:
    return 'rtutracker' in _squash(name) or bool(re.search(r"rtu.*tracker", str(name or ''), flags=re.IGNORECASE))


def _upload_type(f) -> str:
    return str(f.get('uploadType') or '').strip().lower()


def matches_upload_kind(f, kind) -> bool:
    name = f.get('name') or ''
    upload_type = _upload_type(f)
    if kind == DEVICE_STATUS_UPLOAD:
        return upload_type == DEVICE_STATUS_UPLOAD and not is_online_offline_name(name) and not is_rtu_tracker_name(name)
    if kind == ONLINE_OFFLINE_DATA:
        return upload_type == ONLINE_OFFLINE_DATA or is_online_offline_name(name)
    if kind == RTU_TRACKER:
        return upload_type == RTU_TRACKER or is_rtu_tracker_name(name)
    raise ValueError(f"Unknown upload kind: {kind}")


def _uploaded_at(f):
    stamp = pd.to_datetime(f.get('uploadedAt') or f.get('createdAt'), errors='coerce', utc=True)
    return stamp if not pd.isna(stamp) else pd.Timestamp(0, tz='UTC')


def find_latest_upload(files, kind):
    """Most recently uploaded file of ``kind``, or None."""
    candidates = [f for f in (files or []) if matches_upload_kind(f, kind)]
    if not candidates:
        return None
    return max(candidates, key=_uploaded_at)


def uploads_version(files) -> str:
    """Token that changes whenever an upload is added, replaced or removed."""
    parts = sorted(f"{f.get('fileId')}|{f.get('uploadedAt') or f.get('createdAt') or ''}" for f in (files or []))
    return hashlib.sha1('\n'.join(parts).encode('utf-8')).hexdigest()
