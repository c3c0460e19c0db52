"""
Backup status store adapters.

Producer and worker both talk to the status store through ``set_status`` and
``get_status``. Inside the API process the database is used directly; remote
workers go through the internal status API with synchronous HTTP calls.
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Optional, Union

import requests

from storage_api.backup_status import BackupStatus, parse_status
from storage_api.database.local import (
    DEFAULT_DB_PATH,
    get_backup_status,
    update_backup_status,
)
from storage_api.errors import ResourceNotFoundError, StatusUpdateError
from storage_api.settings import LOCAL_MODES, Settings

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"


@dataclass
class StatusRecord:
    resource_id: int
    status: BackupStatus
    backup_at: Optional[str] = None
    backup_error: Optional[str] = None
    object_key: Optional[str] = None
    applied: bool = True


class BaseStatusStore:
    """Status store interface; all operations are idempotent."""

    def set_status(self, resource_id: int, status: Union[str, BackupStatus],
                   error: Optional[str] = None) -> StatusRecord:
        raise NotImplementedError

    def get_status(self, resource_id: int) -> StatusRecord:
        raise NotImplementedError


class LocalStatusStore(BaseStatusStore):
    """Reads and writes the resources table directly."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def set_status(self, resource_id, status, error=None):
        status = parse_status(status)
        try:
            record = update_backup_status(resource_id, status, error, db_path=self.db_path)
        except sqlite3.Error as e:
            raise StatusUpdateError(f"Could not write backup status of resource {resource_id}: {e}") from e
        if record is None:
            raise ResourceNotFoundError(resource_id)
        if record["applied"]:
            logger.info(f"Resource {resource_id} backup status -> {status.value}")
        return StatusRecord(
            resource_id=resource_id,
            status=BackupStatus(record["backup_status"]),
            backup_at=record["backup_at"],
            backup_error=record["backup_error"],
            object_key=record["file_path"],
            applied=record["applied"],
        )

    def get_status(self, resource_id):
        try:
            record = get_backup_status(resource_id, db_path=self.db_path)
        except sqlite3.Error as e:
            raise StatusUpdateError(f"Could not read backup status of resource {resource_id}: {e}") from e
        if record is None:
            raise ResourceNotFoundError(resource_id)
        return StatusRecord(
            resource_id=resource_id,
            status=BackupStatus(record["backup_status"] or BackupStatus.NONE.value),
            backup_at=record["backup_at"],
            backup_error=record["backup_error"],
            object_key=record["file_path"],
        )


class HttpStatusStore(BaseStatusStore):
    """Client for the internal backup status API."""

    def __init__(self, base_url: str, api_key: Optional[str] = None,
                 timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _url(self, resource_id: int) -> str:
        return f"{self.base_url}/api/internal/backup/{resource_id}/status"

    def _headers(self) -> dict:
        if self.api_key:
            return {API_KEY_HEADER: self.api_key}
        return {}

    def _request(self, method: str, resource_id: int, payload: Optional[dict] = None) -> dict:
        url = self._url(resource_id)
        logger.debug(f"Making {method} request to {url}")
        try:
            response = self.session.request(
                method, url, json=payload, headers=self._headers(), timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise StatusUpdateError(f"Status API call failed: {e}") from e

        if response.status_code == 404:
            raise ResourceNotFoundError(resource_id)
        if response.status_code != 200:
            raise StatusUpdateError(
                f"Status API returned {response.status_code} for resource {resource_id}: {response.text[:200]}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise StatusUpdateError(f"Status API returned a non-JSON body: {e}") from e

    def set_status(self, resource_id, status, error=None):
        status = parse_status(status)
        payload = {"status": status.value}
        if error is not None:
            payload["error"] = error
        body = self._request("POST", resource_id, payload)
        stored = BackupStatus(body.get("status", status.value))
        logger.info(f"Updated resource {resource_id} backup status to {stored.value} via API")
        return StatusRecord(
            resource_id=resource_id,
            status=stored,
            backup_at=body.get("updatedAt"),
            backup_error=error,
            applied=stored is status,
        )

    def get_status(self, resource_id):
        body = self._request("GET", resource_id)
        return StatusRecord(
            resource_id=resource_id,
            status=BackupStatus(body.get("backupStatus") or BackupStatus.NONE.value),
            backup_at=body.get("backupAt"),
            backup_error=body.get("backupError"),
            object_key=body.get("filePath"),
        )


def get_status_store(settings: Settings, remote: Optional[bool] = None) -> BaseStatusStore:
    """
    Status store for a worker process.

    Workers deployed next to the database (local-dev, the inline worker) use
    it directly; everything else goes through the internal API.
    """
    if remote is None:
        remote = settings.deployment_mode not in LOCAL_MODES
    if remote:
        return HttpStatusStore(
            base_url=settings.api_base_url,
            api_key=settings.internal_api_key,
            timeout=settings.status_api_timeout_seconds,
        )
    return LocalStatusStore(settings.db_path)
