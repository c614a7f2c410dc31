"""
Server API client for the offline sync core.
Sends queued actions to the EDUCAFRIC REST API and classifies the outcome.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

import requests

from educafric_core.errors import PermanentSyncError, TransientSyncError
from educafric_core.offline.models import EntityType, Operation, QueuedAction

logger = logging.getLogger(__name__)


@dataclass
class APIConfig:
    """Configuration for the EDUCAFRIC API connection"""
    base_url: str
    api_token: Optional[str] = None
    timeout: float = 30.0
    probe_timeout: float = 3.0
    headers: Dict[str, str] = field(default_factory=dict)


class SyncApiClient:
    """
    One endpoint per entity type:
        create -> POST   <endpoint>
        update -> PUT    <endpoint>/<entity_id>
        delete -> DELETE <endpoint>/<entity_id>

    2xx returns the canonical record, 4xx raises PermanentSyncError,
    5xx and network failures raise TransientSyncError.
    """

    WRITE_ENDPOINTS = {
        EntityType.ATTENDANCE: "api/sync/attendance",
        EntityType.GRADE: "api/sync/grades",
        EntityType.HOMEWORK: "api/sync/homework",
        EntityType.MESSAGE: "api/messages",
        EntityType.ASSIGNMENT: "api/assignments",
        EntityType.STUDENT: "api/students",
        EntityType.CLASS: "api/classes",
        EntityType.TEACHER: "api/teachers",
    }

    # Collections downloaded for offline use, keyed by cache key
    READ_ENDPOINTS = {
        "classes": "api/director/classes",
        "rooms": "api/director/rooms",
        "teachers": "api/director/teachers",
        "students": "api/director/students",
        "timetables": "api/director/timetables",
        "grades": "api/director/grades",
    }

    STATUS_ENDPOINT = "api/sync/status"
    PROFILE_ENDPOINT = "api/profile"

    METHODS = {
        Operation.CREATE: "POST",
        Operation.UPDATE: "PUT",
        Operation.DELETE: "DELETE",
    }

    def __init__(self, config: APIConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if config.headers:
            self.session.headers.update(config.headers)
        if config.api_token:
            self._set_auth_header()

    def _set_auth_header(self):
        self.session.headers["Authorization"] = f"Bearer {self.config.api_token}"

    def _url(self, endpoint: str) -> str:
        return f"{self.config.base_url.rstrip('/')}/{endpoint.lstrip('/')}"

    def endpoint_for(self, action: QueuedAction) -> str:
        """Resolve the endpoint path for a queued action."""
        base = self.WRITE_ENDPOINTS[action.entity_type]
        if action.operation == Operation.CREATE:
            return base
        if action.entity_id is None:
            raise PermanentSyncError(
                f"Cannot {action.operation.value} {action.entity_type.value} without an id",
                endpoint=base,
            )
        return f"{base}/{action.entity_id}"

    def _request(
        self,
        method: str,
        endpoint: str,
        timeout: float,
        data: Optional[Dict[str, Any]] = None,
    ) -> requests.Response:
        """
        Make an HTTP request and classify failures.

        Raises:
            TransientSyncError: network error, timeout or 5xx
            PermanentSyncError: 4xx
        """
        url = self._url(endpoint)
        try:
            response = self.session.request(
                method=method,
                url=url,
                json=data,
                timeout=timeout,
            )
        except requests.exceptions.RequestException as e:
            raise TransientSyncError(
                f"{method} {endpoint} failed: {e}", endpoint=endpoint
            ) from e

        status = response.status_code
        if 200 <= status < 300:
            return response

        reason = self._error_text(response)
        if 400 <= status < 500:
            raise PermanentSyncError(
                f"Server rejected {method} {endpoint} ({status}): {reason}",
                status_code=status,
                endpoint=endpoint,
            )
        raise TransientSyncError(
            f"Server error on {method} {endpoint} ({status}): {reason}",
            status_code=status,
            endpoint=endpoint,
        )

    @staticmethod
    def _error_text(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return (response.text or "").strip()[:200] or response.reason or ""
        if isinstance(body, dict):
            return str(body.get("error") or body.get("message") or body)
        return str(body)

    @staticmethod
    def _unwrap(response: requests.Response) -> Any:
        """Return the canonical record, unwrapping {"success": ..., "data": ...}."""
        if response.status_code == 204 or not response.content:
            return None
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def send_action(self, action: QueuedAction) -> Any:
        """
        Send one queued action to its entity endpoint.

        Returns:
            The server's canonical representation (None for empty bodies)
        """
        endpoint = self.endpoint_for(action)
        method = self.METHODS[action.operation]
        body = None if action.operation == Operation.DELETE else action.payload
        response = self._request(method, endpoint, self.config.timeout, data=body)
        logger.debug(f"Synced #{action.id}: {method} {endpoint} -> {response.status_code}")
        return self._unwrap(response)

    def probe(self) -> bool:
        """Lightweight health probe with the short timeout."""
        try:
            self._request("GET", self.STATUS_ENDPOINT, self.config.probe_timeout)
            return True
        except (TransientSyncError, PermanentSyncError) as e:
            logger.debug(f"Health probe failed: {e.message}")
            return False

    def fetch_collection(self, name: str) -> List[Dict[str, Any]]:
        """Download one collection for offline use."""
        endpoint = self.READ_ENDPOINTS.get(name)
        if endpoint is None:
            raise ValueError(f"Unknown collection: {name}")
        response = self._request("GET", endpoint, self.config.timeout)
        data = self._unwrap(response)
        if data is None:
            return []
        return data if isinstance(data, list) else [data]

    def fetch_profile(self) -> Dict[str, Any]:
        """Current user's profile (carries school.offlineEnabled)."""
        response = self._request("GET", self.PROFILE_ENDPOINT, self.config.timeout)
        data = self._unwrap(response)
        return data if isinstance(data, dict) else {}
