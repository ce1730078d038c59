from __future__ import annotations

from typing import Any, Optional
from urllib.parse import quote

import requests
from pydantic import ValidationError

from habitsync.errors import (
    RemoteConflictError,
    RemoteFatalError,
    RemoteTransientError,
    TokenExpiredError,
)
from habitsync.models import DatabaseChanges, RemoteRecord, ZoneChanges

TRANSIENT_STATUS = {408, 429, 500, 502, 503, 504}


def _first_error(e: ValidationError) -> str:
    err = e.errors()[0]
    loc = ".".join(str(p) for p in err["loc"])
    return f"{loc}: {err['msg']}"


class HttpRecordStore:
    def __init__(self, base_url: str, api_token: str = "", timeout: int = 30):
        self.base_url = (base_url or "").rstrip("/")
        self.api_token = api_token or ""
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def _zone_url(self, zone: str, suffix: str = "") -> str:
        return f"{self.base_url}/zones/{quote(zone, safe='')}{suffix}"

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        if not self.base_url:
            raise RemoteFatalError("remote_base_url_missing")
        try:
            return requests.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise RemoteTransientError(f"network_unavailable: {e}") from e
        except requests.RequestException as e:
            raise RemoteFatalError(f"request_failed: {e}") from e

    def _json(self, res: requests.Response) -> dict[str, Any]:
        try:
            payload = res.json()
        except ValueError:
            text = (res.text or "").strip()
            if text in {"", "null"}:
                return {}
            raise RemoteFatalError(f"invalid_response: {text[:200]}")
        return payload if isinstance(payload, dict) else {}

    def _record(self, raw: dict) -> RemoteRecord:
        try:
            return RemoteRecord.model_validate(raw)
        except ValidationError as e:
            raise RemoteFatalError(f"invalid_record: {_first_error(e)}") from e

    def _check(self, res: requests.Response) -> dict[str, Any]:
        if res.status_code in TRANSIENT_STATUS:
            body = (res.text or "")[:200]
            raise RemoteTransientError(f"service_unavailable_status_{res.status_code}: {body}")
        if res.status_code >= 400:
            body = (res.text or "")[:200]
            raise RemoteFatalError(f"remote_failed_status_{res.status_code}: {body}")
        return self._json(res)

    def account_available(self) -> bool:
        res = self._request("GET", f"{self.base_url}/account")
        if res.status_code in (401, 403, 404):
            return False
        data = self._check(res)
        return data.get("status") == "available"

    def ensure_zone(self, zone: str) -> None:
        self._check(self._request("PUT", self._zone_url(zone)))

    def save(self, record: RemoteRecord) -> RemoteRecord:
        res = self._request(
            "PUT",
            self._zone_url(record.zone, f"/records/{quote(record.record_id, safe='')}"),
            json=record.model_dump(mode="json"),
        )
        if res.status_code == 409:
            server_raw = self._json(res).get("server_record")
            if not isinstance(server_raw, dict):
                raise RemoteFatalError("conflict_without_server_record")
            raise RemoteConflictError(self._record(server_raw))
        data = self._check(res)
        saved = data.get("record")
        if not isinstance(saved, dict):
            raise RemoteFatalError("save_no_record")
        return self._record(saved)

    def query_all(self, record_type: str, zone: str) -> list[RemoteRecord]:
        cursor: Optional[str] = None
        items: list[RemoteRecord] = []
        while True:
            params: dict[str, str] = {"type": record_type}
            if cursor:
                params["cursor"] = cursor
            data = self._check(self._request("GET", self._zone_url(zone, "/records"), params=params))
            records_raw = data.get("records", []) or []
            if isinstance(records_raw, list):
                items.extend(self._record(r) for r in records_raw if isinstance(r, dict))
            next_cursor = data.get("next_cursor")
            cursor = str(next_cursor) if next_cursor else None
            if not cursor:
                break
        return items

    def fetch_zone_changes(self, zone: str, token: Optional[str]) -> ZoneChanges:
        params = {"token": token} if token else {}
        res = self._request("GET", self._zone_url(zone, "/changes"), params=params)
        if res.status_code == 410:
            raise TokenExpiredError(f"change_token_expired: {zone}")
        data = self._check(res)
        payload = {
            "changed": data.get("changed") or [],
            "deleted_ids": data.get("deleted_ids") or [],
            "new_token": data.get("token"),
            "more_coming": bool(data.get("more_coming")),
        }
        try:
            return ZoneChanges.model_validate(payload)
        except ValidationError as e:
            raise RemoteFatalError(f"invalid_zone_changes: {_first_error(e)}") from e

    def current_token(self, zone: str) -> Optional[str]:
        data = self._check(self._request("GET", self._zone_url(zone, "/token")))
        token = data.get("token")
        return token if isinstance(token, str) and token else None

    def fetch_database_changes(self, token: Optional[str]) -> Optional[DatabaseChanges]:
        params = {"token": token} if token else {}
        res = self._request("GET", f"{self.base_url}/changes", params=params)
        if res.status_code in (404, 501):
            return None
        if res.status_code == 410:
            raise TokenExpiredError("database_change_token_expired")
        data = self._check(res)
        zones = data.get("changed_zones") or []
        token = data.get("token")
        return DatabaseChanges(
            changed_zones=[str(z) for z in zones if z] if isinstance(zones, list) else [],
            new_token=str(token) if token else None,
        )
