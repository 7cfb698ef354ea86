from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote

import httpx
from jose import jwt
from opentelemetry import trace

from app.context import get_correlation_id
from app.core.cache import Cache, get_cache
from app.core.config import Settings, get_settings
from app.pipelines.sheets.a1 import parse_range

tracer = trace.get_tracer("app.pipelines.sheets.client")

SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
TOKEN_LIFETIME_SECONDS = 3600
TOKEN_REFRESH_MARGIN_SECONDS = 60


class SheetsApiError(Exception):
    """A failed call to the external sheet service, with a classified ``error_type``."""

    def __init__(self, status_code: int | None, message: str, error_type: str = "unknown") -> None:
        self.status_code = status_code
        self.error_type = error_type
        super().__init__(message)


def classify_sheets_error(status_code: int | None, message: str) -> SheetsApiError:
    lowered = message.lower()
    if status_code in (401, 403):
        error_type = "permission_denied"
    elif status_code == 404 or (status_code == 400 and "unable to parse range" in lowered):
        error_type = "sheet_not_found"
    elif status_code == 429 or "quota" in lowered:
        error_type = "rate_limit"
    elif status_code is None:
        error_type = "network_error"
    else:
        error_type = "unknown"
    return SheetsApiError(status_code, message, error_type)


class SheetsClient(Protocol):
    def get_values(self, spreadsheet_id: str, range_: str) -> list[list[Any]]: ...

    def batch_update_values(self, spreadsheet_id: str, data: list[dict[str, Any]]) -> int: ...

    def delete_row(self, spreadsheet_id: str, sheet_name: str, row_number: int) -> None: ...


class GoogleSheetsClient:
    """Sheets v4 REST client authenticating as a service account."""

    def __init__(
        self,
        credentials: dict[str, Any],
        *,
        base_url: str,
        token_uri: str,
        timeout: float = 30.0,
        cache: Cache | None = None,
        http_client: httpx.Client | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client_email = str(credentials["client_email"])
        self._private_key = str(credentials["private_key"])
        self._private_key_id = credentials.get("private_key_id")
        self.base_url = base_url.rstrip("/")
        self.token_uri = credentials.get("token_uri") or token_uri
        self.cache = cache or get_cache()
        self.http = http_client or httpx.Client(timeout=timeout)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, cache: Cache | None = None) -> GoogleSheetsClient:
        raw = (settings.google_service_account_json or "").strip()
        if not raw:
            raise ValueError("google_service_account_json is not configured")
        info = json.loads(raw if raw.startswith("{") else Path(raw).read_text(encoding="utf-8"))
        return cls(
            info,
            base_url=settings.sheets_api_base_url,
            token_uri=settings.sheets_token_uri,
            timeout=settings.sheets_http_timeout_seconds,
            cache=cache,
        )

    def _token_cache_key(self) -> str:
        return f"sheets:token:{self.client_email}"

    def _access_token(self) -> str:
        cached = self.cache.get(self._token_cache_key())
        if cached:
            return str(cached)

        issued_at = int(self._clock())
        claims = {
            "iss": self.client_email,
            "scope": SHEETS_SCOPE,
            "aud": self.token_uri,
            "iat": issued_at,
            "exp": issued_at + TOKEN_LIFETIME_SECONDS,
        }
        headers = {"kid": self._private_key_id} if self._private_key_id else None
        assertion = jwt.encode(claims, self._private_key, algorithm="RS256", headers=headers)

        try:
            response = self.http.post(
                self.token_uri,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
                headers={"Accept": "application/json"},
            )
        except httpx.TransportError as exc:
            raise SheetsApiError(None, f"token exchange failed: {exc}", "network_error") from exc
        if response.status_code != 200:
            raise classify_sheets_error(response.status_code, f"token exchange failed: {response.text}")

        payload = response.json()
        token = str(payload["access_token"])
        expires_in = int(payload.get("expires_in", TOKEN_LIFETIME_SECONDS))
        self.cache.set(self._token_cache_key(), token, ttl_seconds=max(expires_in - TOKEN_REFRESH_MARGIN_SECONDS, 1))
        return token

    def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._access_token()}", "Accept": "application/json"}
        try:
            response = self.http.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as exc:
            raise SheetsApiError(None, f"sheets request failed: {exc}", "network_error") from exc

        if response.status_code >= 400:
            message = response.text
            try:
                message = str(response.json()["error"]["message"])
            except (ValueError, KeyError, TypeError):
                pass
            raise classify_sheets_error(response.status_code, message)
        return response.json() if response.content else {}

    def get_values(self, spreadsheet_id: str, range_: str) -> list[list[Any]]:
        with tracer.start_as_current_span("sheets.get_values") as span:
            span.set_attribute("spreadsheet_id", spreadsheet_id)
            span.set_attribute("range", range_)
            span.set_attribute("correlation_id", get_correlation_id() or "")
            payload = self._request(
                "GET",
                f"{self.base_url}/{spreadsheet_id}/values/{quote(range_, safe='')}",
                params={"valueRenderOption": "UNFORMATTED_VALUE", "dateTimeRenderOption": "SERIAL_NUMBER"},
            )
            values = payload.get("values", [])
            span.set_attribute("row_count", len(values))
            return values

    def batch_update_values(self, spreadsheet_id: str, data: list[dict[str, Any]]) -> int:
        with tracer.start_as_current_span("sheets.batch_update_values") as span:
            span.set_attribute("spreadsheet_id", spreadsheet_id)
            span.set_attribute("range_count", len(data))
            span.set_attribute("correlation_id", get_correlation_id() or "")
            payload = self._request(
                "POST",
                f"{self.base_url}/{spreadsheet_id}/values:batchUpdate",
                json={"valueInputOption": "USER_ENTERED", "data": data},
            )
            updated = int(payload.get("totalUpdatedCells", 0))
            span.set_attribute("updated_cells", updated)
            return updated

    def _sheet_gid(self, spreadsheet_id: str, sheet_name: str) -> int:
        cache_key = f"sheets:gid:{spreadsheet_id}:{sheet_name}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return int(cached)

        payload = self._request("GET", f"{self.base_url}/{spreadsheet_id}", params={"fields": "sheets.properties"})
        for sheet in payload.get("sheets", []):
            properties = sheet.get("properties", {})
            if properties.get("title") == sheet_name:
                gid = int(properties["sheetId"])
                self.cache.set(cache_key, gid)
                return gid
        raise SheetsApiError(404, f"tab {sheet_name!r} not found", "sheet_not_found")

    def delete_row(self, spreadsheet_id: str, sheet_name: str, row_number: int) -> None:
        with tracer.start_as_current_span("sheets.delete_row") as span:
            span.set_attribute("spreadsheet_id", spreadsheet_id)
            span.set_attribute("sheet_name", sheet_name)
            span.set_attribute("row_number", row_number)
            gid = self._sheet_gid(spreadsheet_id, sheet_name)
            self._request(
                "POST",
                f"{self.base_url}/{spreadsheet_id}:batchUpdate",
                json={
                    "requests": [
                        {
                            "deleteDimension": {
                                "range": {
                                    "sheetId": gid,
                                    "dimension": "ROWS",
                                    "startIndex": row_number - 1,
                                    "endIndex": row_number,
                                }
                            }
                        }
                    ]
                },
            )


class InMemorySheetsClient:
    """Sheets held in process memory, addressed exactly like the real API."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tabs: dict[tuple[str, str], list[list[Any]]] = {}
        self.failures: list[SheetsApiError] = []
        self.write_requests = 0
        self.read_requests = 0

    def seed(self, spreadsheet_id: str, sheet_name: str, rows: list[list[Any]] | None = None, *, start_row: int = 1) -> None:
        with self._lock:
            tab = self._tabs.setdefault((spreadsheet_id, sheet_name), [])
            for offset, row in enumerate(rows or []):
                self._write_cells(tab, start_row + offset - 1, 0, list(row))

    def rows(self, spreadsheet_id: str, sheet_name: str) -> list[list[Any]]:
        with self._lock:
            return [list(row) for row in self._tabs.get((spreadsheet_id, sheet_name), [])]

    def row(self, spreadsheet_id: str, sheet_name: str, row_number: int) -> list[Any]:
        rows = self.rows(spreadsheet_id, sheet_name)
        return rows[row_number - 1] if 0 < row_number <= len(rows) else []

    def fail_next(self, error: SheetsApiError) -> None:
        self.failures.append(error)

    def _maybe_fail(self) -> None:
        if self.failures:
            raise self.failures.pop(0)

    def _tab(self, spreadsheet_id: str, sheet_name: str) -> list[list[Any]]:
        tab = self._tabs.get((spreadsheet_id, sheet_name))
        if tab is None:
            raise SheetsApiError(400, f"Unable to parse range: {sheet_name}", "sheet_not_found")
        return tab

    @staticmethod
    def _write_cells(tab: list[list[Any]], row_index: int, column_index: int, values: list[Any]) -> int:
        while len(tab) <= row_index:
            tab.append([])
        row = tab[row_index]
        needed = column_index + len(values)
        if len(row) < needed:
            row.extend([""] * (needed - len(row)))
        row[column_index:needed] = values
        return len(values)

    def get_values(self, spreadsheet_id: str, range_: str) -> list[list[Any]]:
        parsed = parse_range(range_)
        with self._lock:
            self.read_requests += 1
            self._maybe_fail()
            tab = self._tab(spreadsheet_id, parsed.sheet_name)
            first = (parsed.start_row or 1) - 1
            last = parsed.end_row if parsed.end_row is not None else len(tab)
            result: list[list[Any]] = []
            for row in tab[first:last]:
                cells = list(row[parsed.start_column : parsed.end_column + 1])
                while cells and cells[-1] in ("", None):
                    cells.pop()
                result.append(cells)
            while result and not result[-1]:
                result.pop()
            return result

    def batch_update_values(self, spreadsheet_id: str, data: list[dict[str, Any]]) -> int:
        with self._lock:
            self.write_requests += 1
            self._maybe_fail()
            updated = 0
            for entry in data:
                parsed = parse_range(entry["range"])
                tab = self._tab(spreadsheet_id, parsed.sheet_name)
                for offset, values in enumerate(entry["values"]):
                    updated += self._write_cells(tab, (parsed.start_row or 1) - 1 + offset, parsed.start_column, list(values))
            return updated

    def delete_row(self, spreadsheet_id: str, sheet_name: str, row_number: int) -> None:
        with self._lock:
            self.write_requests += 1
            self._maybe_fail()
            tab = self._tab(spreadsheet_id, sheet_name)
            if 0 < row_number <= len(tab):
                del tab[row_number - 1]


_CLIENT_LOCK = threading.Lock()
_SHEETS_CLIENT: SheetsClient | None = None


def build_sheets_client(settings: Settings | None = None) -> SheetsClient:
    resolved = settings or get_settings()
    if resolved.sheets_backend == "google":
        return GoogleSheetsClient.from_settings(resolved)
    return InMemorySheetsClient()


def get_sheets_client() -> SheetsClient:
    global _SHEETS_CLIENT
    with _CLIENT_LOCK:
        if _SHEETS_CLIENT is None:
            _SHEETS_CLIENT = build_sheets_client()
        return _SHEETS_CLIENT


def set_sheets_client(client: SheetsClient | None) -> None:
    global _SHEETS_CLIENT
    with _CLIENT_LOCK:
        _SHEETS_CLIENT = client
