"""
Google Sheets REST client backing the spreadsheet export target.
"""
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from record_transfer.core.config import settings
from record_transfer.integrations.webapi import WebApiError

logger = logging.getLogger(__name__)


class GoogleSheetsClient:
    """Creates spreadsheets and appends rows through the Sheets v4 API."""

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: Optional[int] = None,
    ):
        self.token = token if token is not None else settings.sheets_api_token
        if not self.token:
            raise WebApiError("Sheets API token is not configured (set SHEETS_API_TOKEN)")
        self.base_url = (base_url or settings.sheets_api_url).rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout or settings.webapi_timeout_seconds

    def _post(self, url: str, body: Dict[str, Any], params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        response = self.session.post(
            url,
            json=body,
            params=params,
            headers={"Authorization": f"Bearer {self.token}"},
            timeout=self.timeout,
        )
        if response.status_code >= 400:
            raise WebApiError(
                f"Sheets API error {response.status_code}: {response.text}",
                response.status_code,
                response.text,
            )
        return response.json()

    def create(self, title: str) -> Dict[str, Any]:
        spreadsheet = self._post(self.base_url, {"properties": {"title": title}})
        logger.info("Created spreadsheet %s", spreadsheet.get("spreadsheetId"))
        return spreadsheet

    def append(self, spreadsheet_id: str, range_name: str, values: List[List[Any]]) -> Dict[str, Any]:
        url = f"{self.base_url}/{spreadsheet_id}/values/{quote(range_name)}:append"
        return self._post(
            url,
            {"values": values},
            params={"valueInputOption": "RAW", "insertDataOption": "INSERT_ROWS"},
        )
