"""
Google Sheets implementation of the SheetWriter interface.
Appends one row per submission using a service account.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

import google_auth_httplib2
import httplib2
from google.auth.exceptions import GoogleAuthError, RefreshError, TransportError
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..domain.ports import SheetWriter, WriteError, WriteErrorKind
from ..domain.schema import AppendRecord, AppendResult


logger = logging.getLogger(__name__)

SCOPE = "https://www.googleapis.com/auth/spreadsheets"
TOKEN_URI = "https://oauth2.googleapis.com/token"

RATE_LIMIT_MARKERS = ("rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded", "RESOURCE_EXHAUSTED")


def normalize_private_key(private_key: str) -> str:
    """Turn a key whose newlines were escaped for the environment back into PEM."""
    return private_key.replace("\\n", "\n")


@dataclass
class SheetsSession:
    """Authenticated Sheets service plus the credentials it was built from."""
    service: Any
    credentials: Any
    timeout_seconds: float = 20.0

    def new_http(self) -> Any:
        # httplib2 is not thread-safe, so each call gets its own transport
        # while sharing the cached credentials and token.
        return google_auth_httplib2.AuthorizedHttp(
            self.credentials,
            http=httplib2.Http(timeout=self.timeout_seconds)
        )


class GoogleSheetsWriter(SheetWriter):
    """
    Appends rows through the Sheets API v4.

    The session (credentials + discovery service) is created on first use and
    reused; an authentication failure drops it so the next attempt
    re-authenticates instead of failing forever on stale credentials.
    """

    def __init__(
        self,
        spreadsheet_id: str,
        client_email: str,
        private_key: str,
        range_name: str = "Cliente!A:D",
        timeout_seconds: float = 20.0,
        session_factory: Optional[Callable[[], SheetsSession]] = None
    ):
        """
        Initialize Sheets writer.

        Args:
            spreadsheet_id: Target spreadsheet ID
            client_email: Service account email
            private_key: Service account PEM key, newlines may be escaped
            range_name: A1 range rows are appended after
            timeout_seconds: HTTP timeout per call
            session_factory: Builds the session; defaults to service account auth
        """
        self.spreadsheet_id = spreadsheet_id
        self.client_email = client_email
        self.private_key = normalize_private_key(private_key)
        self.range_name = range_name
        self.timeout_seconds = timeout_seconds

        self._session_factory = session_factory or self._build_session
        self._session: Optional[SheetsSession] = None
        self._session_lock = threading.Lock()

    async def append(self, record: AppendRecord) -> AppendResult:
        """Append without blocking the event loop."""
        return await asyncio.to_thread(self._append_sync, record)

    def invalidate_session(self) -> None:
        with self._session_lock:
            if self._session is not None:
                logger.warning(
                    "Dropping Google Sheets session",
                    extra={"component": "sheets_writer", "spreadsheet_id": self.spreadsheet_id}
                )
            self._session = None

    @property
    def has_session(self) -> bool:
        return self._session is not None

    def _get_session(self) -> SheetsSession:
        with self._session_lock:
            if self._session is None:
                try:
                    self._session = self._session_factory()
                except (ValueError, GoogleAuthError) as e:
                    logger.error(
                        f"Error initializing Google Sheets: {e}",
                        extra={"component": "sheets_writer", "error": str(e)}
                    )
                    raise WriteError(
                        WriteErrorKind.AUTH,
                        f"Failed to initialize Google Sheets session: {e}"
                    ) from e
                logger.info(
                    "Google Sheets session initialized",
                    extra={"component": "sheets_writer", "client_email": self.client_email}
                )
            return self._session

    def _build_session(self) -> SheetsSession:
        info = {
            "type": "service_account",
            "client_email": self.client_email,
            "private_key": self.private_key,
            "token_uri": TOKEN_URI,
        }
        credentials = service_account.Credentials.from_service_account_info(info, scopes=[SCOPE])
        service = build("sheets", "v4", credentials=credentials, cache_discovery=False)
        return SheetsSession(service=service, credentials=credentials, timeout_seconds=self.timeout_seconds)

    def _append_sync(self, record: AppendRecord) -> AppendResult:
        session = self._get_session()

        request = (
            session.service
            .spreadsheets()
            .values()
            .append(
                spreadsheetId=self.spreadsheet_id,
                range=self.range_name,
                valueInputOption="RAW",
                insertDataOption="INSERT_ROWS",
                body={"values": [record.as_row()]},
            )
        )

        try:
            response = request.execute(http=session.new_http(), num_retries=0)

        except HttpError as e:
            raise self._translate_http_error(e) from e

        except RefreshError as e:
            self.invalidate_session()
            raise self._fail(WriteErrorKind.AUTH, f"Credential refresh failed: {e}") from e

        except TransportError as e:
            raise self._fail(WriteErrorKind.TRANSIENT, f"Token endpoint unreachable: {e}") from e

        except GoogleAuthError as e:
            self.invalidate_session()
            raise self._fail(WriteErrorKind.AUTH, f"Authentication failed: {e}") from e

        except (httplib2.HttpLib2Error, OSError) as e:
            raise self._fail(WriteErrorKind.TRANSIENT, f"Network error: {e}") from e

        updates = response.get("updates") if isinstance(response, dict) else None
        updated_rows = (updates or {}).get("updatedRows") or 0
        if not updated_rows:
            raise self._fail(WriteErrorKind.REJECTED, "Google Sheets append did not write any rows")

        logger.info(
            f"Data appended successfully to {updates.get('updatedRange')}",
            extra={
                "component": "sheets_writer",
                "spreadsheet_id": self.spreadsheet_id,
                "updated_rows": updated_rows
            }
        )
        return AppendResult(updated_range=updates.get("updatedRange"), updated_rows=updated_rows)

    def _translate_http_error(self, error: HttpError) -> WriteError:
        status = int(getattr(error.resp, "status", 0) or 0)
        content = error.content.decode("utf-8", "replace") if isinstance(error.content, bytes) else str(error.content)

        if status == 429 or (status == 403 and any(marker in content for marker in RATE_LIMIT_MARKERS)):
            return self._fail(WriteErrorKind.QUOTA, f"Sheets quota exceeded ({status})", status)

        if status in (401, 403):
            self.invalidate_session()
            return self._fail(WriteErrorKind.AUTH, f"Sheets rejected credentials ({status})", status)

        if status >= 500 or status == 408:
            return self._fail(WriteErrorKind.TRANSIENT, f"Sheets server error ({status})", status)

        return self._fail(WriteErrorKind.REJECTED, f"Sheets rejected the append ({status}): {content[:200]}", status)

    def _fail(self, kind: WriteErrorKind, message: str, status: Optional[int] = None) -> WriteError:
        logger.error(
            f"Error appending data to sheet: {message}",
            extra={
                "component": "sheets_writer",
                "spreadsheet_id": self.spreadsheet_id,
                "error_kind": kind.value,
                "http_status": status
            }
        )
        return WriteError(kind, message, status)
