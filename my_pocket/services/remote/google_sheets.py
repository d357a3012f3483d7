"""
Google Sheets Remote Backend

DESIGN DECISION: Google Sheets is used as the shared source of truth because:
1. Non-technical users can view their data directly in Sheets
2. No database setup required
3. Built-in backup (Google's infrastructure)
4. Sharing a workspace is sharing a spreadsheet

Two worksheets are used:
- Entities: one row per entity with its current version and JSON payload
- Changes: an append-only log of every accepted write; its row number is
  the sequence the change stream resumes from

TRADEOFFS:
- Not suitable for high-volume data (we're fine for personal use)
- No transactions (a write updates Entities, then appends to Changes)
- The change stream polls instead of receiving pushes

gspread is synchronous; every call runs in a worker thread so the event
loop (and therefore local reads) never waits on the network. The client
connects on the first call, inside that thread, so building the backend
never blocks and never fails while offline.
"""

import asyncio
import json
from typing import Any, AsyncIterator, Callable, Optional, TypeVar

import gspread
import structlog
from google.auth.exceptions import TransportError
from google.oauth2.service_account import Credentials
from tenacity import retry, stop_after_attempt, wait_exponential

from my_pocket.config import GoogleSheetsSettings, get_settings
from my_pocket.models.ledger import EntityRef, EntityType, utc_now
from my_pocket.models.sync import (
    Accepted,
    Conflict,
    EntityDelta,
    MutationOp,
    PendingMutation,
    Rejected,
    SyncOutcome,
)
from my_pocket.services.remote.interface import (
    NetworkUnavailable,
    NotFoundError,
    RemoteBackend,
    is_conflict,
)


logger = structlog.get_logger(__name__)

T = TypeVar("T")


# Column mappings for Entities sheet
ENTITY_COLUMNS = [
    "workspace_id",
    "entity_type",
    "entity_id",
    "version",
    "deleted",
    "payload_json",
    "updated_at",
    "last_mutation_id",
]

# Column mappings for Changes sheet
CHANGE_COLUMNS = [
    "workspace_id",
    "entity_type",
    "entity_id",
    "op",
    "version",
    "payload_json",
    "mutation_id",
    "recorded_at",
]


class SheetsConnectionError(NetworkUnavailable):
    """Could not open the configured spreadsheet. Writes stay queued."""
    pass


def _is_transient(error: gspread.exceptions.APIError) -> bool:
    code = getattr(error, "code", None)
    if code is None:
        response = getattr(error, "response", None)
        code = getattr(response, "status_code", None)
    return code is None or code == 429 or code >= 500


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for API calls.
    """

    def __init__(self, settings: Optional[GoogleSheetsSettings] = None):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = settings or get_settings().google_sheets

    @property
    def settings(self) -> GoogleSheetsSettings:
        return self._settings

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise SheetsConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except OSError as e:
                raise NetworkUnavailable(f"Failed to reach Google Sheets: {e}")
        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise SheetsConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def _get_or_create_sheet(self, title: str, columns: list[str], rows: int) -> gspread.Worksheet:
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            # Create the sheet with headers
            sheet = spreadsheet.add_worksheet(title=title, rows=rows, cols=len(columns))
            sheet.append_row(columns)
        return sheet

    def get_entities_sheet(self) -> gspread.Worksheet:
        """Get or create the Entities worksheet."""
        return self._get_or_create_sheet(self._settings.entities_sheet_name, ENTITY_COLUMNS, 1000)

    def get_changes_sheet(self) -> gspread.Worksheet:
        """Get or create the Changes worksheet."""
        return self._get_or_create_sheet(self._settings.changes_sheet_name, CHANGE_COLUMNS, 5000)


class GoogleSheetsRemoteBackend(RemoteBackend):
    """
    Google Sheets implementation of the remote backend.

    Entity payloads are JSON-serialized into a single cell.
    """

    def __init__(
        self,
        client: Optional[GoogleSheetsClient] = None,
        poll_interval_seconds: Optional[float] = None,
    ):
        self._client = client or GoogleSheetsClient()
        self._poll_interval = (
            poll_interval_seconds
            if poll_interval_seconds is not None
            else self._client.settings.poll_interval_seconds
        )
        self._write_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Row conversion
    # -------------------------------------------------------------------------

    @staticmethod
    def _safe_get(row: list, index: int, default: str = "") -> str:
        try:
            return row[index] if row[index] else default
        except IndexError:
            return default

    def _entity_row(
        self,
        ref: EntityRef,
        version: int,
        payload: Optional[dict[str, Any]],
        mutation_id: str,
    ) -> list:
        return [
            ref.workspace_id,
            ref.entity_type.value,
            ref.entity_id,
            str(version),
            str(payload is None),
            json.dumps(payload, sort_keys=True) if payload is not None else "",
            utc_now().isoformat(),
            mutation_id,
        ]

    def _row_to_delta(self, row: list, sequence: int) -> EntityDelta:
        payload_json = self._safe_get(row, 5)
        return EntityDelta(
            sequence=sequence,
            ref=EntityRef(
                workspace_id=self._safe_get(row, 0),
                entity_type=EntityType(self._safe_get(row, 1)),
                entity_id=self._safe_get(row, 2),
            ),
            op=MutationOp(self._safe_get(row, 3)),
            version=int(self._safe_get(row, 4, "0")),
            payload=json.loads(payload_json) if payload_json else None,
        )

    @staticmethod
    def _matches(row: list, ref: EntityRef) -> bool:
        return (
            len(row) > 2
            and row[0] == ref.workspace_id
            and row[1] == ref.entity_type.value
            and row[2] == ref.entity_id
        )

    # -------------------------------------------------------------------------
    # Blocking calls
    # -------------------------------------------------------------------------

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except gspread.exceptions.APIError as e:
            if _is_transient(e):
                raise NetworkUnavailable(f"Google Sheets unavailable: {e}") from e
            raise
        except (OSError, TransportError) as e:
            raise NetworkUnavailable(f"Failed to reach Google Sheets: {e}") from e

    def _find_entity(self, ref: EntityRef) -> tuple[Optional[int], Optional[list]]:
        sheet = self._client.get_entities_sheet()
        for idx, row in enumerate(sheet.get_all_values()[1:], start=2):  # Row 1 is header
            if self._matches(row, ref):
                return idx, row
        return None, None

    def _find_change(self, mutation_id: str) -> Optional[list]:
        sheet = self._client.get_changes_sheet()
        for row in sheet.get_all_values()[1:]:
            if len(row) > 6 and row[6] == mutation_id:
                return row
        return None

    def _apply(self, mutation: PendingMutation) -> SyncOutcome:
        previous = self._find_change(mutation.mutation_id)
        if previous is not None:
            return Accepted(version=int(self._safe_get(previous, 4, "0")))

        ref = mutation.ref
        row_index, row = self._find_entity(ref)
        current_version = int(self._safe_get(row, 3, "0")) if row else 0
        exists = row is not None and self._safe_get(row, 4) != "True"
        current_value = json.loads(self._safe_get(row, 5)) if exists and self._safe_get(row, 5) else None

        if is_conflict(mutation.base_version, current_version, exists):
            return Conflict(remote_value=current_value, remote_version=current_version)
        if mutation.op == MutationOp.DELETE and not exists:
            return Accepted(version=current_version)

        version = current_version + 1
        payload = None
        if mutation.op == MutationOp.UPSERT:
            payload = dict(mutation.payload or {}, version=version)

        self._write(ref, version, payload, mutation.op, mutation.mutation_id, row_index)
        if ref.entity_type == EntityType.WORKSPACE and mutation.op == MutationOp.DELETE:
            self._cascade_workspace_delete(ref.workspace_id, mutation.mutation_id)
        return Accepted(version=version)

    def _write(
        self,
        ref: EntityRef,
        version: int,
        payload: Optional[dict[str, Any]],
        op: MutationOp,
        mutation_id: str,
        row_index: Optional[int],
    ) -> None:
        entities = self._client.get_entities_sheet()
        new_row = self._entity_row(ref, version, payload, mutation_id)
        if row_index is None:
            entities.append_row(new_row, value_input_option="RAW")
        else:
            entities.update(
                range_name=f"A{row_index}:H{row_index}",
                values=[new_row],
                value_input_option="RAW",
            )

        # The row this lands on is its sequence; writers never pick one
        self._client.get_changes_sheet().append_row(
            [
                ref.workspace_id,
                ref.entity_type.value,
                ref.entity_id,
                op.value,
                str(version),
                json.dumps(payload, sort_keys=True) if payload is not None else "",
                mutation_id,
                utc_now().isoformat(),
            ],
            value_input_option="RAW",
        )

    def _cascade_workspace_delete(self, workspace_id: str, mutation_id: str) -> None:
        sheet = self._client.get_entities_sheet()
        for idx, row in enumerate(sheet.get_all_values()[1:], start=2):
            if len(row) < 3 or row[0] != workspace_id or self._safe_get(row, 4) == "True":
                continue
            ref = EntityRef(
                workspace_id=row[0],
                entity_type=EntityType(row[1]),
                entity_id=row[2],
            )
            version = int(self._safe_get(row, 3, "0")) + 1
            # Derived id: only the workspace row answers idempotency lookups
            self._write(ref, version, None, MutationOp.DELETE, f"{mutation_id}:cascade", idx)

    def _fetch(self, ref: EntityRef) -> dict[str, Any]:
        _, row = self._find_entity(ref)
        if row is None or self._safe_get(row, 4) == "True" or not self._safe_get(row, 5):
            raise NotFoundError(ref)
        return json.loads(self._safe_get(row, 5))

    def _changes_since(self, workspace_id: str, since: int) -> list[EntityDelta]:
        sheet = self._client.get_changes_sheet()
        deltas = []
        # Row 1 is the header, so data row n is sequence n
        for sequence, row in enumerate(sheet.get_all_values()[1:], start=1):
            if sequence <= since or self._safe_get(row, 0) != workspace_id:
                continue
            try:
                deltas.append(self._row_to_delta(row, sequence))
            except (ValueError, json.JSONDecodeError):
                logger.warning("malformed_change_row", sequence=sequence, row=row[:3])
                continue  # Skip malformed rows
        return deltas

    # -------------------------------------------------------------------------
    # RemoteBackend
    # -------------------------------------------------------------------------

    async def push(self, mutation: PendingMutation) -> SyncOutcome:
        """Apply a mutation: update Entities, then append to Changes."""
        async with self._write_lock:
            try:
                return await self._call(self._apply, mutation)
            except gspread.exceptions.APIError as e:
                return Rejected(reason=f"Google Sheets refused the write: {e}")

    async def fetch(self, ref: EntityRef) -> dict[str, Any]:
        return await self._call(self._fetch, ref)

    async def subscribe_changes(self, workspace_id: str, since: int = 0) -> AsyncIterator[EntityDelta]:
        cursor = since
        while True:
            for delta in await self._call(self._changes_since, workspace_id, cursor):
                cursor = delta.sequence
                yield delta
            await asyncio.sleep(self._poll_interval)
