"""
SheetEditSession: optimistic editing of one BQ item's dimension sheet.

Two-phase protocol, independent of any UI toolkit:

  1. apply locally   add_row / stage_edit / delete_row change the local view
                     immediately and produce the request to send
  2. confirm/revert  confirm_* replaces local state with the server row;
                     fail_* rolls back to the last server-confirmed snapshot

Edit policy: ``is_deduction`` is sent immediately; typed fields are batched per
row and sent once the row has been quiet for EDIT_DEBOUNCE_MS. Every sent
patch gets a monotonic sequence number; a server response never overwrites a
field that has a newer local edit (staged or in flight) or a newer confirmed
write, so out-of-order responses cannot resurrect stale values.
"""
import copy
import itertools
import logging
import time
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from tender_app.config import EDIT_DEBOUNCE_MS, IMMEDIATE_COMMIT_FIELDS
from tender_app.services.dimension_engine import DimensionEngine, DimensionRow
from tender_app.services.errors import NotFoundError

logger = logging.getLogger("tender-dimensions")

POLICY_IMMEDIATE = "immediate"
POLICY_DEBOUNCED = "debounced"

TEMP_PREFIX = "temp-"


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


def commit_policy(field_name: str) -> str:
    return POLICY_IMMEDIATE if field_name in IMMEDIATE_COMMIT_FIELDS else POLICY_DEBOUNCED


@dataclass
class PendingEdit:
    """A PATCH ready to be sent for one row."""
    seq: int
    row_id: str
    fields: Dict[str, Any]


@dataclass
class _Batch:
    fields: Dict[str, Any] = field(default_factory=dict)
    deadline_ms: float = 0.0


class SheetEditSession:
    def __init__(
        self,
        bq_item_id: Optional[str],
        server_rows: List[DimensionRow] = (),
        clock: Callable[[], float] = _monotonic_ms,
        debounce_ms: int = EDIT_DEBOUNCE_MS,
    ):
        self.bq_item_id = bq_item_id
        self._clock = clock
        self._debounce_ms = debounce_ms
        self._seq = itertools.count(1)
        self._temp_ids = itertools.count(1)
        self._server: Dict[str, DimensionRow] = {}
        self.rows: Dict[str, DimensionRow] = {}
        self._batches: Dict[str, _Batch] = {}
        self._in_flight: Dict[int, PendingEdit] = {}
        self._sent_seq: Dict[Tuple[str, str], int] = {}
        self._confirmed_seq: Dict[Tuple[str, str], int] = {}
        self._pending_deletes: Dict[str, DimensionRow] = {}
        # Temp rows deleted while their create request was still in flight
        self._abandoned_temps: Set[str] = set()
        self.replace_all(server_rows)

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def replace_all(self, server_rows: List[DimensionRow]) -> None:
        """Refetch-and-replace: drop every unconfirmed local change."""
        self._server = {r.id: copy.copy(r) for r in server_rows}
        self.rows = {r.id: copy.copy(r) for r in DimensionEngine.ordered(server_rows)}
        self._batches.clear()
        self._in_flight.clear()
        self._pending_deletes.clear()
        self._abandoned_temps.clear()

    def ordered_rows(self) -> List[DimensionRow]:
        return DimensionEngine.ordered(self.rows.values())

    def total(self) -> Decimal:
        return DimensionEngine.aggregate_quantity(self.rows.values())

    def confirmed_total(self) -> Decimal:
        return DimensionEngine.aggregate_quantity(self._server.values())

    @property
    def has_unconfirmed(self) -> bool:
        return bool(
            self._batches or self._in_flight or self._pending_deletes or self._abandoned_temps
            or any(rid.startswith(TEMP_PREFIX) for rid in self.rows)
        )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def add_row(self, **overrides: Any) -> Tuple[str, Dict[str, Any]]:
        """Phase 1 of create: show a temp row, return (temp_id, POST payload)."""
        temp_id = f"{TEMP_PREFIX}{next(self._temp_ids)}"
        row = DimensionEngine.new_row(self.bq_item_id, len(self.rows), **overrides)
        row.id = temp_id
        self.rows[temp_id] = row
        payload = row.to_dict()
        payload.pop("id")
        return temp_id, payload

    def confirm_create(self, temp_id: str, server_row: DimensionRow) -> Optional[DimensionRow]:
        """
        Swap the temp row for the server row. Returns None when the temp row was
        deleted while the create was in flight: the server row is then queued
        as a pending delete and the caller sends DELETE for ``server_row.id``.
        """
        if temp_id in self._abandoned_temps:
            self._abandoned_temps.discard(temp_id)
            self._server[server_row.id] = copy.copy(server_row)
            self._pending_deletes[server_row.id] = copy.copy(server_row)
            logger.info("Row %s was deleted before its create confirmed; deleting %s", temp_id, server_row.id)
            return None
        if temp_id not in self.rows:
            raise NotFoundError("Temporary row no longer exists", row_id=temp_id)
        del self.rows[temp_id]
        self._server[server_row.id] = copy.copy(server_row)
        self.rows[server_row.id] = copy.copy(server_row)
        batch = self._batches.pop(temp_id, None)
        if batch is not None:
            # Edits typed while the create was in flight still apply locally
            self.rows[server_row.id] = replace(self.rows[server_row.id], **batch.fields)
            self._batches[server_row.id] = batch
        return self.rows[server_row.id]

    def fail_create(self, temp_id: str) -> None:
        logger.warning("Row creation failed; removing %s from sheet", temp_id)
        self.rows.pop(temp_id, None)
        self._batches.pop(temp_id, None)
        self._abandoned_temps.discard(temp_id)

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def stage_edit(self, row_id: str, field_name: str, value: Any) -> Optional[PendingEdit]:
        """
        Apply an edit locally. Immediate fields return a PendingEdit to send
        now; debounced fields are held until ``flush`` finds the row quiet.
        """
        row = self.rows.get(row_id)
        if row is None:
            raise NotFoundError("Dimension row not found", row_id=row_id)
        updated, _ = DimensionEngine.apply_patch(row, {field_name: value})
        self.rows[row_id] = updated
        normalized = getattr(updated, field_name)

        if commit_policy(field_name) == POLICY_IMMEDIATE and not row_id.startswith(TEMP_PREFIX):
            return self._send(row_id, {field_name: normalized})

        batch = self._batches.setdefault(row_id, _Batch())
        batch.fields[field_name] = normalized
        batch.deadline_ms = self._clock() + self._debounce_ms
        return None

    def flush(self, force: bool = False) -> List[PendingEdit]:
        """Debounced batches whose quiet period elapsed (or all, when forced)."""
        now = self._clock()
        ready = [rid for rid, b in self._batches.items() if force or b.deadline_ms <= now]
        sent = []
        for row_id in ready:
            batch = self._batches.pop(row_id)
            if row_id.startswith(TEMP_PREFIX):
                # Not persisted yet; keep waiting for confirm_create
                self._batches[row_id] = batch
                continue
            sent.append(self._send(row_id, batch.fields))
        return sent

    def _send(self, row_id: str, fields_: Dict[str, Any]) -> PendingEdit:
        edit = PendingEdit(seq=next(self._seq), row_id=row_id, fields=dict(fields_))
        self._in_flight[edit.seq] = edit
        for name in fields_:
            self._sent_seq[(row_id, name)] = edit.seq
        return edit

    def _locally_newer(self, row_id: str, name: str, seq: int) -> bool:
        batch = self._batches.get(row_id)
        if batch and name in batch.fields:
            return True
        if self._sent_seq.get((row_id, name), 0) > seq:
            return True
        return self._confirmed_seq.get((row_id, name), 0) > seq

    def confirm_edit(self, seq: int, server_row: DimensionRow) -> DimensionRow:
        """
        Phase 2: reconcile with the server's row. Fields with a newer local
        edit or a newer confirmed write keep their current value.
        """
        edit = self._in_flight.pop(seq, None)
        row_id = server_row.id
        local = self.rows.get(row_id)
        if local is None:
            logger.info("Confirmation for row %s arrived after it was removed", row_id)
            return server_row

        kept = {}
        for name in server_row.to_dict():
            if name in ("id", "bq_item_id"):
                continue
            if self._locally_newer(row_id, name, seq):
                kept[name] = getattr(local, name)
        merged = replace(server_row, **kept)
        self.rows[row_id] = merged

        confirmed = self._server.get(row_id, server_row)
        stale = {}
        for name in server_row.to_dict():
            if name in ("id", "bq_item_id"):
                continue
            if self._confirmed_seq.get((row_id, name), 0) > seq:
                stale[name] = getattr(confirmed, name)
        self._server[row_id] = replace(server_row, **stale)
        if edit:
            for name in edit.fields:
                key = (row_id, name)
                self._confirmed_seq[key] = max(self._confirmed_seq.get(key, 0), seq)
        if kept:
            logger.debug("Row %s: kept newer local values for %s", row_id, sorted(kept))
        return merged

    def fail_edit(self, seq: int, refreshed_rows: Optional[List[DimensionRow]] = None) -> None:
        """Roll back to server state; ``refreshed_rows`` is the refetched sheet."""
        edit = self._in_flight.pop(seq, None)
        logger.warning(
            "Dimension update %s failed for row %s; reverting to server state",
            seq, edit.row_id if edit else "?",
        )
        rows = refreshed_rows if refreshed_rows is not None else list(self._server.values())
        self.replace_all(rows)

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def delete_row(self, row_id: str) -> bool:
        """Phase 1 of delete. Returns False when the row is already gone."""
        row = self.rows.pop(row_id, None)
        self._batches.pop(row_id, None)
        if row is None:
            return False
        if row_id.startswith(TEMP_PREFIX):
            self._abandoned_temps.add(row_id)
        else:
            self._pending_deletes[row_id] = row
        return True

    def confirm_delete(self, row_id: str) -> None:
        self._pending_deletes.pop(row_id, None)
        self._server.pop(row_id, None)

    def fail_delete(self, row_id: str) -> None:
        row = self._pending_deletes.pop(row_id, None)
        if row is not None:
            self.rows[row_id] = row
