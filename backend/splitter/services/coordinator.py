"""
Session coordinator.

Holds the working copy of one session, applies allocation engine operations
to it and persists it with a debounced auto-save:

- every mutation after the session is opened (re)starts a quiet-period timer,
  so a burst of edits ends in a single write;
- only one save runs at a time; saves requested while one is in flight are
  superseded by a single follow-up write of the latest snapshot;
- a failed save is logged and leaves local state untouched, the next save
  writes the then-current snapshot.
"""

import asyncio
import logging
import math
from typing import Callable, Iterable, Optional, get_args

from ..config import get_settings
from ..models import BillSummary, Person, Receipt, RecognizedReceipt, SessionSnapshot, Step
from . import allocation
from .sessions import SessionRepository, StoreError, StoreResult, get_session_repository


logger = logging.getLogger(__name__)


def _require_name(name: str, what: str) -> str:
    name = (name or "").strip()
    if not name:
        raise ValueError(f"{what} name cannot be empty")
    return name


def _require_amount(value: Optional[float], what: str, allow_none: bool = False) -> Optional[float]:
    if value is None:
        if allow_none:
            return None
        raise ValueError(f"{what} is required")
    if not math.isfinite(value):
        raise ValueError(f"{what} must be a finite number")
    if value < 0:
        raise ValueError(f"{what} cannot be negative")
    return value


class SessionCoordinator:
    """Read/modify/write cycle and auto-save for a single session."""

    def __init__(
        self,
        session_id: str,
        repository: Optional[SessionRepository] = None,
        debounce_seconds: Optional[float] = None,
    ):
        self.session_id = session_id
        self._repository = repository or get_session_repository()
        if debounce_seconds is None:
            debounce_seconds = get_settings().autosave_debounce_seconds
        self._debounce_seconds = debounce_seconds

        self._snapshot = SessionSnapshot()
        self._loaded = False
        self._dirty = False
        self._saver: Optional[asyncio.Task] = None
        self._save_requested = False
        self._timer: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()

        self.last_error: Optional[StoreError] = None
        self.save_count = 0

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def is_dirty(self) -> bool:
        """True while local state is ahead of what was last saved."""
        return self._dirty

    async def open(self, create: bool = True) -> StoreResult[SessionSnapshot]:
        """
        Load the session from storage.

        When the id is unknown and ``create`` is set, an empty session is
        started and written right away. From then on every mutation is
        auto-saved.
        """
        result = await self._repository.get(self.session_id)

        if result.ok:
            self._snapshot = result.value.data
        elif result.error is StoreError.NOT_FOUND and create:
            self._snapshot = SessionSnapshot()
            saved = await self._repository.save(self.session_id, self._snapshot)
            if not saved.ok:
                return StoreResult(error=saved.error, message=saved.message)
            logger.info("Started new session %s", self.session_id)
        else:
            return StoreResult(error=result.error, message=result.message)

        self._loaded = True
        self._dirty = False
        return StoreResult(value=self._snapshot)

    # Auto-save

    def _commit(self, snapshot: SessionSnapshot) -> SessionSnapshot:
        self._snapshot = snapshot
        if self._loaded:
            self._dirty = True
            self._schedule_save()
        return snapshot

    def _schedule_save(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = self._track(self._save_later())

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _save_later(self) -> None:
        await asyncio.sleep(self._debounce_seconds)
        # Past the quiet period the save is no longer cancellable by new edits.
        if self._timer is asyncio.current_task():
            self._timer = None
        await self._persist()

    async def _persist(self) -> bool:
        """
        Request a save of the current state.

        With no save running one is started. Otherwise the request is folded
        into the running save, which writes once more with the latest snapshot
        when it is done; any number of requests made meanwhile end in that one
        extra write.
        """
        self._save_requested = True
        if self._saver is None or self._saver.done():
            self._saver = self._track(self._drain_saves())
        return await asyncio.shield(self._saver)

    async def _drain_saves(self) -> bool:
        saved = False
        while self._save_requested:
            self._save_requested = False
            saved = await self._save_once()
        return saved

    async def _save_once(self) -> bool:
        snapshot = self._snapshot
        result = await self._repository.save(self.session_id, snapshot)

        if not result.ok:
            self.last_error = result.error
            logger.warning(
                "Auto-save of session %s failed (%s): %s",
                self.session_id,
                result.error.value,
                result.message,
            )
            return False

        self.save_count += 1
        self.last_error = None
        if snapshot is self._snapshot:
            self._dirty = False
        return True

    async def flush(self) -> bool:
        """
        Cancel any pending timer and save the current state now.

        A save already running is joined rather than doubled: the returned
        flag is the outcome of the write that carries the current snapshot.
        """
        if not self._loaded:
            return False
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        return await self._persist()

    async def wait_idle(self) -> None:
        """Wait until the pending timer (if any) and in-flight saves have finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        """Drop saves that have not started yet. A save already running completes."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        self._save_requested = False

    # Mutations

    def apply(self, mutation: Callable[[SessionSnapshot], SessionSnapshot]) -> SessionSnapshot:
        """Replace the state with ``mutation(state)`` and schedule a save."""
        return self._commit(mutation(self._snapshot))

    def _receipt(self, receipt_id: str) -> Receipt:
        for receipt in self._snapshot.receipts:
            if receipt.id == receipt_id:
                return receipt
        raise KeyError(f"Unknown receipt {receipt_id}")

    def _replace_receipt(self, updated: Receipt) -> Receipt:
        receipts = [updated if r.id == updated.id else r for r in self._snapshot.receipts]
        self._commit(self._snapshot.model_copy(update={"receipts": receipts}))
        return updated

    def add_person(self, name: str) -> Person:
        name = _require_name(name, "Person")
        person = allocation.create_person(name, len(self._snapshot.people))
        self._commit(self._snapshot.model_copy(update={"people": [*self._snapshot.people, person]}))
        logger.info("Added person %s to session %s", person.id, self.session_id)
        return person

    def remove_person(self, person_id: str) -> None:
        """Remove a person and strip them from every item assignment."""
        people = [p for p in self._snapshot.people if p.id != person_id]
        receipts = allocation.remove_person(self._snapshot.receipts, person_id)
        self._commit(self._snapshot.model_copy(update={"people": people, "receipts": receipts}))

    def add_receipt(self, name: Optional[str] = None) -> Receipt:
        if name is None:
            name = f"Receipt {len(self._snapshot.receipts) + 1}"
        receipt = allocation.create_receipt(_require_name(name, "Receipt"))
        self._commit(self._snapshot.model_copy(update={"receipts": [*self._snapshot.receipts, receipt]}))
        logger.info("Added receipt %s to session %s", receipt.id, self.session_id)
        return receipt

    def remove_receipt(self, receipt_id: str) -> None:
        receipts = [r for r in self._snapshot.receipts if r.id != receipt_id]
        self._commit(self._snapshot.model_copy(update={"receipts": receipts}))

    def rename_receipt(self, receipt_id: str, name: str) -> Receipt:
        name = _require_name(name, "Receipt")
        return self._replace_receipt(allocation.rename_receipt(self._receipt(receipt_id), name))

    def add_item(self, receipt_id: str, name: str, price: Optional[float]) -> Receipt:
        name = _require_name(name, "Item")
        price = _require_amount(price, "Price", allow_none=True)
        return self._replace_receipt(allocation.add_item(self._receipt(receipt_id), name, price))

    def remove_item(self, receipt_id: str, item_id: str) -> Receipt:
        return self._replace_receipt(allocation.remove_item(self._receipt(receipt_id), item_id))

    def update_item_price(self, receipt_id: str, item_id: str, price: Optional[float]) -> Receipt:
        price = _require_amount(price, "Price", allow_none=True)
        return self._replace_receipt(
            allocation.update_item_price(self._receipt(receipt_id), item_id, price)
        )

    def update_tax_and_tip(self, receipt_id: str, tax: float, tip: float) -> Receipt:
        tax = _require_amount(tax, "Tax")
        tip = _require_amount(tip, "Tip")
        return self._replace_receipt(
            allocation.update_tax_and_tip(self._receipt(receipt_id), tax, tip)
        )

    def update_item_assignment(self, item_id: str, person_ids: Iterable[str]) -> Receipt:
        """Assign an item, wherever it lives, to exactly the given people."""
        person_ids = list(person_ids)
        known = {p.id for p in self._snapshot.people}
        unknown = [pid for pid in person_ids if pid not in known]
        if unknown:
            raise ValueError(f"Unknown people: {', '.join(unknown)}")

        for receipt in self._snapshot.receipts:
            if any(item.id == item_id for item in receipt.items):
                return self._replace_receipt(
                    allocation.update_item_assignment(receipt, item_id, person_ids)
                )
        raise KeyError(f"Unknown item {item_id}")

    def set_current_step(self, step: Step) -> None:
        if step not in get_args(Step):
            raise ValueError(f"Unknown step {step!r}")
        self._commit(self._snapshot.model_copy(update={"current_step": step}))

    def apply_recognized_receipt(self, receipt_id: str, recognized: RecognizedReceipt) -> Receipt:
        receipt = self._receipt(receipt_id)
        updated = allocation.apply_recognized_receipt(receipt, recognized)
        logger.info(
            "Applied recognized receipt to %s: %d items, total %s, confidence %.2f",
            receipt_id,
            len(updated.items),
            updated.total,
            recognized.confidence,
        )
        if recognized.subtotal is not None:
            tolerance = 0.01 * max(len(updated.items), 1)
            if abs(recognized.subtotal - updated.subtotal) > tolerance:
                logger.warning(
                    "Recognized subtotal %s for receipt %s does not match its items (%s)",
                    recognized.subtotal,
                    receipt_id,
                    updated.subtotal,
                )
        return self._replace_receipt(updated)

    def summary(self) -> BillSummary:
        return allocation.generate_bill_summary(self._snapshot.receipts, self._snapshot.people)
