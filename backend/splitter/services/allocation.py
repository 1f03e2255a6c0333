"""
Allocation engine.

Pure functions that derive subtotals, totals, per-item final prices and
per-person shares from raw receipt data. Receipts are never mutated; every
operation returns a new receipt built with ``model_copy``.

Money is computed with ``Decimal`` and rounded half-up to cents at each
derived value, then stored back on the models as floats.
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional
from uuid import uuid4

from ..models import (
    BillSummary,
    MenuItem,
    Person,
    PersonalBill,
    PersonalBillItem,
    Receipt,
    RecognizedReceipt,
    utcnow,
)


CENT = Decimal("0.01")

COLOR_PALETTE = [
    "#007AFF",
    "#32D74B",
    "#FF9F0A",
    "#BF5AF2",
    "#FF453A",
    "#64D2FF",
    "#FF2D92",
    "#30D158",
    "#5AC8FA",
    "#FFCC00",
    "#FF6B35",
    "#A855F7",
    "#06B6D4",
    "#10B981",
    "#F59E0B",
    "#8B5CF6",
]


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


def to_decimal(value) -> Decimal:
    """Convert a float/int/None amount to Decimal, treating None as zero."""
    if value is None:
        return Decimal("0")
    return Decimal(str(value))


def round2(value) -> float:
    """Round an amount half-up to two decimal places."""
    return float(to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP))


def assign_color(people_count: int) -> str:
    """Pick the next palette color based on how many people already exist."""
    return COLOR_PALETTE[people_count % len(COLOR_PALETTE)]


def create_person(name: str, people_count: int, person_id: Optional[str] = None) -> Person:
    return Person(id=person_id or new_id("person"), name=name, color=assign_color(people_count))


def create_receipt(
    name: str,
    receipt_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Receipt:
    """Create an empty receipt with all aggregates at zero."""
    now = now or utcnow()
    return Receipt(id=receipt_id or new_id("receipt"), name=name, created_at=now, updated_at=now)


def redistribute(receipt: Receipt, now: Optional[datetime] = None) -> Receipt:
    """
    Spread tax and tip across items in proportion to their share of the subtotal.

    Items without a price get a final price of 0 and are not part of the base.
    With a zero subtotal there is nothing to ratio against, so each item keeps
    its original price. No penny reconciliation is done: the sum of final
    prices may drift from the total by up to one cent per item.
    """
    now = now or utcnow()
    subtotal = to_decimal(receipt.subtotal)
    tax = to_decimal(receipt.tax)
    tip = to_decimal(receipt.tip)

    items = []
    for item in receipt.items:
        if item.original_price is None:
            final_price = 0.0
        elif subtotal == 0:
            final_price = round2(item.original_price)
        else:
            original = to_decimal(item.original_price)
            ratio = original / subtotal
            final_price = round2(original + tax * ratio + tip * ratio)

        items.append(item.model_copy(update={"final_price": final_price, "updated_at": now}))

    return receipt.model_copy(update={"items": items, "updated_at": now})


def _rebuild(receipt: Receipt, items: list[MenuItem], now: datetime) -> Receipt:
    """Recompute subtotal and total for a new item list, then redistribute."""
    subtotal = sum((to_decimal(item.original_price) for item in items), Decimal("0"))
    total = subtotal + to_decimal(receipt.tax) + to_decimal(receipt.tip)

    updated = receipt.model_copy(
        update={
            "items": items,
            "subtotal": round2(subtotal),
            "total": round2(total),
            "updated_at": now,
        }
    )
    return redistribute(updated, now)


def add_item(
    receipt: Receipt,
    name: str,
    price: Optional[float],
    item_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Receipt:
    """Append an item; a None price marks it as pending and adds nothing to the subtotal."""
    now = now or utcnow()
    item = MenuItem(
        id=item_id or new_id("item"),
        name=name,
        original_price=round2(price) if price is not None else None,
        created_at=now,
        updated_at=now,
    )
    return _rebuild(receipt, [*receipt.items, item], now)


def remove_item(receipt: Receipt, item_id: str, now: Optional[datetime] = None) -> Receipt:
    """Remove an item. Unknown ids return the receipt unchanged."""
    if not any(item.id == item_id for item in receipt.items):
        return receipt

    now = now or utcnow()
    items = [item for item in receipt.items if item.id != item_id]
    return _rebuild(receipt, items, now)


def update_item_price(
    receipt: Receipt,
    item_id: str,
    price: Optional[float],
    now: Optional[datetime] = None,
) -> Receipt:
    """Set (or clear) the original price of an existing item."""
    if not any(item.id == item_id for item in receipt.items):
        return receipt

    now = now or utcnow()
    items = [
        item.model_copy(
            update={
                "original_price": round2(price) if price is not None else None,
                "updated_at": now,
            }
        )
        if item.id == item_id
        else item
        for item in receipt.items
    ]
    return _rebuild(receipt, items, now)


def update_tax_and_tip(
    receipt: Receipt,
    tax: float,
    tip: float,
    now: Optional[datetime] = None,
) -> Receipt:
    now = now or utcnow()
    total = to_decimal(receipt.subtotal) + to_decimal(tax) + to_decimal(tip)
    updated = receipt.model_copy(
        update={
            "tax": round2(tax),
            "tip": round2(tip),
            "total": round2(total),
            "updated_at": now,
        }
    )
    return redistribute(updated, now)


def update_item_assignment(
    receipt: Receipt,
    item_id: str,
    person_ids: Iterable[str],
    now: Optional[datetime] = None,
) -> Receipt:
    """
    Replace an item's assignees with the given ids.

    Duplicates are collapsed keeping first-seen order. Whether the ids belong
    to real people is not checked here.
    """
    if not any(item.id == item_id for item in receipt.items):
        return receipt

    now = now or utcnow()
    assigned = list(dict.fromkeys(person_ids))
    items = [
        item.model_copy(update={"assigned_to": assigned, "updated_at": now})
        if item.id == item_id
        else item
        for item in receipt.items
    ]
    return receipt.model_copy(update={"items": items, "updated_at": now})


def rename_receipt(receipt: Receipt, name: str, now: Optional[datetime] = None) -> Receipt:
    now = now or utcnow()
    return receipt.model_copy(update={"name": name, "updated_at": now})


def remove_person(
    receipts: Iterable[Receipt],
    person_id: str,
    now: Optional[datetime] = None,
) -> list[Receipt]:
    """Strip a person id from every item assignment across the given receipts."""
    now = now or utcnow()
    result = []
    for receipt in receipts:
        if not any(person_id in item.assigned_to for item in receipt.items):
            result.append(receipt)
            continue

        items = [
            item.model_copy(
                update={
                    "assigned_to": [pid for pid in item.assigned_to if pid != person_id],
                    "updated_at": now,
                }
            )
            if person_id in item.assigned_to
            else item
            for item in receipt.items
        ]
        result.append(receipt.model_copy(update={"items": items, "updated_at": now}))

    return result


def apply_recognized_receipt(
    receipt: Receipt,
    recognized: RecognizedReceipt,
    now: Optional[datetime] = None,
) -> Receipt:
    """
    Fold a recognizer result into a receipt.

    The receipt's items are replaced by the recognized ones, added through the
    same operations as manual entry, and the receipt takes the business name
    when one was found.
    """
    now = now or utcnow()
    updated = receipt.model_copy(update={"name": recognized.business_name or receipt.name})
    updated = _rebuild(updated, [], now)

    for item in recognized.items:
        updated = add_item(updated, item.name, item.price, now=now)

    return update_tax_and_tip(updated, recognized.tax or 0, recognized.tip or 0, now)


def unassigned_items(receipts: Iterable[Receipt]) -> list[MenuItem]:
    """Items nobody has been assigned to; their cost is not owed by anyone yet."""
    return [item for receipt in receipts for item in receipt.items if not item.assigned_to]


def generate_personal_bills(receipt: Receipt, people: Iterable[Person]) -> list[PersonalBill]:
    """
    Compute what each person owes for one receipt.

    An item is split evenly between its assignees. Line shares are rounded
    individually; per-person totals are accumulated unrounded and rounded once.
    """
    bills = []

    for person in people:
        lines = []
        total_original = Decimal("0")
        total_final = Decimal("0")

        for item in receipt.items:
            if person.id not in item.assigned_to:
                continue

            share = len(item.assigned_to)
            original_share = to_decimal(item.original_price) / share
            final_share = to_decimal(item.final_price) / share

            lines.append(
                PersonalBillItem(
                    item_id=item.id,
                    item_name=item.name,
                    receipt_id=receipt.id,
                    receipt_name=receipt.name,
                    share=share,
                    original_share=round2(original_share),
                    final_share=round2(final_share),
                )
            )
            total_original += original_share
            total_final += final_share

        bills.append(
            PersonalBill(
                person_id=person.id,
                person_name=person.name,
                items=lines,
                total_original=round2(total_original),
                total_final=round2(total_final),
            )
        )

    return bills


def generate_bill_summary(
    receipts: list[Receipt],
    people: list[Person],
    now: Optional[datetime] = None,
) -> BillSummary:
    """Merge per-receipt bills by person and total every receipt-level aggregate."""
    lines: dict[str, list[PersonalBillItem]] = {p.id: [] for p in people}
    originals: dict[str, Decimal] = {p.id: Decimal("0") for p in people}
    finals: dict[str, Decimal] = {p.id: Decimal("0") for p in people}

    for receipt in receipts:
        for bill in generate_personal_bills(receipt, people):
            lines[bill.person_id].extend(bill.items)
            originals[bill.person_id] += to_decimal(bill.total_original)
            finals[bill.person_id] += to_decimal(bill.total_final)

    personal_bills = [
        PersonalBill(
            person_id=person.id,
            person_name=person.name,
            items=lines[person.id],
            total_original=round2(originals[person.id]),
            total_final=round2(finals[person.id]),
        )
        for person in people
    ]

    def total_of(field: str) -> float:
        return round2(sum((to_decimal(getattr(r, field)) for r in receipts), Decimal("0")))

    return BillSummary(
        receipts=receipts,
        people=people,
        personal_bills=personal_bills,
        total_subtotal=total_of("subtotal"),
        total_tax=total_of("tax"),
        total_tip=total_of("tip"),
        grand_total=total_of("total"),
        created_at=now or utcnow(),
    )
