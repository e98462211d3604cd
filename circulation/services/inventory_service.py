from __future__ import annotations

from typing import Dict, Iterable, Tuple

from flask import current_app

from circulation import events
from circulation.errors import (
    CirculationError,
    InsufficientCopies,
    InvalidTransition,
    LoanNotFound,
    TitleNotFound,
)
from circulation.extensions import db
from circulation.models.loan import LoanStatus
from circulation.models.title import Title
from circulation.repositories.loan_repo import LoanRepo
from circulation.repositories.title_repo import TitleRepo
from circulation.clock import now


def merge_items(items) -> Dict[int, int]:
    """Accepts ``{title_id: qty}`` or ``[(title_id, qty), ...]``."""
    pairs: Iterable[Tuple[int, int]] = items.items() if isinstance(items, dict) else items
    merged: Dict[int, int] = {}
    for title_id, quantity in pairs:
        quantity = int(quantity)
        if quantity <= 0:
            raise ValueError("quantity must be positive")
        merged[int(title_id)] = merged.get(int(title_id), 0) + quantity
    if not merged:
        raise ValueError("at least one title is required")
    return merged


class InventoryService:
    """Copy counters per title.

    Methods below never commit; the caller owns the transaction so a batch
    reservation and the loans it backs land together or not at all.
    """

    @staticmethod
    def get_title(title_id: int) -> Title:
        title = TitleRepo.get(title_id)
        if not title:
            raise TitleNotFound(title_id=title_id)
        return title

    @staticmethod
    def list_titles():
        return TitleRepo.list_all()

    @staticmethod
    def add_title(data: dict) -> Title:
        title_text = (data.get("title") or "").strip()
        author = (data.get("author") or "").strip()
        if not title_text or not author:
            raise ValueError("title and author are required")

        total = int(data.get("total_copies", 1))
        if total < 0:
            raise ValueError("total_copies must not be negative")

        title = Title(
            title=title_text,
            author=author,
            isbn=(data.get("isbn") or None),
            total_copies=total,
            available_copies=total,
        )
        TitleRepo.add(title)
        db.session.commit()
        current_app.logger.info(f"[inventory] title={title.id} added with {total} copies")
        return title

    @staticmethod
    def adjust_total(title_id: int, delta: int) -> Title:
        """Acquire (delta > 0) or retire (delta < 0) shelf copies."""
        InventoryService.get_title(title_id)
        if delta == 0:
            raise ValueError("delta must not be zero")
        if not TitleRepo.change_total(title_id, int(delta)):
            db.session.rollback()
            raise InsufficientCopies(
                "Cannot retire copies that are currently on loan",
                title_id=title_id,
            )
        db.session.commit()
        return InventoryService.get_title(title_id)

    @staticmethod
    def reserve(title_id: int, quantity: int = 1) -> None:
        InventoryService.reserve_many({title_id: quantity})

    @staticmethod
    def reserve_many(items) -> Dict[int, int]:
        """Take copies for every title or for none of them.

        On failure the whole unit of work is rolled back.
        """
        merged = merge_items(items)
        try:
            for title_id, quantity in sorted(merged.items()):
                if TitleRepo.decrement_available(title_id, quantity):
                    continue
                title = TitleRepo.get(title_id)
                if not title:
                    raise TitleNotFound(title_id=title_id)
                raise InsufficientCopies(
                    f"Only {title.available_copies} of '{title.title}' available",
                    title_id=title_id,
                    requested=quantity,
                    available=title.available_copies,
                )
        except CirculationError:
            db.session.rollback()
            raise
        return merged

    @staticmethod
    def release(title_id: int, quantity: int = 1) -> bool:
        """Put copies back on the shelf.

        Returns False when the counter had to be capped at ``total_copies``;
        that is reported as an inconsistency.
        """
        if quantity <= 0:
            raise ValueError("quantity must be positive")
        if TitleRepo.increment_available(title_id, quantity):
            return True

        title = TitleRepo.get(title_id)
        if not title:
            raise TitleNotFound(title_id=title_id)

        TitleRepo.cap_available(title_id)
        current_app.logger.error(
            f"[inventory] release overflow title={title_id} quantity={quantity} "
            f"total={title.total_copies}; available capped at total"
        )
        events.emit(
            events.inventory_inconsistency,
            title_id=title_id,
            quantity=quantity,
            total_copies=title.total_copies,
        )
        return False

    @staticmethod
    def _resolve_copy(loan_id: int):
        loan = LoanRepo.get_for_update(loan_id)
        if not loan:
            raise LoanNotFound(loan_id=loan_id)
        if loan.status not in (LoanStatus.LOST, LoanStatus.DAMAGED):
            raise InvalidTransition("Only lost or damaged copies can be restocked or written off")
        if loan.copy_resolved_at is not None:
            raise InvalidTransition(f"Copy of loan {loan_id} was already {loan.copy_resolution}")
        return loan

    @staticmethod
    def restock(loan_id: int):
        """A lost copy was found or a damaged one repaired."""
        loan = InventoryService._resolve_copy(loan_id)
        InventoryService.release(loan.title_id, 1)
        loan.copy_resolved_at = now()
        loan.copy_resolution = "restocked"
        db.session.commit()
        events.emit(events.copy_restocked, loan_id=loan.id, title_id=loan.title_id)
        return loan

    @staticmethod
    def write_off(loan_id: int):
        """Remove a lost or damaged copy from the catalog for good."""
        loan = InventoryService._resolve_copy(loan_id)
        if not TitleRepo.write_off_copy(loan.title_id):
            db.session.rollback()
            raise InvalidTransition(
                "Copy counters do not allow a write-off",
                title_id=loan.title_id,
            )
        loan.copy_resolved_at = now()
        loan.copy_resolution = "written_off"
        db.session.commit()
        events.emit(events.copy_written_off, loan_id=loan.id, title_id=loan.title_id)
        return loan
