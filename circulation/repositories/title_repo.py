from sqlalchemy import update

from circulation.models.title import Title
from circulation.extensions import db

class TitleRepo:
    @staticmethod
    def _expire(title_id: int):
        # counters were changed in SQL, drop the cached copy
        key = db.session.identity_key(Title, title_id)
        cached = db.session.identity_map.get(key)
        if cached is not None:
            db.session.expire(cached)

    @staticmethod
    def list_all():
        return Title.query.order_by(Title.id.desc()).all()

    @staticmethod
    def get(title_id: int):
        return db.session.get(Title, title_id)

    @staticmethod
    def add(title: Title):
        db.session.add(title)
        return title

    @staticmethod
    def decrement_available(title_id: int, quantity: int) -> bool:
        """Conditional decrement in one statement; False when not enough copies."""
        result = db.session.execute(
            update(Title)
            .where(Title.id == title_id, Title.available_copies >= quantity)
            .values(available_copies=Title.available_copies - quantity)
            .execution_options(synchronize_session=False)
        )
        TitleRepo._expire(title_id)
        return result.rowcount == 1

    @staticmethod
    def increment_available(title_id: int, quantity: int) -> bool:
        """Conditional increment bounded by total_copies."""
        result = db.session.execute(
            update(Title)
            .where(
                Title.id == title_id,
                Title.available_copies + quantity <= Title.total_copies,
            )
            .values(available_copies=Title.available_copies + quantity)
            .execution_options(synchronize_session=False)
        )
        TitleRepo._expire(title_id)
        return result.rowcount == 1

    @staticmethod
    def cap_available(title_id: int):
        db.session.execute(
            update(Title)
            .where(Title.id == title_id)
            .values(available_copies=Title.total_copies)
            .execution_options(synchronize_session=False)
        )
        TitleRepo._expire(title_id)

    @staticmethod
    def change_total(title_id: int, delta: int) -> bool:
        """Add ``delta`` copies to both counters, never below zero."""
        result = db.session.execute(
            update(Title)
            .where(
                Title.id == title_id,
                Title.total_copies + delta >= 0,
                Title.available_copies + delta >= 0,
            )
            .values(
                total_copies=Title.total_copies + delta,
                available_copies=Title.available_copies + delta,
            )
            .execution_options(synchronize_session=False)
        )
        TitleRepo._expire(title_id)
        return result.rowcount == 1

    @staticmethod
    def write_off_copy(title_id: int) -> bool:
        """Remove one copy that is out of circulation (not counted as available)."""
        result = db.session.execute(
            update(Title)
            .where(Title.id == title_id, Title.total_copies - 1 >= Title.available_copies)
            .values(total_copies=Title.total_copies - 1)
            .execution_options(synchronize_session=False)
        )
        TitleRepo._expire(title_id)
        return result.rowcount == 1
