from datetime import datetime, timezone
from portraify.extensions import db


class StorageEntry(db.Model):
    """One key of the persisted key/value space used by the sql backend."""

    __tablename__ = "storage_entries"

    key = db.Column(db.String(255), primary_key=True)
    value = db.Column(db.Text, nullable=False)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @staticmethod
    def get(key, default=None):
        row = db.session.get(StorageEntry, key)
        return row.value if row else default

    @staticmethod
    def set(key, value):
        row = db.session.get(StorageEntry, key)
        if row:
            row.value = value
        else:
            row = StorageEntry(key=key, value=value)
            db.session.add(row)
        db.session.commit()
        return row

    @staticmethod
    def remove(key):
        row = db.session.get(StorageEntry, key)
        if row:
            db.session.delete(row)
            db.session.commit()

    @staticmethod
    def total_size(exclude_key=None):
        """Sum of stored value lengths, optionally ignoring one key."""
        query = db.session.query(db.func.coalesce(db.func.sum(db.func.length(StorageEntry.value)), 0))
        if exclude_key is not None:
            query = query.filter(StorageEntry.key != exclude_key)
        return int(query.scalar())

    @staticmethod
    def clear():
        StorageEntry.query.delete()
        db.session.commit()

    def __repr__(self):
        return f"<StorageEntry {self.key} ({len(self.value or '')} chars)>"
