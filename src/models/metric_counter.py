import uuid
from datetime import date
from typing import Optional

from src.extensions import db


class MetricCounter(db.Model):
    """Daily counter for one metric name and tag combination."""
    __tablename__ = 'metric_counters'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = db.Column(db.String(100), nullable=False, index=True)
    tags = db.Column(db.String(512), nullable=False, default='')  # "key=value,key=value", sorted by key
    usage_date = db.Column(db.Date, nullable=False, index=True)
    count = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        db.UniqueConstraint('name', 'tags', 'usage_date', name='uq_metric_counter_name_tags_date'),
    )

    @classmethod
    def increment(cls, name: str, tags: str = '', amount: int = 1, when: Optional[date] = None):
        usage_day = when or date.today()
        row = (
            db.session.query(cls)
            .filter(cls.name == name, cls.tags == tags, cls.usage_date == usage_day)
            .with_for_update(of=cls, nowait=False)
            .first()
        )
        if row is None:
            row = cls(
                id=str(uuid.uuid4()),
                name=name,
                tags=tags,
                usage_date=usage_day,
                count=0,
            )
            db.session.add(row)
        row.count = (row.count or 0) + amount
        db.session.commit()
        return row

    @classmethod
    def total(cls, name: str, tags: Optional[str] = None) -> int:
        query = db.session.query(db.func.coalesce(db.func.sum(cls.count), 0)).filter(cls.name == name)
        if tags is not None:
            query = query.filter(cls.tags == tags)
        return int(query.scalar() or 0)

    def to_dict(self):
        return {
            'name': self.name,
            'tags': self.tags,
            'usage_date': self.usage_date.isoformat() if self.usage_date else None,
            'count': self.count
        }
