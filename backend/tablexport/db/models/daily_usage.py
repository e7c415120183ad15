"""DailyUsage model: export counter keyed by (user, UTC date)."""

from sqlalchemy import Column, Date, DateTime, Integer, String, UniqueConstraint

from tablexport.db.base import Base, utcnow


class DailyUsage(Base):
    __tablename__ = "daily_limits"
    __table_args__ = (UniqueConstraint("user_id", "date", name="uq_daily_limits_user_date"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False, index=True)
    date = Column(Date, nullable=False)
    exports_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
