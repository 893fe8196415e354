from __future__ import annotations

from datetime import date
from typing import Protocol

from sqlalchemy.orm import Session

from marketplace.models.ad import Ad


class AdsSource(Protocol):
    def active_ads_between(self, start: date, end: date) -> list[Ad]:
        ...

    def ads_for_shop(self, shop_id: int, start: date, end: date) -> list[Ad]:
        ...


class SqlAdsSource:
    """Read-only view over the ads table; dates are inclusive calendar days."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def _overlapping(self, start: date, end: date):
        return self.db.query(Ad).filter(
            Ad.is_active == True,  # noqa: E712
            Ad.start_date <= end,
            Ad.end_date >= start,
        )

    def active_ads_between(self, start: date, end: date) -> list[Ad]:
        return self._overlapping(start, end).order_by(Ad.shop_id.asc(), Ad.id.asc()).all()

    def ads_for_shop(self, shop_id: int, start: date, end: date) -> list[Ad]:
        return self._overlapping(start, end).filter(Ad.shop_id == shop_id).order_by(Ad.id.asc()).all()
