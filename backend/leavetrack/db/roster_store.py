"""
Data access for roster periods.
"""
from typing import List

from sqlalchemy.orm import Session

from leavetrack.db.orm_models import RosterPeriod


class RosterStore:
    def __init__(self, db: Session):
        self.db = db

    def active_periods(self) -> List[RosterPeriod]:
        """Active periods, oldest start first."""
        return (
            self.db.query(RosterPeriod)
            .filter(RosterPeriod.is_active.is_(True))
            .order_by(RosterPeriod.start_period.asc(), RosterPeriod.id.asc())
            .all()
        )
