"""Repositories for tutor profile and weekly availability rows."""

from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from ..models.tutor import TutorAvailability, TutorProfile
from .base_repository import BaseRepository


class TutorProfileRepository(BaseRepository[TutorProfile]):
    def __init__(self, db: Session):
        super().__init__(db, TutorProfile)

    def get_by_user_id(self, user_id: str) -> Optional[TutorProfile]:
        return self.find_one_by(user_id=user_id)

    def get_by_stripe_account_id(self, account_id: str) -> Optional[TutorProfile]:
        return self.find_one_by(stripe_account_id=account_id)

    def set_onboarding_complete(self, profile_id: str, complete: bool) -> bool:
        matched = self.conditional_update(
            profile_id,
            [TutorProfile.onboarding_complete != complete],
            {"onboarding_complete": complete},
        )
        return matched == 1


class AvailabilityRepository(BaseRepository[TutorAvailability]):
    def __init__(self, db: Session):
        super().__init__(db, TutorAvailability)

    def get_weekly_ranges(self, tutor_id: str) -> Dict[int, List[TutorAvailability]]:
        """Availability rows grouped by weekday, each group ordered by start time."""
        rows = self._execute_query(
            self._build_query()
            .filter(TutorAvailability.tutor_id == tutor_id)
            .order_by(TutorAvailability.weekday, TutorAvailability.start_time)
        )
        grouped: Dict[int, List[TutorAvailability]] = {}
        for row in rows:
            grouped.setdefault(row.weekday, []).append(row)
        return grouped
