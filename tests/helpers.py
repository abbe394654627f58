"""Constants and small helpers shared by the test modules."""

from datetime import date, datetime, time, timedelta
from typing import List

from backend.services.engine import FrontDeskEngine
from backend.services.events import ClinicScope

DOCTOR = "doc-1"
DAY = date(2024, 1, 10)


class FixedClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: int) -> None:
        self.now = self.now + timedelta(minutes=minutes)


def at(hour: int, minute: int = 0, day: date = DAY) -> datetime:
    return datetime.combine(day, time(hour, minute))


def queue_ids(front_desk: FrontDeskEngine, scope: ClinicScope, day: date = DAY) -> List[int]:
    view = front_desk.get_queue(scope, DOCTOR, day)
    return [entry.id for entry in view.entries]
