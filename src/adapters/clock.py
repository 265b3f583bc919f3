from datetime import UTC, date, datetime


class SystemClock:
    """TimePort backed by the system clock."""

    def now_utc(self) -> datetime:
        return datetime.now(UTC)

    def today_utc(self) -> date:
        return self.now_utc().date()
