import datetime
import email.utils as eut
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from trainer_service.tools.base import BaseExecutor

TIMEZONE_ALIASES = {
    "eastern": "America/New_York",
    "central": "America/Chicago",
    "mountain": "America/Denver",
    "pacific": "America/Los_Angeles",
    "est": "America/New_York",
    "cst": "America/Chicago",
    "mst": "America/Denver",
    "pst": "America/Los_Angeles",
    "uk": "Europe/London",
    "london": "Europe/London",
}


class TimeExecutor(BaseExecutor):
    """Clock lookups so the coach can reason about 'today' and 'tomorrow'."""

    directives = {"get_current_time": "current_time"}
    descriptions = {"get_current_time": "Checking the time"}

    def __init__(self, default_timezone: str = "UTC"):
        self.default_timezone = default_timezone

    async def current_time(self, timezone: str = "", format: str = "human") -> dict:
        """
        Get the current date and time for a timezone.
        Args:
            timezone: IANA timezone (e.g., Europe/Dublin, America/New_York). Defaults to the configured zone.
            format: One of "iso", "rfc2822" or "human".
        """
        tz_name = timezone or self.default_timezone
        tz_name = TIMEZONE_ALIASES.get(tz_name.lower(), tz_name)

        try:
            now = datetime.datetime.now(ZoneInfo(tz_name))
        except (ZoneInfoNotFoundError, ValueError):
            return {"error": f"Unknown timezone: {tz_name}"}

        if format == "iso":
            return {"time": now.isoformat()}
        if format == "rfc2822":
            return {"time": eut.format_datetime(now)}

        time_str = now.strftime("%I:%M %p")
        date_str = now.strftime("%A, %B %d, %Y")
        readable_tz = tz_name.replace("_", " ")
        return {"time": f"{time_str} on {date_str} ({readable_tz})"}
