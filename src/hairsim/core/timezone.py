"""UTC timezone enforcement and calendar helpers.

Importing this module sets the TZ environment variable to UTC so that
"today" means the same calendar day for every process. The daily free
allowance rolls over on UTC midnight.
"""

import os
from datetime import date, datetime, timezone

os.environ["TZ"] = "UTC"


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def utc_today() -> date:
    """Current calendar day in UTC, used as the daily quota reset marker."""
    return utcnow().date()
