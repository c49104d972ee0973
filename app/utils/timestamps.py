from datetime import datetime, timezone
from typing import Optional


def from_unix(ts: Optional[int]) -> Optional[datetime]:
    """Convert a provider unix timestamp to a naive UTC datetime, as stored in the DB."""
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).replace(tzinfo=None)
