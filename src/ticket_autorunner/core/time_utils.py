from datetime import datetime, timezone


def now_iso_utc_z() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


now_iso = now_iso_utc_z


def parse_iso(value: str) -> datetime:
    """Parse an ISO timestamp, accepting a trailing ``Z`` for UTC."""
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def human_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


__all__ = ["human_timestamp", "now_iso_utc_z", "now_iso", "parse_iso"]
