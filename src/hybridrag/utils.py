from __future__ import annotations

from datetime import date, datetime, time, timezone
from pathlib import Path

from .errors import EncodingError

def read_utf8(path: Path) -> str:
    """Strict UTF-8 read; a leading BOM is dropped."""
    b = path.read_bytes()
    try:
        return b.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise EncodingError(f"Invalid UTF-8 at byte {e.start}: {path}") from e

def truncate_text(text: str, max_chars: int = 200) -> str:
    text = " ".join(text.split())
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + "..."

def format_bytes(n: int) -> str:
    size = float(n)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{int(size)} {unit}" if unit == "B" else f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} GB"

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def mtime_of(path: Path) -> datetime:
    return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)

def to_iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt is not None else None

def from_iso(s: str | None) -> datetime | None:
    return datetime.fromisoformat(s) if s else None

def _is_bare_date(s: str) -> bool:
    try:
        date.fromisoformat(s)
    except ValueError:
        return False
    return True

def parse_date(s: str, end_of_day: bool = False) -> datetime:
    """Parse an ISO date or datetime given on the command line (UTC if naive).

    With end_of_day, a bare date such as 2024-01-31 means the last instant of
    that day, so an inclusive upper bound covers the whole day.
    """
    dt = datetime.fromisoformat(s)
    if end_of_day and _is_bare_date(s):
        dt = datetime.combine(dt.date(), time.max)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
