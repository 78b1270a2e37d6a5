import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

# ----------------------
# Utility functions
# ----------------------

def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def new_id(prefix: str, length: int = 12) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:length]}"


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items() if k != "_id"}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def public_doc(doc: Optional[Dict[str, Any]], exclude: Iterable[str] = ()) -> Optional[Dict[str, Any]]:
    """Strip Mongo internals and render datetimes as ISO strings."""
    if doc is None:
        return None
    skip = set(exclude) | {"_id"}
    return {k: _jsonable(v) for k, v in doc.items() if k not in skip}
