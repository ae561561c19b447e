import json
import re
import string
from datetime import datetime, timezone


def now_iso():
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def to_iso(value):
    """Render a datetime (or an ISO string) as second-precision UTC ISO-8601.

    Naive datetimes are taken to be UTC already. ``None`` passes through.
    """
    if value is None:
        return None
    if isinstance(value, str):
        value = parse_iso(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat()


def parse_iso(raw):
    if isinstance(raw, datetime):
        return raw
    s = str(raw).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


_ascii_fold = str.maketrans(string.ascii_uppercase, string.ascii_lowercase)
_ws_re = re.compile(r"\s+")


def normalize_text(s):
    if s is None:
        return ""
    s = str(s).strip()
    s = _ws_re.sub(" ", s)
    return s


def nocase_key(s):
    # Folds ASCII letters only, the same as SQLite COLLATE NOCASE.
    return normalize_text(s).translate(_ascii_fold)


def json_dumps(obj):
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


def json_loads_object(raw):
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    data = json.loads(raw)
    return data if isinstance(data, dict) else {}


def json_loads_list(raw):
    if isinstance(raw, list):
        return raw
    if not raw:
        return []
    data = json.loads(raw)
    return data if isinstance(data, list) else []


def is_image_mime(mime):
    # Same test as SQL `mime LIKE 'image/%'`.
    return str(mime or "").lower().startswith("image/")
