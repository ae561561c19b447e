from .utils import normalize_text

DEFAULT_ARCHIVE_CONFIG = {
    "busy_timeout_ms": 5000,
    "journal_mode": "WAL",
    "create": True,
}

_JOURNAL_MODES = {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"}


def normalize_config(config=None) -> dict:
    cfg = {**DEFAULT_ARCHIVE_CONFIG, **(config or {})}

    try:
        cfg["busy_timeout_ms"] = max(0, int(cfg["busy_timeout_ms"]))
    except (TypeError, ValueError):
        cfg["busy_timeout_ms"] = DEFAULT_ARCHIVE_CONFIG["busy_timeout_ms"]

    mode = normalize_text(cfg["journal_mode"]).upper()
    if mode not in _JOURNAL_MODES:
        raise ValueError(f"Unsupported journal mode: {cfg['journal_mode']}")
    cfg["journal_mode"] = mode

    cfg["create"] = bool(cfg["create"])
    return cfg
