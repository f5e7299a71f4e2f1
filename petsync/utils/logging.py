from __future__ import annotations

import logging
import threading
import time

_SEEN: dict[str, float] = {}
_SEEN_LOCK = threading.Lock()
_MAX_KEYS = 1024


def warn_once(logger: logging.Logger, key: str, message: str, *args, window: float = 60.0) -> bool:
    """Emit ``message`` at WARNING at most once per ``window`` seconds for ``key``.

    Clamped timestamps from a misbehaving device repeat on every round, so the
    warning is rate limited per device and collection. The key table is capped;
    the stalest key is evicted first. Returns ``True`` when the warning was logged.
    """
    now = time.monotonic()
    with _SEEN_LOCK:
        last = _SEEN.get(key)
        if last is not None and now - last <= window:
            return False
        if last is None and len(_SEEN) >= _MAX_KEYS:
            stalest = min(_SEEN, key=_SEEN.__getitem__)
            del _SEEN[stalest]
        _SEEN[key] = now
    logger.warning(message, *args)
    return True


def reset_warnings() -> None:
    with _SEEN_LOCK:
        _SEEN.clear()
