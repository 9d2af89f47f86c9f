import threading

_logged_keys = set()
_lock = threading.Lock()


def log_once(logger, key: str, level: str, message: str, *args) -> bool:
    """
    Log a message exactly once per process for the given key.

    Returns True when the message was emitted. Used for repeated outages
    (Redis down, Finale unconfigured) that would otherwise flood the log.
    """
    with _lock:
        if key in _logged_keys:
            return False
        _logged_keys.add(key)

    getattr(logger, level)(message, *args)
    return True


def clear_log_once(key: str) -> None:
    """Allow the key to log again, e.g. after the outage recovered."""
    with _lock:
        _logged_keys.discard(key)
