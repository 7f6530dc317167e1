from threading import RLock

from hrflow.core.config import NOTIFY_WEBHOOK_URL

_lock = RLock()
_state = {
    # seeded from environment on boot; operators can override at runtime
    "NOTIFY_WEBHOOK_URL": NOTIFY_WEBHOOK_URL,
}

def set_notify_webhook(url: str | None) -> None:
    with _lock:
        _state["NOTIFY_WEBHOOK_URL"] = (url or "").strip()

def get_notify_webhook() -> str:
    with _lock:
        return _state.get("NOTIFY_WEBHOOK_URL", "")
