# presence.py
"""
Online presence, inferred from ledger activity.

A contact counts as online if the ledger saw a record authored by it within
the last `presence_window_secs` (default 300). This is advisory: there is no
heartbeat, so a quiet but connected client reads as offline.
"""

from __future__ import annotations

import time
from typing import Optional

from config import settings
from models import Contact

PRESENCE_WINDOW = 300


def presence_window() -> int:
    return int(settings.get("presence_window_secs", PRESENCE_WINDOW))


def is_online(contact: Contact, now: Optional[float] = None, window: Optional[int] = None) -> bool:
    if not contact.lastSeen:
        return False
    now = time.time() if now is None else now
    window = presence_window() if window is None else window
    return (now - contact.lastSeen) < window
