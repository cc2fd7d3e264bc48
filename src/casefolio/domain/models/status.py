from __future__ import annotations

WAITING = "waiting"
PROCESSING = "processing"
DONE = "done"
ERROR = "error"

TERMINAL_STATUSES = frozenset({DONE, ERROR})
