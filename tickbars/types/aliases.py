from typing import Any

# -------- Aliases (clarify intent) --------
UnixMillis = int
MinuteKey = int  # minutes since epoch, measured in display-offset time
AuditRecord = dict[str, Any]
