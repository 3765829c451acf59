import random
import time
from typing import Optional

TRANSACTION_ID_PREFIX = "TXN"
MAX_TRANSACTION_ID_LENGTH = 34


def generate_transaction_id(prefix: str = TRANSACTION_ID_PREFIX, now_ms: Optional[int] = None) -> str:
    """
    Prefix + millisecond timestamp + 4-digit random suffix, at most 34 chars.

    Ids are time-ordered but only weakly unique: two calls within the same
    millisecond share a timestamp and collide one time in 10,000. Do not use
    them where a collision would matter (use the merchant order id instead),
    and never as a secret.
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = str(random.randint(0, 9999)).zfill(4)
    return f"{prefix}{now_ms}{suffix}"[:MAX_TRANSACTION_ID_LENGTH]
