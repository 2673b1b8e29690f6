"""
Sequence Allocator Module

Issues human-readable sequential codes (``L-202410-0001``, ``P-20241019-0001``)
from a dedicated counter row per (prefix, time bucket). The counter is bumped
with the storage backend's atomic increment, never derived from the last
stored code, so concurrent issuers cannot collide.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from .errors import AllocationFailed, LedgerError
from .storage import StorageInterface


logger = logging.getLogger("loan_ledger.sequences")


def loan_bucket(moment: Optional[datetime] = None) -> str:
    """Monthly bucket key ``YYYYMM``"""
    moment = moment or datetime.now(timezone.utc)
    return moment.strftime("%Y%m")


def payment_bucket(moment: Optional[datetime] = None) -> str:
    """Daily bucket key ``YYYYMMDD``"""
    moment = moment or datetime.now(timezone.utc)
    return moment.strftime("%Y%m%d")


class SequenceAllocator:
    """Allocates strictly increasing numbers per (prefix, bucket)"""

    def __init__(self, storage: StorageInterface, width: int = 4):
        self.storage = storage
        self.width = width

    def allocate(self, prefix: str, bucket_key: str) -> int:
        """
        Reserve the next number for ``(prefix, bucket_key)``

        Raises:
            AllocationFailed: if the counter could not be incremented
        """
        try:
            value = self.storage.increment_counter(prefix, bucket_key)
        except LedgerError as e:
            raise AllocationFailed(
                f"Could not allocate sequence for {prefix}-{bucket_key}: {e.message}",
                prefix=prefix, bucket=bucket_key
            ) from e
        except Exception as e:
            logger.error(f"Sequence counter {prefix}-{bucket_key} failed: {e}")
            raise AllocationFailed(
                f"Could not allocate sequence for {prefix}-{bucket_key}",
                prefix=prefix, bucket=bucket_key
            ) from e

        if not isinstance(value, int) or value < 1:
            raise AllocationFailed(
                f"Counter {prefix}-{bucket_key} returned invalid value {value!r}",
                prefix=prefix, bucket=bucket_key
            )
        return value

    def format_code(self, prefix: str, bucket_key: str, sequence: int) -> str:
        """``<PREFIX>-<bucket>-<sequence padded>``; wider numbers are kept whole"""
        return f"{prefix}-{bucket_key}-{sequence:0{self.width}d}"

    def next_code(self, prefix: str, bucket_key: str) -> str:
        """Allocate and format in one step"""
        return self.format_code(prefix, bucket_key, self.allocate(prefix, bucket_key))
