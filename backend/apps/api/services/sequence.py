# apps/api/services/sequence.py

import logging
from datetime import date
from typing import Optional

from .errors import ValidationError

_logger = logging.getLogger(__name__)

# Sequence names used for reference numbers
SIA = "SIA"
SEC11 = "SEC11"
SEC19 = "SEC19"
LOI = "LOI"
AWARD = "AWARD"
POSSESSION = "POSSESSION"


def next_sequence_value(store, name: str, year: int) -> int:
    """
    Atomically allocate the next value of counter ``(name, year)``.
    A missing counter starts at 0, so the first value of every year is 1.
    Storage errors propagate; there is no retry here.
    """
    if not name:
        raise ValidationError("Sequence name is required")
    return store.next_sequence_value(name, int(year))


def format_reference(prefix: str, year: int, value: int, padding: int = 3) -> str:
    """format_reference('SEC11', 2024, 7) -> 'SEC11-2024-007'"""
    return f"{prefix}-{int(year)}-{str(int(value)).zfill(padding)}"


def next_reference(store, prefix: str, on_date: Optional[date] = None, padding: int = 3) -> str:
    year = (on_date or date.today()).year
    value = next_sequence_value(store, prefix, year)
    ref = format_reference(prefix, year, value, padding)
    _logger.info(f"Generated reference {ref}")
    return ref
