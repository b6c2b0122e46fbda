"""
Cursor state for keyset pagination
"""
from dataclasses import dataclass, replace
from typing import Any, Optional

from lumen_pg.core.exceptions import ValidationError

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 50
HARD_LIMIT_ROWS = 1000


@dataclass(frozen=True)
class Cursor:
    """
    Position after the last emitted row.

    ``last_value`` is the sort-column value of that row and ``last_id`` its
    tiebreak (primary key) value. A cursor with ``total_loaded == 0`` is the
    start of the table.
    """
    last_value: Any = None
    last_id: Any = None
    page_size: int = DEFAULT_PAGE_SIZE
    total_loaded: int = 0
    hard_limit: int = HARD_LIMIT_ROWS

    def __post_init__(self):
        if not 1 <= self.page_size <= MAX_PAGE_SIZE:
            raise ValidationError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
        if self.total_loaded < 0:
            raise ValidationError("total_loaded cannot be negative")
        if self.total_loaded > self.hard_limit:
            raise ValidationError(f"total_loaded cannot exceed {self.hard_limit}")

    @property
    def is_start(self) -> bool:
        return self.total_loaded == 0

    def has_reached_limit(self) -> bool:
        return self.total_loaded >= self.hard_limit

    def can_load_more(self) -> bool:
        return not self.has_reached_limit()

    def next_page_limit(self) -> int:
        """Rows the next page may hold without crossing the hard limit."""
        return max(0, min(self.page_size, self.hard_limit - self.total_loaded))

    def advance(self, last_value: Any, last_id: Optional[Any], loaded: int) -> "Cursor":
        """Return the cursor positioned after a page of ``loaded`` rows."""
        if loaded < 0:
            raise ValidationError("loaded cannot be negative")
        total = min(self.hard_limit, self.total_loaded + loaded)
        return replace(self, last_value=last_value, last_id=last_id, total_loaded=total)
