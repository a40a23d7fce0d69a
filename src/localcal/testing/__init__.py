"""Test support utilities for the localcal package.

Exports an in-memory ``CalendarCache`` that the test suite and the CLI use in
place of an on-disk store. Nothing here depends on pytest.
"""

from __future__ import annotations

from localcal.testing.cache import CachedCalendar, MemoryCalendarCache

__all__ = ["CachedCalendar", "MemoryCalendarCache"]
