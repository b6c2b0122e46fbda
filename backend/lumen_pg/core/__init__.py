"""
Core Package
"""
from lumen_pg.core.cancellation import CancellationToken
from lumen_pg.core.clock import Clock, FrozenClock, system_clock
from lumen_pg.core.crypto import Crypto, generate_key

__all__ = [
    "CancellationToken",
    "Clock",
    "FrozenClock",
    "system_clock",
    "Crypto",
    "generate_key",
]
