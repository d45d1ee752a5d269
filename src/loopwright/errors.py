from __future__ import annotations


class LoopwrightError(RuntimeError):
    """Base class for errors raised by loopwright."""
