"""Monotonic request id allocation for control-surface calls."""

from __future__ import annotations

import itertools


class RequestIds:
    """Ids start at 1 and never repeat within a coordinator's lifetime."""

    def __init__(self) -> None:
        self._counter = itertools.count(1)

    def next(self) -> int:
        return next(self._counter)
