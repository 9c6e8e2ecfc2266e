"""
User-media permission capability.

The restricted context queries the current permission before prompting,
so a granted permission is never re-requested.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum


class PermissionState(str, Enum):
    GRANTED = "granted"
    PROMPT = "prompt"
    DENIED = "denied"


class MediaPermission(ABC):
    """Microphone permission as exposed by the host."""

    @abstractmethod
    async def query(self) -> PermissionState:
        """Current state, without prompting."""

    @abstractmethod
    async def request(self) -> bool:
        """Prompt the user. True if access was granted."""


class StaticPermission(MediaPermission):
    """
    Fixed answer, decided at process start.

    Used by worker processes where the operator grants the microphone
    on the command line instead of through a prompt.
    """

    def __init__(self, granted: bool) -> None:
        self._state = PermissionState.GRANTED if granted else PermissionState.PROMPT
        self._granted = granted
        self.prompts = 0

    async def query(self) -> PermissionState:
        return self._state

    async def request(self) -> bool:
        self.prompts += 1
        self._state = PermissionState.GRANTED if self._granted else PermissionState.DENIED
        return self._granted
