"""
Connection status tracking for control-surface sessions.

Connection lifecycle is tracked separately from the recognition state
machine: recognition keeps running when the control surface goes away.
"""
from enum import Enum

class ConnectionStatus(Enum):
    """
    Control-surface link status.

    Independent of SessionState. ACTIVE recognition can occur with any
    ConnectionStatus.
    """
    DOWN = "DOWN"
    UP = "UP"
