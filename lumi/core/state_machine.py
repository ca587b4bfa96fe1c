"""
Lumi — Connection State Machine

Enforces the lifecycle: DISCONNECTED → CONNECTING → CONNECTED → DISCONNECTED / ERROR.

Leaving DISCONNECTED or ERROR is the user's decision: only begin_connect()
may do it. Automatic retries move CONNECTED → CONNECTING through
transition(), and an exhausted retry budget parks the session in ERROR
until the user connects again.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Set

logger = logging.getLogger("lumi.state")


class ConnectionState(str, Enum):
    """Session connection lifecycle states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"    # Setup in flight or waiting for a retry
    CONNECTED = "connected"      # Transport open; mic/video controls enabled
    ERROR = "error"              # Fatal; the user must reconnect manually


# States a user-initiated connect may start from
IDLE_STATES: FrozenSet[ConnectionState] = frozenset(
    {ConnectionState.DISCONNECTED, ConnectionState.ERROR}
)

# Legal moves through transition(); idle → CONNECTING goes through begin_connect()
_TRANSITIONS: Dict[ConnectionState, Set[ConnectionState]] = {
    ConnectionState.DISCONNECTED: set(),
    ConnectionState.CONNECTING:   {ConnectionState.CONNECTED, ConnectionState.ERROR,
                                   ConnectionState.DISCONNECTED},
    ConnectionState.CONNECTED:    {ConnectionState.CONNECTING, ConnectionState.ERROR,
                                   ConnectionState.DISCONNECTED},
    ConnectionState.ERROR:        {ConnectionState.DISCONNECTED},
}


class ConnectionStateMachine:
    """
    Usage:
        sm = ConnectionStateMachine(on_transition=my_callback)
        sm.begin_connect("user")                     # True: DISCONNECTED → CONNECTING
        sm.begin_connect("user")                     # False: already connecting
        sm.transition(ConnectionState.CONNECTED)     # OK
    """

    def __init__(
        self,
        on_transition: Optional[Callable[[ConnectionState, ConnectionState, str], None]] = None,
        log_prefix: str = "",
    ) -> None:
        self._state = ConnectionState.DISCONNECTED
        self._on_transition = on_transition
        self._log_prefix = log_prefix
        self._history: List[Dict] = []
        self._entered_at = time.time()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def history(self) -> List[Dict]:
        return list(self._history)

    def can_connect(self) -> bool:
        return self._state in IDLE_STATES

    def begin_connect(self, reason: str = "user") -> bool:
        """Start a user-initiated connect. False when one is already under way."""
        if not self.can_connect():
            logger.debug(f"{self._log_prefix}connect ignored in state {self._state.value}")
            return False
        self._enter(ConnectionState.CONNECTING, reason)
        return True

    def transition(self, target: ConnectionState, reason: str = "") -> None:
        """Move to `target`; a move to the current state is a no-op."""
        if target == self._state:
            return
        if target not in _TRANSITIONS[self._state]:
            hint = " (use begin_connect)" if target is ConnectionState.CONNECTING else ""
            raise ValueError(
                f"Illegal state transition: {self._state.value} → {target.value}{hint}. "
                f"Reason: {reason}"
            )
        self._enter(target, reason)

    def _enter(self, target: ConnectionState, reason: str) -> None:
        prev, now = self._state, time.time()
        self._history.append({
            "from": prev.value,
            "to": target.value,
            "reason": reason,
            "timestamp": now,
            "duration_in_prev_ms": round((now - self._entered_at) * 1000, 1),
        })
        self._state, self._entered_at = target, now
        logger.info(
            f"{self._log_prefix}STATE: {prev.value} → {target.value}"
            + (f" ({reason})" if reason else "")
        )
        if self._on_transition is None:
            return
        try:
            self._on_transition(prev, target, reason)
        except Exception as e:
            logger.error(f"{self._log_prefix}State listener failed: {e}")
