"""
agent_store.py

Minimal thread-safe app state shared by the run wiring and any front end.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from gui_agent import StatusEnum


@dataclass
class AppState:
    instructions: str = ""
    status: StatusEnum = StatusEnum.INIT
    messages: List[Any] = field(default_factory=list)
    session_history_messages: List[Dict[str, Any]] = field(default_factory=list)
    error_msg: Optional[str] = None
    thinking: bool = False
    attachments: List[Dict[str, Any]] = field(default_factory=list)


Listener = Callable[[AppState], None]


class AgentStore:
    def __init__(self, initial: Optional[AppState] = None):
        self._lock = threading.Lock()
        self._state = initial or AppState()
        self._listeners: List[Listener] = []

    def get_state(self) -> AppState:
        with self._lock:
            return self._state

    def set_state(self, **changes: Any) -> AppState:
        with self._lock:
            self._state = replace(self._state, **changes)
            state = self._state
            listeners = list(self._listeners)
        for fn in listeners:
            fn(state)
        return state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe
