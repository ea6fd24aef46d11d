# -*- coding: utf-8 -*-
"""
Cloudy Console Sessions - Layer 4
State of every console relay, live and recently finished.
"""

import time
import uuid
import logging

from cloudy import globals as g
from cloudy.constants import CONSOLE_SESSION_RETENTION

STATE_CONNECTING = 'connecting'
STATE_CONNECTED = 'connected'
STATE_DISCONNECTED = 'disconnected'
STATE_ERROR = 'error'

FINAL_STATES = (STATE_DISCONNECTED, STATE_ERROR)

# forward only, nothing goes back to connecting
_TRANSITIONS = {
    STATE_CONNECTING: (STATE_CONNECTED, STATE_DISCONNECTED, STATE_ERROR),
    STATE_CONNECTED: (STATE_DISCONNECTED, STATE_ERROR),
    STATE_DISCONNECTED: (),
    STATE_ERROR: (),
}


class InvalidTransition(Exception):
    pass


class ConsoleSession:
    """one browser <-> proxmox console socket pair"""

    def __init__(self, user: str, user_id: str, node: str, vmid: int, vm_type: str, mode: str = 'vnc'):
        self.id = uuid.uuid4().hex[:12]
        self.user = user
        self.user_id = user_id
        self.node = node
        self.vmid = vmid
        self.vm_type = vm_type
        self.mode = mode
        self.state = STATE_CONNECTING
        self.error = None
        self.bytes_to_proxmox = 0
        self.bytes_to_client = 0
        self.created_at = time.time()
        self.connected_at = None
        self.ended_at = None

    @property
    def finished(self) -> bool:
        return self.state in FINAL_STATES

    @property
    def duration(self) -> float:
        start = self.connected_at or self.created_at
        return round((self.ended_at or time.time()) - start, 1)

    def _move(self, new_state: str):
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state} -> {new_state}")
        logging.debug(f"[Console] {self.id} {self.state} -> {new_state}")
        self.state = new_state

    def mark_connected(self):
        self._move(STATE_CONNECTED)
        self.connected_at = time.time()

    def mark_disconnected(self):
        self._move(STATE_DISCONNECTED)
        self.ended_at = time.time()

    def mark_error(self, error: str):
        self._move(STATE_ERROR)
        self.error = error
        self.ended_at = time.time()

    def finish(self):
        """relay exit - disconnected unless something already ended the session"""
        if not self.finished:
            self.mark_disconnected()

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'user': self.user,
            'userId': self.user_id,
            'node': self.node,
            'vmid': self.vmid,
            'type': self.vm_type,
            'mode': self.mode,
            'state': self.state,
            'error': self.error,
            'bytesToProxmox': self.bytes_to_proxmox,
            'bytesToClient': self.bytes_to_client,
            'createdAt': self.created_at,
            'connectedAt': self.connected_at,
            'endedAt': self.ended_at,
            'duration': self.duration,
        }


def register_session(session: ConsoleSession) -> ConsoleSession:
    prune_sessions()
    with g.console_sessions_lock:
        g.console_sessions[session.id] = session
    return session


def prune_sessions(now: float = None) -> int:
    """drop finished sessions older than the retention window"""
    now = now or time.time()
    with g.console_sessions_lock:
        stale = [sid for sid, s in g.console_sessions.items()
                 if s.finished and s.ended_at and now - s.ended_at > CONSOLE_SESSION_RETENTION]
        for sid in stale:
            del g.console_sessions[sid]
    return len(stale)


def list_sessions() -> list:
    prune_sessions()
    with g.console_sessions_lock:
        sessions = list(g.console_sessions.values())
    return [s.to_dict() for s in sorted(sessions, key=lambda s: s.created_at, reverse=True)]


def get_session(session_id: str):
    with g.console_sessions_lock:
        return g.console_sessions.get(session_id)
