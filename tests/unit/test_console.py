"""Tests for console sessions and the websocket relay."""

import time
from unittest.mock import patch, MagicMock

import pytest
import websocket
from simple_websocket import ConnectionClosed

from cloudy import globals as g
from cloudy.constants import CONSOLE_SESSION_RETENTION
from cloudy.core.console import (
    ConsoleSession, InvalidTransition, register_session, prune_sessions, list_sessions, get_session,
)
from cloudy.api import console as console_api
from conftest import guest, auth_headers


class FakeBrowserSocket:
    """what flask-sock hands the route: receive(timeout) / send / close"""

    def __init__(self, messages=()):
        self.messages = list(messages)
        self.sent = []
        self.closed = None

    def receive(self, timeout=None):
        if self.messages:
            return self.messages.pop(0)
        raise ConnectionClosed()

    def send(self, data):
        self.sent.append(data)

    def close(self, reason=None, message=None):
        self.closed = (reason, message)


class FakeUpstream:
    """websocket-client connection to the proxmox node"""

    def __init__(self, frames=()):
        self.frames = list(frames)
        self.sent = []
        self.closed = False

    def recv(self):
        if self.frames:
            return self.frames.pop(0)
        raise websocket.WebSocketTimeoutException()

    def send(self, data):
        self.sent.append(data)

    def send_binary(self, data):
        self.sent.append(data)

    def close(self):
        self.closed = True


class TestConsoleSession:
    def test_happy_path(self):
        session = ConsoleSession('alice', 'uid', 'pve1', 101, 'qemu')

        assert session.state == 'connecting'
        session.mark_connected()
        session.finish()

        assert session.state == 'disconnected'
        assert session.finished
        assert session.ended_at is not None

    def test_error_keeps_message(self):
        session = ConsoleSession('alice', 'uid', 'pve1', 101, 'qemu')

        session.mark_error('Failed to connect to VNC')
        session.finish()

        assert session.state == 'error'
        assert session.to_dict()['error'] == 'Failed to connect to VNC'

    def test_no_way_back(self):
        session = ConsoleSession('alice', 'uid', 'pve1', 101, 'qemu')
        session.mark_disconnected()

        with pytest.raises(InvalidTransition):
            session.mark_connected()
        with pytest.raises(InvalidTransition):
            session.mark_error('late')

    def test_registry_prunes_old_finished_sessions(self):
        old = register_session(ConsoleSession('alice', 'uid', 'pve1', 101, 'qemu'))
        live = register_session(ConsoleSession('alice', 'uid', 'pve1', 102, 'qemu'))
        # registering prunes too, so age the old session only after both are in
        old.mark_disconnected()
        old.ended_at = time.time() - CONSOLE_SESSION_RETENTION - 1

        assert prune_sessions() == 1
        assert get_session(old.id) is None
        assert [s['id'] for s in list_sessions()] == [live.id]


class TestRelay:
    def test_bytes_flow_both_ways(self):
        session = ConsoleSession('alice', 'uid', 'pve1', 101, 'qemu')
        # None is a receive timeout, the relay yields and the reader gets to run
        ws = FakeBrowserSocket([None, b'\x01\x02', 'key'])
        upstream = FakeUpstream([b'RFB 003.008\n'])

        error = console_api.relay(ws, upstream, session)

        assert error is None
        assert upstream.sent == [b'\x01\x02', 'key']
        assert session.bytes_to_proxmox == 5
        assert b'RFB 003.008\n' in ws.sent

    def test_upstream_send_failure_is_reported(self):
        session = ConsoleSession('alice', 'uid', 'pve1', 101, 'qemu')
        ws = FakeBrowserSocket([b'data'])
        upstream = FakeUpstream()
        upstream.send_binary = MagicMock(side_effect=OSError('broken pipe'))

        assert console_api.relay(ws, upstream, session) == 'broken pipe'


class TestHandleConsole:
    def _run(self, app, query, headers=None, messages=()):
        ws = FakeBrowserSocket(messages)
        with app.test_request_context(f'/api/ws/vnc?{query}', headers=headers or {}):
            console_api.handle_console(ws)
        return ws

    def test_unauthenticated(self, app):
        ws = self._run(app, 'node=pve1&vmid=101')

        assert ws.closed == (1008, 'Unauthorized')

    def test_missing_params(self, app, alice):
        ws = self._run(app, 'node=pve1', auth_headers(alice))

        assert ws.closed == (1008, 'Missing node or vmid')

    def test_invalid_vmid(self, app, alice):
        ws = self._run(app, 'node=pve1&vmid=abc', auth_headers(alice))

        assert ws.closed[0] == 1008

    def test_token_in_query(self, app, alice, proxmox):
        sid = auth_headers(alice)['X-Session-ID']
        proxmox.resources = [guest(101, owner='someone-else')]

        ws = self._run(app, f'node=pve1&vmid=101&token={sid}')

        assert ws.closed == (1008, 'Forbidden')

    def test_forbidden_marks_session_error(self, app, alice, proxmox):
        proxmox.resources = [guest(101, owner='someone-else')]

        ws = self._run(app, 'node=pve1&vmid=101', auth_headers(alice))

        assert ws.closed == (1008, 'Forbidden')
        session = list(g.console_sessions.values())[0]
        assert session.state == 'error'
        assert session.error == 'Forbidden'

    def test_upstream_connect_failure(self, app, alice, proxmox):
        proxmox.resources = [guest(101, owner=alice['id'])]

        with patch.object(console_api, 'connect_upstream', side_effect=OSError('refused')):
            ws = self._run(app, 'node=pve1&vmid=101', auth_headers(alice))

        assert ws.closed == (1011, 'Failed to connect to VNC')

    def test_full_session_is_audited(self, app, alice, proxmox, db):
        proxmox.resources = [guest(101, owner=alice['id'])]
        upstream = FakeUpstream([b'hello'])

        with patch.object(console_api, 'connect_upstream', return_value=upstream):
            self._run(app, 'node=pve1&vmid=101', auth_headers(alice))

        session = list(g.console_sessions.values())[0]
        assert session.state == 'disconnected'
        assert upstream.closed
        actions = [row['action'] for row in db.query('SELECT action FROM audit_log ORDER BY id')]
        assert actions == ['console.open', 'console.close']

    def test_terminal_mode_falls_back_to_vnc_for_qemu(self, app, alice, proxmox):
        proxmox.resources = [guest(101, owner=alice['id'])]
        upstream = FakeUpstream()

        with patch.object(console_api, 'connect_upstream', return_value=upstream) as connect:
            self._run(app, 'node=pve1&vmid=101&type=qemu&mode=terminal', auth_headers(alice))

        assert connect.call_args[0][4] == 'vnc'

    def test_upstream_drop_mid_session(self, app, alice, proxmox, db):
        proxmox.resources = [guest(101, owner=alice['id'])]
        upstream = FakeUpstream()
        upstream.recv = MagicMock(side_effect=[b'RFB 003.008\n', OSError('connection reset')])

        with patch.object(console_api, 'connect_upstream', return_value=upstream):
            ws = self._run(app, 'node=pve1&vmid=101', auth_headers(alice), messages=[None, None, None])

        assert ws.closed == (1011, 'Proxmox connection error')
        assert ws.sent == [b'RFB 003.008\n']
        session = list(g.console_sessions.values())[0]
        assert session.state == 'error'
        assert session.error == 'connection reset'
        assert upstream.closed
        row = db.query_one("SELECT status, error_message FROM audit_log WHERE action = 'console.close'")
        assert row['status'] == 'ERROR'
        assert row['error_message'] == 'connection reset'


class TestConnectUpstream:
    def test_terminal_sends_login_line(self, proxmox):
        proxmox.responses[('POST', '/nodes/pve1/lxc/105/termproxy')] = {
            'ticket': 'PVEVNC:abc', 'port': '5901', 'user': 'root@pam!cloudy',
        }
        upstream = FakeUpstream()
        upstream.settimeout = MagicMock()

        with patch.object(console_api.websocket, 'create_connection', return_value=upstream) as create:
            console_api.connect_upstream(proxmox, 'pve1', 105, 'lxc', 'terminal')

        url = create.call_args[0][0]
        assert url.startswith('wss://pve.test:8006/api2/json/nodes/pve1/lxc/105/vncwebsocket?')
        assert upstream.sent == ['root@pam!cloudy:PVEVNC:abc\n']
