# -*- coding: utf-8 -*-
"""
Cloudy Console Relay - Layer 5
WebSocket bridge between the browser (noVNC / xterm.js) and the Proxmox node
console socket. The browser only ever talks to us, the API token stays here.
"""

import ssl
import logging

import gevent
import websocket
from flask import Blueprint, jsonify, request
from flask_sock import Sock
from simple_websocket import ConnectionClosed

from cloudy.constants import CONSOLE_RECEIVE_TIMEOUT, CONSOLE_CONNECT_TIMEOUT
from cloudy.core.config import get_proxmox_client
from cloudy.core.console import ConsoleSession, register_session, list_sessions
from cloudy.core.db import get_db
from cloudy.core.errors import CloudyError, NotFoundError, PermissionDeniedError
from cloudy.models.permissions import ROLE_ADMIN, SHARE_MAINTENANCE
from cloudy.utils.auth import require_auth, authenticate_credential
from cloudy.utils.audit import log_audit, STATUS_SUCCESS, STATUS_ERROR
from cloudy.utils.sanitization import validate_node, parse_instance_id, validate_vm_type
from cloudy.api.helpers import check_instance_access

sock = Sock()
bp = Blueprint('console', __name__)

CLOSE_POLICY = 1008
CLOSE_SERVER_ERROR = 1011

MODES = ('vnc', 'terminal')


class ConsoleClosed(Exception):
    """close the browser socket with code + reason"""

    def __init__(self, code: int, reason: str):
        super().__init__(reason)
        self.code = code
        self.reason = reason


def _ws_credential():
    """query token first (browsers cant set headers on websockets), then header and cookies"""
    return (request.args.get('token')
            or request.headers.get('X-Session-ID')
            or request.cookies.get('session_id')
            or request.cookies.get('token'))


def _authenticate():
    session = authenticate_credential(_ws_credential())
    if not session:
        raise ConsoleClosed(CLOSE_POLICY, 'Unauthorized')
    user = get_db().get_user(session.get('user_id'))
    if not user or not user.get('enabled', True):
        raise ConsoleClosed(CLOSE_POLICY, 'Unauthorized')
    return session


def _console_params():
    """(node, vmid, vm_type, mode) from the query string"""
    node = request.args.get('node')
    vmid = request.args.get('vmid')
    if not node or not vmid:
        raise ConsoleClosed(CLOSE_POLICY, 'Missing node or vmid')
    try:
        node = validate_node(node)
        vmid = parse_instance_id(vmid)
        vm_type = validate_vm_type(request.args.get('type') or 'qemu')
    except CloudyError as e:
        raise ConsoleClosed(CLOSE_POLICY, e.message)
    mode = request.args.get('mode') or 'vnc'
    if mode not in MODES:
        raise ConsoleClosed(CLOSE_POLICY, f'Invalid mode: {mode}')
    # termproxy is a container thing, qemu gets the graphical console
    if mode == 'terminal' and vm_type != 'lxc':
        mode = 'vnc'
    return node, vmid, vm_type, mode


def connect_upstream(client, node: str, vmid: int, vm_type: str, mode: str):
    """get a ticket and open the proxmox vncwebsocket"""
    if mode == 'terminal':
        ticket = client.get_term_ticket(node, vmid, vm_type)
    else:
        ticket = client.get_vnc_ticket(node, vmid, vm_type)

    url = client.console_ws_url(node, vmid, vm_type, ticket['port'], ticket['ticket'])
    upstream = websocket.create_connection(
        url,
        sslopt={"cert_reqs": ssl.CERT_NONE},
        header=[f"Authorization: {client.auth_header}"],
        subprotocols=['binary'],
        timeout=CONSOLE_CONNECT_TIMEOUT,
    )
    if mode == 'terminal':
        # termproxy wants the login line before anything else
        upstream.send(f"{ticket['user']}:{ticket['ticket']}\n")
    upstream.settimeout(CONSOLE_RECEIVE_TIMEOUT)
    return upstream


def relay(ws, upstream, session: ConsoleSession):
    """pump bytes both ways until one side goes away

    returns None on a clean disconnect, or the upstream error message
    """
    state = {'running': True, 'error': None}

    def proxmox_to_client():
        while state['running']:
            try:
                data = upstream.recv()
            except websocket.WebSocketTimeoutException:
                gevent.sleep(0.01)
                continue
            except websocket.WebSocketConnectionClosedException:
                logging.info(f"[Console] {session.id} Proxmox closed the connection")
                break
            except Exception as e:
                if state['running']:
                    logging.warning(f"[Console] {session.id} Proxmox->client error: {e}")
                    state['error'] = str(e)
                break
            if not data:
                # empty frame means the peer is gone
                break
            session.bytes_to_client += len(data)
            try:
                ws.send(data)
            except ConnectionClosed:
                break
        state['running'] = False

    reader = gevent.spawn(proxmox_to_client)
    try:
        while state['running']:
            try:
                data = ws.receive(timeout=CONSOLE_RECEIVE_TIMEOUT)
            except ConnectionClosed:
                logging.info(f"[Console] {session.id} client disconnected")
                break
            if data is None:
                # receive timeout, let the reader run
                gevent.sleep(0)
                continue
            session.bytes_to_proxmox += len(data)
            try:
                if isinstance(data, str):
                    upstream.send(data)
                else:
                    upstream.send_binary(data)
            except Exception as e:
                logging.warning(f"[Console] {session.id} client->Proxmox error: {e}")
                state['error'] = str(e)
                break
    finally:
        state['running'] = False
        reader.kill()
    return state['error']


def _close(ws, code: int, reason: str):
    try:
        ws.close(reason=code, message=reason)
    except Exception as e:
        logging.debug(f"[Console] close failed: {e}")


def _audit(session: ConsoleSession, action: str, status=None, error=None, **details):
    log_audit(session.user, action, {'node': session.node, 'mode': session.mode, **details},
              user_id=session.user_id, target_id=session.vmid, target_type='instance',
              status=status or STATUS_SUCCESS, error_message=error)


def handle_console(ws):
    """one console websocket, from auth to teardown"""
    try:
        auth = _authenticate()
        node, vmid, vm_type, mode = _console_params()
    except ConsoleClosed as e:
        logging.warning(f"[Console] Rejected from {request.remote_addr}: {e.reason}")
        _close(ws, e.code, e.reason)
        return

    session = register_session(ConsoleSession(auth.get('user'), auth.get('user_id'), node, vmid, vm_type, mode))
    upstream = None
    try:
        client = get_proxmox_client()
        if client is None:
            raise ConsoleClosed(CLOSE_SERVER_ERROR, 'Failed to connect to VNC')
        try:
            check_instance_access(client, auth, vmid, node, SHARE_MAINTENANCE)
        except (NotFoundError, PermissionDeniedError):
            raise ConsoleClosed(CLOSE_POLICY, 'Forbidden')

        try:
            upstream = connect_upstream(client, node, vmid, vm_type, mode)
        except Exception as e:
            logging.error(f"[Console] {session.id} connect to {vm_type}/{vmid} on {node} failed: {e}")
            raise ConsoleClosed(CLOSE_SERVER_ERROR, 'Failed to connect to VNC')

        session.mark_connected()
        _audit(session, 'console.open')
        logging.info(f"[Console] {session.id} {auth.get('user')} connected to {vm_type}/{vmid} on {node} ({mode})")

        error = relay(ws, upstream, session)
        if error:
            session.mark_error(error)
            _close(ws, CLOSE_SERVER_ERROR, 'Proxmox connection error')
    except ConsoleClosed as e:
        session.mark_error(e.reason)
        _close(ws, e.code, e.reason)
    except CloudyError as e:
        logging.error(f"[Console] {session.id} {e.message}")
        session.mark_error(e.message)
        _close(ws, CLOSE_SERVER_ERROR, 'Failed to connect to VNC')
    finally:
        if upstream is not None:
            try:
                upstream.close()
            except Exception as e:
                logging.debug(f"[Console] upstream close failed: {e}")
        was_open = session.connected_at is not None
        session.finish()
        if was_open:
            _audit(session, 'console.close',
                   status=STATUS_ERROR if session.error else None, error=session.error,
                   bytesToProxmox=session.bytes_to_proxmox, bytesToClient=session.bytes_to_client,
                   duration=session.duration)
        logging.info(f"[Console] {session.id} ended ({session.state}): "
                     f"sent {session.bytes_to_proxmox}, received {session.bytes_to_client}")


@sock.route('/api/ws/vnc')
def vnc_console(ws):
    handle_console(ws)


@bp.route('/api/console/sessions', methods=['GET'])
@require_auth(roles=[ROLE_ADMIN])
def get_console_sessions():
    return jsonify(list_sessions())
