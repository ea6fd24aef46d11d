# -*- coding: utf-8 -*-
"""
Cloudy Proxmox Client - Layer 5
Thin wrapper over the PVE HTTP API (API token auth). Raises ProxmoxError.
"""

import time
import logging
import ssl
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse, quote as url_quote

import requests
import urllib3
from requests.adapters import HTTPAdapter
from urllib3.util.ssl_ import create_urllib3_context
from gevent.pool import Pool as GeventPool

from cloudy.constants import (
    PROXMOX_DEFAULT_PORT, PROXMOX_API_TIMEOUT, PROXMOX_TEST_TIMEOUT, PROXMOX_MAX_FAILURES,
    VM_ACTIONS, RRD_TIMEFRAMES, CLONE_CONFIG_RETRY_DELAYS, DELETE_STOP_WAIT, OWNER_TAG_PREFIX,
)
from cloudy.core.errors import ProxmoxError, ValidationError

urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


class _NoHostnameCheckAdapter(HTTPAdapter):
    """MK: Force-disable hostname verification so IPs work with self-signed certs"""
    def init_poolmanager(self, *args, **kwargs):
        ctx = create_urllib3_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        kwargs['ssl_context'] = ctx
        return super().init_poolmanager(*args, **kwargs)


def normalize_base_url(host: str, default_port: int = PROXMOX_DEFAULT_PORT) -> str:
    """'pve1', 'pve1:8006', 'https://pve1:8006/' -> 'https://pve1:8006'"""
    host = (host or '').strip().rstrip('/')
    if not host:
        raise ValidationError('Host is required')
    if '://' not in host:
        host = f'https://{host}'
    parsed = urlparse(host)
    if parsed.scheme not in ('http', 'https') or not parsed.hostname:
        raise ValidationError(f'Invalid host: {host}')
    port = parsed.port or default_port
    hostname = f'[{parsed.hostname}]' if ':' in parsed.hostname else parsed.hostname
    return f'{parsed.scheme}://{hostname}:{port}'


def owner_tag(user_id: str) -> str:
    return f'{OWNER_TAG_PREFIX}{user_id}'


def has_owner_tag(resource: dict, user_id: str) -> bool:
    # tags come back as "a;b;c" from /cluster/resources
    tags = str(resource.get('tags') or '').replace(',', ';').split(';')
    return owner_tag(user_id) in [t.strip() for t in tags]


def run_concurrent(tasks: list, size: int = 20) -> list:
    """run callables on a greenlet pool, results in task order (exceptions returned, not raised)"""
    if not tasks:
        return []
    pool = GeventPool(size=size)
    greenlets = [pool.spawn(task) for task in tasks]
    pool.join()
    return [g.value if g.successful() else g.exception for g in greenlets]


class ProxmoxClient:
    """
    Proxmox VE API client

    MK: Each request gets a fresh session to avoid threading issues,
    gevent + a shared requests.Session deadlocked on us before
    """

    def __init__(self, base_url: str, token_id: str, token_secret: str,
                 verify_ssl: bool = False, timeout: int = PROXMOX_API_TIMEOUT):
        self.base_url = normalize_base_url(base_url)
        self.token_id = token_id
        self._token_secret = token_secret
        self._ssl_verify = verify_ssl
        self.api_timeout = timeout

        self.logger = logging.getLogger('cloudy.proxmox')

        # Connection state tracking
        self.is_connected = False
        self.last_successful_request = None
        self.connection_error = None
        self._consecutive_failures = 0

        # overridable so tests dont sleep through the clone retries
        self._sleep = time.sleep

    @property
    def host(self) -> str:
        return urlparse(self.base_url).hostname

    @property
    def port(self) -> int:
        return urlparse(self.base_url).port or PROXMOX_DEFAULT_PORT

    @property
    def auth_header(self) -> str:
        return f'PVEAPIToken={self.token_id}={self._token_secret}'

    def _create_session(self):
        session = requests.Session()
        session.verify = self._ssl_verify
        if not self._ssl_verify:
            session.mount('https://', _NoHostnameCheckAdapter())
        session.headers.update({'Authorization': self.auth_header})
        return session

    def _url(self, path: str) -> str:
        return f'{self.base_url}/api2/json{path}'

    # LW: All API calls go through here for consistent error handling
    # MK: Timeout != offline. Proxmox might just be slow (happens a lot with ZFS)
    def _send(self, method: str, path: str, **kwargs):
        kwargs.setdefault('timeout', self.api_timeout)
        try:
            session = self._create_session()
            response = session.request(method, self._url(path), **kwargs)
        except requests.exceptions.Timeout as e:
            self.connection_error = f"Request timed out: {e}"
            self.logger.warning(f"[WARN] API {method} {path} timeout (not marking offline): {e}")
            err = ProxmoxError('Proxmox request timed out', code='PROXMOX_TIMEOUT')
            err.status_code = 504
            raise err from e
        except requests.exceptions.ConnectionError as e:
            # only mark disconnected after a few consecutive failures to avoid flapping
            self._consecutive_failures += 1
            if self._consecutive_failures >= PROXMOX_MAX_FAILURES:
                self.is_connected = False
                self.connection_error = str(e)
            self.logger.error(f"[ERROR] API {method} {path} connection error: {e}")
            raise ProxmoxError('Cannot connect to Proxmox') from e

        self.is_connected = True
        self.last_successful_request = datetime.now()
        self.connection_error = None
        self._consecutive_failures = 0
        return response

    def _call(self, method: str, path: str, **kwargs) -> Any:
        """request + unwrap the {'data': ...} envelope, raise on non-2xx"""
        response = self._send(method, path, **kwargs)
        if response.status_code >= 400:
            message = self._error_message(response)
            self.logger.error(f"[ERROR] {method} {path} -> {response.status_code}: {message}")
            raise ProxmoxError(message, status=response.status_code)
        try:
            return response.json().get('data')
        except ValueError:
            return None

    @staticmethod
    def _error_message(response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            if body.get('errors'):
                errors = body['errors']
                if isinstance(errors, dict):
                    return '; '.join(f'{k}: {v}' for k, v in errors.items())
                return str(errors)
            if body.get('message'):
                return str(body['message']).strip()
        text = (getattr(response, 'reason', None) or response.text or '').strip()
        return text[:300] or f'HTTP {response.status_code}'

    def _api_get(self, path, **kwargs):
        return self._call('GET', path, **kwargs)

    def _api_post(self, path, **kwargs):
        return self._call('POST', path, **kwargs)

    def _api_put(self, path, **kwargs):
        return self._call('PUT', path, **kwargs)

    def _api_delete(self, path, **kwargs):
        return self._call('DELETE', path, **kwargs)

    @staticmethod
    def _guest_path(node: str, vmid: int, vm_type: str) -> str:
        endpoint = 'lxc' if vm_type == 'lxc' else 'qemu'
        return f'/nodes/{node}/{endpoint}/{vmid}'

    # =====================================================
    # CONNECTION
    # =====================================================

    @classmethod
    def test_connection(cls, host: str, token_id: str, token_secret: str) -> Dict[str, Any]:
        """setup wizard check - never raises"""
        try:
            client = cls(host, token_id, token_secret, timeout=PROXMOX_TEST_TIMEOUT)
            nodes = client.get_nodes() or []
            return {'success': True, 'message': f'Connected successfully! Found {len(nodes)} node(s).',
                    'nodes': len(nodes)}
        except (ProxmoxError, ValidationError) as e:
            return {'success': False, 'message': f'Connection failed: {e.message}'}

    def get_version(self) -> dict:
        return self._api_get('/version')

    def get_nodes(self) -> list:
        return self._api_get('/nodes') or []

    def get_resources(self) -> list:
        return self._api_get('/cluster/resources', params={'type': 'vm'}) or []

    def get_next_vmid(self) -> int:
        return int(self._api_get('/cluster/nextid'))

    # =====================================================
    # INSTANCES
    # =====================================================

    def get_instance_status(self, node: str, vmid: int, vm_type: str) -> dict:
        return self._api_get(f'{self._guest_path(node, vmid, vm_type)}/status/current') or {}

    def get_instance_config(self, node: str, vmid: int, vm_type: str) -> dict:
        return self._api_get(f'{self._guest_path(node, vmid, vm_type)}/config') or {}

    def find_instance(self, vmid: int) -> Optional[dict]:
        """cluster resource entry for a vmid, None if it doesnt exist"""
        for res in self.get_resources():
            if int(res.get('vmid', -1)) == int(vmid):
                return res
        return None

    def vm_action(self, node: str, vmid: int, vm_type: str, action: str, force: bool = False):
        # NS: start/stop/shutdown/reboot/reset/suspend/resume - basic lifecycle stuff
        if action not in VM_ACTIONS:
            raise ValidationError(f"Invalid action: {action}")
        # LXC containers don't support 'reset' - only QEMU VMs do
        if vm_type == 'lxc' and action == 'reset':
            raise ValidationError('Reset is not supported for LXC containers. Use reboot instead.')

        data = {}
        if force and action == 'stop' and vm_type == 'qemu':
            # timeout=0 is an immediate stop, works without root@pam (skiplock doesnt)
            data['timeout'] = 0

        self.logger.info(f"VM Action: {action} on {vm_type}/{vmid}@{node}" + (" FORCE" if force else ""))
        return self._api_post(f'{self._guest_path(node, vmid, vm_type)}/status/{action}', data=data or None)

    def clone(self, node: str, template_id: int, vm_type: str, newid: int, name: str):
        data = {'newid': newid, 'full': 1}
        # lxc calls it hostname
        data['hostname' if vm_type == 'lxc' else 'name'] = name
        self.logger.info(f"Cloning {vm_type}/{template_id} to {newid} on {node}")
        return self._api_post(f'{self._guest_path(node, template_id, vm_type)}/clone', data=data)

    def update_config(self, node: str, vmid: int, vm_type: str, payload: dict):
        path = f'{self._guest_path(node, vmid, vm_type)}/config'
        # qemu config POST is async, lxc only has PUT
        if vm_type == 'lxc':
            return self._api_put(path, data=payload)
        return self._api_post(path, data=payload)

    def create_instance(self, node: str, template_id: int, vm_type: str, name: str,
                        cores: int, memory: int, tags: str = None, username: str = None,
                        password: str = None, sshkeys: str = None) -> Dict[str, Any]:
        """clone a template and apply size/credentials/owner tag

        returns {'vmid', 'task', 'config_applied'}
        """
        newid = self.get_next_vmid()
        task = self.clone(node, template_id, vm_type, newid, name)
        self.logger.info(f"Clone task started: {task} for {vm_type} {newid}")

        payload = {'cores': cores, 'memory': memory}
        if tags:
            payload['tags'] = tags
        if vm_type == 'lxc':
            if password:
                payload['password'] = password
            if sshkeys:
                payload['ssh-public-keys'] = url_quote(sshkeys, safe='')
        else:
            if username:
                payload['ciuser'] = username
            if password:
                payload['cipassword'] = password
            if sshkeys:
                # PVE wants the keys urlencoded for qemu cloud-init
                payload['sshkeys'] = url_quote(sshkeys, safe='')

        # MK: the clone holds a lock on the new guest for a while, retry with backoff
        config_applied = False
        for attempt, delay in enumerate(CLONE_CONFIG_RETRY_DELAYS, start=1):
            self._sleep(delay)
            try:
                self.update_config(node, newid, vm_type, payload)
                config_applied = True
                self.logger.info(f"Config applied to {vm_type} {newid} on attempt {attempt}")
                break
            except ProxmoxError as e:
                self.logger.warning(f"Config apply attempt {attempt} failed for {vm_type} {newid}: {e.message}")

        if not config_applied:
            self.logger.error(f"Failed to apply config to {vm_type} {newid} after {len(CLONE_CONFIG_RETRY_DELAYS)} attempts")

        return {'vmid': newid, 'task': task, 'config_applied': config_applied}

    def delete_instance(self, node: str, vmid: int, vm_type: str):
        path = self._guest_path(node, vmid, vm_type)
        try:
            self._api_post(f'{path}/status/stop')
            self._sleep(DELETE_STOP_WAIT)
        except ProxmoxError as e:
            # most likely already stopped
            self.logger.warning(f"Could not stop {vm_type} {vmid} before deletion: {e.message}")
        return self._api_delete(path)

    def get_vm_ip(self, node: str, vmid: int, vm_type: str) -> Optional[str]:
        """first non-loopback IPv4 - guest agent for qemu, /interfaces for lxc"""
        path = self._guest_path(node, vmid, vm_type)
        try:
            if vm_type == 'lxc':
                for iface in self._api_get(f'{path}/interfaces') or []:
                    inet = iface.get('inet') or ''
                    if iface.get('name') != 'lo' and '.' in inet:
                        return inet.split('/')[0]
            else:
                result = (self._api_get(f'{path}/agent/network-get-interfaces') or {}).get('result') or []
                for iface in result:
                    if iface.get('name') == 'lo':
                        continue
                    for addr in iface.get('ip-addresses') or []:
                        ip = addr.get('ip-address', '')
                        if addr.get('ip-address-type') == 'ipv4' and not ip.startswith('127.'):
                            return ip
        except ProxmoxError as e:
            # guest agent not installed / guest not running
            self.logger.debug(f"Could not get IP for {vm_type}/{vmid}: {e.message}")
        return None

    def list_instances(self, with_ip: bool = True) -> List[dict]:
        """non-template guests, running ones get their IP looked up in parallel"""
        instances = [dict(r) for r in self.get_resources() if not r.get('template')]
        if with_ip:
            running = [i for i in instances if i.get('status') == 'running']
            ips = run_concurrent([
                (lambda i=i: self.get_vm_ip(i['node'], i['vmid'], i.get('type', 'qemu')))
                for i in running
            ])
            for inst, ip in zip(running, ips):
                inst['ip'] = ip if isinstance(ip, str) else None
        for inst in instances:
            inst.setdefault('ip', None)
        return instances

    def list_templates(self) -> List[dict]:
        return [r for r in self.get_resources() if r.get('template')]

    def get_user_usage(self, user_id: str) -> dict:
        """what a user currently consumes (owned guests only, templates excluded)"""
        owned = [r for r in self.get_resources() if not r.get('template') and has_owner_tag(r, user_id)]
        return {
            'instances': len(owned),
            'cpu': sum(r.get('maxcpu') or 0 for r in owned),
            'memory': round(sum(r.get('maxmem') or 0 for r in owned) / 1024 / 1024),  # MB
            'disk': round(sum(r.get('maxdisk') or 0 for r in owned) / 1024 / 1024 / 1024),  # GB
        }

    # =====================================================
    # SNAPSHOTS
    # =====================================================

    def get_snapshots(self, node: str, vmid: int, vm_type: str) -> list:
        snaps = self._api_get(f'{self._guest_path(node, vmid, vm_type)}/snapshot') or []
        # 'current' is the live state, not a snapshot
        return [s for s in snaps if s.get('name') != 'current']

    def create_snapshot(self, node: str, vmid: int, vm_type: str, snapname: str,
                        description: str = None, vmstate: bool = False):
        payload = {'snapname': snapname}
        if description:
            payload['description'] = description
        if vm_type == 'qemu' and vmstate:
            payload['vmstate'] = 1
        try:
            return self._api_post(f'{self._guest_path(node, vmid, vm_type)}/snapshot', data=payload)
        except ProxmoxError as e:
            # LW: nicer messages for the usual suspects
            lowered = e.message.lower()
            if 'already exists' in lowered:
                e.message = f"A snapshot named '{snapname}' already exists"
            elif 'not supported' in lowered or 'snapshot feature' in lowered:
                e.message = 'Storage of this guest does not support snapshots'
            raise

    def delete_snapshot(self, node: str, vmid: int, vm_type: str, snapname: str):
        return self._api_delete(f'{self._guest_path(node, vmid, vm_type)}/snapshot/{snapname}')

    def rollback_snapshot(self, node: str, vmid: int, vm_type: str, snapname: str):
        return self._api_post(f'{self._guest_path(node, vmid, vm_type)}/snapshot/{snapname}/rollback')

    # =====================================================
    # CONSOLE
    # =====================================================

    def get_vnc_ticket(self, node: str, vmid: int, vm_type: str) -> dict:
        """vncproxy with websocket=1, ticket valid for a few seconds only"""
        self.logger.info(f"[VNC] Requesting ticket for {vm_type}/{vmid} on {node}")
        data = self._api_post(f'{self._guest_path(node, vmid, vm_type)}/vncproxy',
                              data={'websocket': 1}, timeout=30) or {}
        return {
            'ticket': data.get('ticket'),
            'port': data.get('port'),
            'user': data.get('user'),
            'upid': data.get('upid'),
        }

    def get_term_ticket(self, node: str, vmid: int, vm_type: str) -> dict:
        """termproxy - serial/xterm.js console"""
        self.logger.info(f"[Console] Requesting termproxy ticket for {vm_type}/{vmid} on {node}")
        data = self._api_post(f'{self._guest_path(node, vmid, vm_type)}/termproxy', timeout=30) or {}
        return {
            'ticket': data.get('ticket'),
            'port': data.get('port'),
            'user': data.get('user') or self.token_id.split('!')[0],
            'upid': data.get('upid'),
        }

    def console_ws_url(self, node: str, vmid: int, vm_type: str, port, ticket: str) -> str:
        """wss URL of the node console socket the relay connects to"""
        scheme = 'wss' if self.base_url.startswith('https') else 'ws'
        netloc = urlparse(self.base_url).netloc
        return (f"{scheme}://{netloc}/api2/json{self._guest_path(node, vmid, vm_type)}/vncwebsocket"
                f"?port={port}&vncticket={url_quote(ticket or '', safe='')}")

    def console_browser_url(self, node: str, vmid: int, vm_type: str, ticket: str) -> str:
        """direct PVE console page (noVNC / xterm.js) - for admins that can reach PVE"""
        scheme = urlparse(self.base_url).scheme
        netloc = urlparse(self.base_url).netloc
        encoded = url_quote(ticket or '', safe='')
        if vm_type == 'lxc':
            return f"{scheme}://{netloc}/?console=lxc&xtermjs=1&vmid={vmid}&node={node}&vncticket={encoded}"
        return f"{scheme}://{netloc}/?console=kvm&novnc=1&vmid={vmid}&node={node}&vncticket={encoded}"

    # =====================================================
    # STORAGE
    # =====================================================

    def get_storage_pools(self, node: str = None) -> list:
        if node:
            return [{**s, 'node': node} for s in (self._api_get(f'/nodes/{node}/storage') or [])]

        # all nodes, deduplicated by storage name (shared storage shows up on every node)
        pools = []
        seen = set()
        for n in self.get_nodes():
            try:
                for storage in self._api_get(f"/nodes/{n['node']}/storage") or []:
                    if storage.get('storage') not in seen:
                        seen.add(storage.get('storage'))
                        pools.append({**storage, 'node': n['node']})
            except ProxmoxError as e:
                self.logger.warning(f"Failed to get storage for node {n.get('node')}: {e.message}")
        return pools

    def get_storage_content(self, node: str, storage: str, content: str = None) -> list:
        params = {'content': content} if content else None
        return self._api_get(f'/nodes/{node}/storage/{storage}/content', params=params) or []

    def get_all_volumes(self) -> list:
        volumes = []
        for pool in self.get_storage_pools():
            pool_content = pool.get('content') or ''
            if 'images' not in pool_content and 'rootdir' not in pool_content:
                continue
            try:
                for vol in self.get_storage_content(pool['node'], pool['storage'], 'images'):
                    volumes.append({**vol, 'storage': pool['storage'], 'node': pool['node']})
            except ProxmoxError as e:
                self.logger.warning(f"Skipping pool {pool.get('storage')}: {e.message}")
        return volumes

    def create_volume(self, node: str, storage: str, filename: str, size: str,
                      vmid: int, fmt: str = 'raw'):
        return self._api_post(f'/nodes/{node}/storage/{storage}/content',
                              data={'filename': filename, 'size': size, 'format': fmt, 'vmid': vmid})

    def delete_volume(self, node: str, storage: str, volume: str):
        return self._api_delete(f"/nodes/{node}/storage/{storage}/content/{url_quote(volume, safe='')}")

    # =====================================================
    # NETWORK
    # =====================================================

    def get_network_interfaces(self, node: str) -> list:
        return [{**iface, 'node': node} for iface in (self._api_get(f'/nodes/{node}/network') or [])]

    def get_all_networks(self) -> list:
        interfaces = []
        for n in self.get_nodes():
            try:
                interfaces.extend(self.get_network_interfaces(n['node']))
            except ProxmoxError as e:
                self.logger.warning(f"Failed to get network for node {n.get('node')}: {e.message}")
        return interfaces

    def get_network_bridges(self) -> list:
        return [i for i in self.get_all_networks() if i.get('type') == 'bridge']

    # =====================================================
    # MONITORING
    # =====================================================

    @staticmethod
    def _check_timeframe(timeframe: str) -> str:
        if timeframe not in RRD_TIMEFRAMES:
            raise ValidationError(f"Invalid timeframe: {timeframe}. Use one of {', '.join(RRD_TIMEFRAMES)}")
        return timeframe

    def get_node_rrd(self, node: str, timeframe: str = 'hour') -> list:
        return self._api_get(f'/nodes/{node}/rrddata',
                             params={'timeframe': self._check_timeframe(timeframe)}) or []

    def get_vm_rrd(self, node: str, vmid: int, vm_type: str, timeframe: str = 'hour') -> list:
        return self._api_get(f'{self._guest_path(node, vmid, vm_type)}/rrddata',
                             params={'timeframe': self._check_timeframe(timeframe)}) or []

    def get_cluster_stats(self) -> dict:
        nodes = self.get_nodes()
        resources = self.get_resources()

        total_cpu = sum(n.get('maxcpu') or 0 for n in nodes)
        # node cpu is a 0..1 fraction of that node, weight by core count
        used_cpu = sum((n.get('cpu') or 0) * (n.get('maxcpu') or 0) for n in nodes)
        instances = [r for r in resources if not r.get('template')]

        return {
            'totalCpu': total_cpu,
            'usedCpu': used_cpu / total_cpu if total_cpu > 0 else 0,
            'totalMem': sum(n.get('maxmem') or 0 for n in nodes),
            'usedMem': sum(n.get('mem') or 0 for n in nodes),
            'totalDisk': sum(n.get('maxdisk') or 0 for n in nodes),
            'usedDisk': sum(n.get('disk') or 0 for n in nodes),
            'nodes': len(nodes),
            'instances': len(instances),
            'runningVms': len([r for r in instances if r.get('status') == 'running']),
        }

    # =====================================================
    # FIREWALL
    # =====================================================

    def _firewall_path(self, scope: str, node: str = None, vmid: int = None, vm_type: str = None) -> str:
        if scope == 'cluster':
            return '/cluster/firewall/rules'
        if scope == 'node':
            return f'/nodes/{node}/firewall/rules'
        return f'{self._guest_path(node, vmid, vm_type)}/firewall/rules'

    def get_cluster_firewall_rules(self) -> list:
        return self._api_get(self._firewall_path('cluster')) or []

    def get_node_firewall_rules(self, node: str) -> list:
        return [{**r, 'node': node} for r in (self._api_get(self._firewall_path('node', node)) or [])]

    def get_vm_firewall_rules(self, node: str, vmid: int, vm_type: str = 'qemu') -> list:
        rules = self._api_get(self._firewall_path('vm', node, vmid, vm_type)) or []
        return [{**r, 'node': node, 'vmid': vmid, 'vmtype': vm_type} for r in rules]

    def get_all_firewall_rules(self) -> list:
        rules = [{**r, 'scope': 'cluster'} for r in self.get_cluster_firewall_rules()]
        for node in self.get_nodes():
            try:
                rules.extend({**r, 'scope': 'node'} for r in self.get_node_firewall_rules(node['node']))
            except ProxmoxError as e:
                self.logger.warning(f"Failed to get firewall rules for node {node.get('node')}: {e.message}")
        for vm in self.get_resources():
            if vm.get('template'):
                continue
            try:
                rules.extend({**r, 'scope': 'vm'}
                             for r in self.get_vm_firewall_rules(vm['node'], vm['vmid'], vm.get('type', 'qemu')))
            except ProxmoxError as e:
                self.logger.warning(f"Failed to get firewall rules for {vm.get('type')}/{vm.get('vmid')}: {e.message}")
        return rules

    def create_firewall_rule(self, scope: str, rule: dict, node: str = None, vmid: int = None,
                             vm_type: str = None):
        return self._api_post(self._firewall_path(scope, node, vmid, vm_type), data=rule)

    def delete_firewall_rule(self, scope: str, pos: int, node: str = None, vmid: int = None,
                             vm_type: str = None):
        return self._api_delete(f'{self._firewall_path(scope, node, vmid, vm_type)}/{pos}')

    # =====================================================
    # BACKUPS (PVE side)
    # =====================================================

    def get_backup_jobs(self) -> list:
        return self._api_get('/cluster/backup') or []

    def create_backup_job(self, job: dict):
        return self._api_post('/cluster/backup', data=job)

    def delete_backup_job(self, job_id: str):
        return self._api_delete(f'/cluster/backup/{job_id}')

    def trigger_backup(self, node: str, vmid: int, storage: str, mode: str = 'snapshot'):
        return self._api_post(f'/nodes/{node}/vzdump', data={
            'vmid': vmid,
            'storage': storage,
            'mode': mode or 'snapshot',
            'compress': 'zstd',
        })

    def restore_backup(self, node: str, vmid: int, vm_type: str, archive: str, storage: str = None,
                       force: bool = False):
        endpoint = 'lxc' if vm_type == 'lxc' else 'qemu'
        data = {'vmid': vmid, 'archive': archive}
        if storage:
            data['storage'] = storage
        if force:
            data['force'] = 1
        if vm_type == 'lxc':
            # containers are restored through create with restore=1
            data['ostemplate'] = data.pop('archive')
            data['restore'] = 1
        return self._api_post(f'/nodes/{node}/{endpoint}', data=data)
