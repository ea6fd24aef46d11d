"""Tests for the Proxmox VE and PBS clients."""

from unittest.mock import patch, MagicMock

import pytest
import requests

from cloudy.core.errors import ProxmoxError, ValidationError
from cloudy.core.pbs import PBSClient
from cloudy.core.proxmox import ProxmoxClient, normalize_base_url, has_owner_tag, owner_tag
from conftest import FakeProxmox, guest


def _response(status=200, data=None, body=None):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = body if body is not None else {'data': data}
    response.text = ''
    response.reason = ''
    return response


class TestHelpers:
    @pytest.mark.parametrize('host,expected', [
        ('pve1', 'https://pve1:8006'),
        ('pve1:9000', 'https://pve1:9000'),
        ('https://10.0.0.5:8006/', 'https://10.0.0.5:8006'),
        ('http://pve1', 'http://pve1:8006'),
    ])
    def test_normalize_base_url(self, host, expected):
        assert normalize_base_url(host) == expected

    def test_normalize_rejects_garbage(self):
        with pytest.raises(ValidationError):
            normalize_base_url('')
        with pytest.raises(ValidationError):
            normalize_base_url('ftp://pve1')

    def test_owner_tag(self):
        assert owner_tag('abc') == 'owner-abc'
        assert has_owner_tag({'tags': 'web;owner-abc'}, 'abc')
        assert has_owner_tag({'tags': 'owner-abc,web'}, 'abc')
        assert not has_owner_tag({'tags': 'owner-abcd'}, 'abc')
        assert not has_owner_tag({}, 'abc')


class TestRequestHandling:
    def _client(self):
        return ProxmoxClient('pve1', 'root@pam!cloudy', 'secret')

    def test_auth_header(self):
        assert self._client().auth_header == 'PVEAPIToken=root@pam!cloudy=secret'
        assert PBSClient('pbs1', 'backup@pbs!cloudy', 'secret').auth_header == \
            'PBSAPIToken=backup@pbs!cloudy:secret'

    def test_pbs_default_port(self):
        assert PBSClient('pbs1', 'id', 'secret').base_url == 'https://pbs1:8007'

    def test_data_envelope_is_unwrapped(self):
        client = self._client()
        session = MagicMock()
        session.request.return_value = _response(data=[{'node': 'pve1'}])

        with patch.object(client, '_create_session', return_value=session):
            assert client.get_nodes() == [{'node': 'pve1'}]

        method, url = session.request.call_args[0]
        assert method == 'GET'
        assert url == 'https://pve1:8006/api2/json/nodes'
        assert client.is_connected

    def test_error_status_raises(self):
        client = self._client()
        session = MagicMock()
        session.request.return_value = _response(403, body={'message': 'Permission check failed\n'})

        with patch.object(client, '_create_session', return_value=session):
            with pytest.raises(ProxmoxError) as exc:
                client.get_nodes()

        assert exc.value.status == 403
        assert exc.value.message == 'Permission check failed'
        assert exc.value.status_code == 502

    def test_parameter_errors_are_joined(self):
        client = self._client()
        session = MagicMock()
        session.request.return_value = _response(400, body={'errors': {'cores': 'invalid'}})

        with patch.object(client, '_create_session', return_value=session):
            with pytest.raises(ProxmoxError) as exc:
                client.get_nodes()

        assert exc.value.message == 'cores: invalid'

    def test_unreachable(self):
        client = self._client()
        session = MagicMock()
        session.request.side_effect = requests.exceptions.ConnectionError('refused')

        with patch.object(client, '_create_session', return_value=session):
            with pytest.raises(ProxmoxError) as exc:
                client.get_nodes()

        assert exc.value.code == 'PROXMOX_UNAVAILABLE'
        assert exc.value.status_code == 503

    def test_timeout(self):
        client = self._client()
        session = MagicMock()
        session.request.side_effect = requests.exceptions.ReadTimeout('slow')

        with patch.object(client, '_create_session', return_value=session):
            with pytest.raises(ProxmoxError) as exc:
                client.get_nodes()

        assert exc.value.code == 'PROXMOX_TIMEOUT'
        assert exc.value.status_code == 504

    def test_test_connection(self):
        with patch.object(ProxmoxClient, 'get_nodes', return_value=[{'node': 'a'}, {'node': 'b'}]):
            result = ProxmoxClient.test_connection('pve1', 'id', 'secret')

        assert result == {'success': True, 'message': 'Connected successfully! Found 2 node(s).', 'nodes': 2}

    def test_test_connection_never_raises(self):
        result = ProxmoxClient.test_connection('', 'id', 'secret')

        assert result['success'] is False
        assert result['message'].startswith('Connection failed:')


class TestInstances:
    def test_list_excludes_templates(self):
        client = FakeProxmox([guest(101, status='stopped'), guest(9000, template=True)])

        instances = client.list_instances()

        assert [i['vmid'] for i in instances] == [101]
        assert instances[0]['ip'] is None
        assert [t['vmid'] for t in client.list_templates()] == [9000]

    def test_running_guest_ip_lookup(self):
        client = FakeProxmox([guest(101)])
        client.responses[('GET', '/nodes/pve1/qemu/101/agent/network-get-interfaces')] = {'result': [
            {'name': 'lo', 'ip-addresses': [{'ip-address': '127.0.0.1', 'ip-address-type': 'ipv4'}]},
            {'name': 'eth0', 'ip-addresses': [
                {'ip-address': 'fe80::1', 'ip-address-type': 'ipv6'},
                {'ip-address': '10.0.0.7', 'ip-address-type': 'ipv4'},
            ]},
        ]}

        assert client.list_instances()[0]['ip'] == '10.0.0.7'

    def test_user_usage_counts_owned_guests_only(self):
        client = FakeProxmox([
            guest(101, owner='u1', cores=2, memory_mb=2048, disk_gb=20),
            guest(102, owner='u1', cores=1, memory_mb=1024, disk_gb=10, status='stopped'),
            guest(103, owner='u2', cores=8),
            guest(9000, owner='u1', template=True),
        ])

        assert client.get_user_usage('u1') == {'instances': 2, 'cpu': 3, 'memory': 3072, 'disk': 30}

    def test_find_instance(self):
        client = FakeProxmox([guest(101), guest(102, node='pve2')])

        assert client.find_instance(102)['node'] == 'pve2'
        assert client.find_instance(999) is None

    def test_lxc_reset_is_rejected(self):
        with pytest.raises(ValidationError):
            FakeProxmox().vm_action('pve1', 105, 'lxc', 'reset')

    def test_force_stop_uses_zero_timeout(self):
        client = FakeProxmox()

        client.vm_action('pve1', 101, 'qemu', 'stop', force=True)

        method, path, kwargs = client.calls[-1]
        assert (method, path) == ('POST', '/nodes/pve1/qemu/101/status/stop')
        assert kwargs['data'] == {'timeout': 0}

    def test_create_instance_retries_config(self):
        client = FakeProxmox()
        client.responses[('POST', '/nodes/pve1/qemu/9000/clone')] = 'UPID:clone'
        attempts = []

        def flaky_update(node, vmid, vm_type, payload):
            attempts.append(payload)
            if len(attempts) < 3:
                raise ProxmoxError("can't lock file '/var/lock/qemu-server/lock-1001.conf'", status=500)

        client.update_config = flaky_update
        result = client.create_instance('pve1', 9000, 'qemu', 'web', 2, 2048, tags='owner-u1',
                                        username='ubuntu', sshkeys='ssh-ed25519 AAA user@host')

        assert result == {'vmid': 1001, 'task': 'UPID:clone', 'config_applied': True}
        assert len(attempts) == 3
        assert attempts[0]['tags'] == 'owner-u1'
        assert attempts[0]['ciuser'] == 'ubuntu'
        assert attempts[0]['sshkeys'] == 'ssh-ed25519%20AAA%20user%40host'

    def test_create_instance_gives_up_after_all_retries(self):
        client = FakeProxmox()

        def always_locked(node, vmid, vm_type, payload):
            raise ProxmoxError('locked', status=500)

        client.update_config = always_locked
        result = client.create_instance('pve1', 9000, 'lxc', 'ct', 1, 512)

        assert result['config_applied'] is False

    def test_clone_uses_hostname_for_lxc(self):
        client = FakeProxmox()

        client.clone('pve1', 9001, 'lxc', 1001, 'ct')

        method, path, kwargs = client.calls[-1]
        assert path == '/nodes/pve1/lxc/9001/clone'
        assert kwargs['data'] == {'newid': 1001, 'full': 1, 'hostname': 'ct'}

    def test_snapshots_hide_current(self):
        client = FakeProxmox()
        client.responses[('GET', '/nodes/pve1/qemu/101/snapshot')] = [
            {'name': 'before-upgrade'}, {'name': 'current'},
        ]

        assert client.get_snapshots('pve1', 101, 'qemu') == [{'name': 'before-upgrade'}]

    def test_duplicate_snapshot_message(self):
        client = FakeProxmox()
        client.responses[('POST', '/nodes/pve1/qemu/101/snapshot')] = ProxmoxError(
            "snapshot name 'snap1' already exists", status=500)

        with pytest.raises(ProxmoxError) as exc:
            client.create_snapshot('pve1', 101, 'qemu', 'snap1')

        assert exc.value.message == "A snapshot named 'snap1' already exists"

    def test_console_urls(self):
        client = FakeProxmox()

        ws_url = client.console_ws_url('pve1', 101, 'qemu', 5900, 'PVEVNC:a+b')
        browser_url = client.console_browser_url('pve1', 105, 'lxc', 'T')

        assert ws_url == ('wss://pve.test:8006/api2/json/nodes/pve1/qemu/101/vncwebsocket'
                          '?port=5900&vncticket=PVEVNC%3Aa%2Bb')
        assert browser_url.startswith('https://pve.test:8006/?console=lxc&xtermjs=1&vmid=105')
