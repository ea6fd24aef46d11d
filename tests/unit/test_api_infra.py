"""Tests for storage, network, monitoring and firewall routes."""

import pytest

from cloudy.api.security import validate_rule
from cloudy.core.errors import ValidationError
from conftest import auth_headers, guest


def _two_nodes(proxmox):
    proxmox.responses[('GET', '/nodes')] = [
        {'node': 'pve1', 'maxcpu': 8, 'cpu': 0.5, 'maxmem': 1000, 'mem': 400, 'maxdisk': 10, 'disk': 5},
        {'node': 'pve2', 'maxcpu': 8, 'cpu': 0.0, 'maxmem': 1000, 'mem': 100, 'maxdisk': 10, 'disk': 1},
    ]


class TestStorage:
    def test_shared_pools_are_listed_once(self, client, proxmox, alice):
        _two_nodes(proxmox)
        proxmox.responses[('GET', '/nodes/pve1/storage')] = [{'storage': 'local', 'content': 'images'}]
        proxmox.responses[('GET', '/nodes/pve2/storage')] = [
            {'storage': 'local', 'content': 'images'}, {'storage': 'nfs', 'content': 'backup'},
        ]

        pools = client.get('/api/storage/pools', headers=auth_headers(alice)).get_json()

        assert [(p['storage'], p['node']) for p in pools] == [('local', 'pve1'), ('nfs', 'pve2')]

    def test_create_volume(self, client, proxmox, admin):
        proxmox.responses[('POST', '/nodes/pve1/storage/local/content')] = 'local:101/vm-101-disk-1.raw'

        response = client.post('/api/storage/volumes', headers=auth_headers(admin), json={
            'node': 'pve1', 'storage': 'local', 'filename': 'vm-101-disk-1.raw', 'size': '10g', 'vmid': 101,
        })

        assert response.status_code == 201
        assert response.get_json()['volid'] == 'local:101/vm-101-disk-1.raw'
        method, path, kwargs = proxmox.calls[-1]
        assert kwargs['data'] == {'filename': 'vm-101-disk-1.raw', 'size': '10G', 'format': 'raw', 'vmid': 101}

    def test_create_volume_validation(self, client, proxmox, admin, alice):
        body = {'node': 'pve1', 'storage': 'local', 'filename': 'disk.raw', 'size': '10G', 'vmid': 101}

        assert client.post('/api/storage/volumes', json=body, headers=auth_headers(alice)).status_code == 403
        assert client.post('/api/storage/volumes', json={**body, 'size': 'ten'},
                           headers=auth_headers(admin)).status_code == 400
        assert client.post('/api/storage/volumes', json={**body, 'format': 'iso'},
                           headers=auth_headers(admin)).status_code == 400
        assert client.post('/api/storage/volumes', json={**body, 'filename': '../etc'},
                           headers=auth_headers(admin)).status_code == 400

    def test_delete_volume_quotes_volid(self, client, proxmox, admin):
        response = client.delete('/api/storage/volumes?node=pve1&storage=local&volume=local:101/vm-101-disk-1.raw',
                                 headers=auth_headers(admin))

        assert response.status_code == 200
        assert proxmox.paths('DELETE') == ['/nodes/pve1/storage/local/content/local%3A101%2Fvm-101-disk-1.raw']


class TestNetwork:
    def test_bridges(self, client, proxmox, alice):
        proxmox.responses[('GET', '/nodes')] = [{'node': 'pve1'}]
        proxmox.responses[('GET', '/nodes/pve1/network')] = [
            {'iface': 'vmbr0', 'type': 'bridge'}, {'iface': 'eno1', 'type': 'eth'},
        ]

        bridges = client.get('/api/network/bridges', headers=auth_headers(alice)).get_json()

        assert bridges == [{'iface': 'vmbr0', 'type': 'bridge', 'node': 'pve1'}]

    def test_invalid_node(self, client, proxmox, alice):
        response = client.get('/api/network/interfaces/pve1;rm', headers=auth_headers(alice))

        assert response.status_code == 400


class TestMonitoring:
    def test_cluster_stats(self, client, proxmox, alice):
        _two_nodes(proxmox)
        proxmox.resources = [guest(101), guest(9000, template=True)]

        stats = client.get('/api/monitoring/cluster', headers=auth_headers(alice)).get_json()

        assert stats['totalCpu'] == 16
        assert stats['usedCpu'] == pytest.approx(0.25)
        assert stats['usedMem'] == 500

    def test_instance_rrd(self, client, proxmox, alice, bob):
        proxmox.resources = [guest(101, owner=alice['id']), guest(102, owner=bob['id'])]
        proxmox.responses[('GET', '/nodes/pve1/qemu/101/rrddata')] = [{'time': 1, 'cpu': 0.1}]
        headers = auth_headers(alice)

        own = client.get('/api/monitoring/instances/101/rrd?timeframe=day', headers=headers)
        other = client.get('/api/monitoring/instances/102/rrd', headers=headers)
        bad = client.get('/api/monitoring/instances/101/rrd?timeframe=decade', headers=headers)

        assert own.get_json() == [{'time': 1, 'cpu': 0.1}]
        rrd_call = [c for c in proxmox.calls if c[1] == '/nodes/pve1/qemu/101/rrddata'][0]
        assert rrd_call[2]['params'] == {'timeframe': 'day'}
        assert other.status_code == 403
        assert bad.status_code == 400


class TestFirewallRules:
    def test_validate_rule(self):
        rule = validate_rule({'type': 'IN', 'action': 'accept', 'proto': 'TCP', 'dport': '22, 80:90',
                              'source': '10.0.0.0/24'})

        assert rule == {'type': 'in', 'action': 'ACCEPT', 'proto': 'tcp', 'dport': '22,80:90',
                        'source': '10.0.0.0/24', 'enable': 1}

    @pytest.mark.parametrize('body', [
        {'type': 'sideways', 'action': 'ACCEPT'},
        {'type': 'in', 'action': 'ALLOW'},
        {'type': 'in', 'action': 'DROP', 'proto': 'smtp'},
        {'type': 'in', 'action': 'DROP', 'dport': '22;reboot'},
        {'type': 'out', 'action': 'DROP', 'dest': '$(whoami)'},
    ])
    def test_invalid_rules(self, body):
        with pytest.raises(ValidationError):
            validate_rule(body)

    def test_rules_are_admin_only(self, client, proxmox, alice):
        assert client.get('/api/security/rules', headers=auth_headers(alice)).status_code == 403

    def test_create_cluster_rule(self, client, proxmox, admin):
        response = client.post('/api/security/rules', headers=auth_headers(admin), json={
            'type': 'in', 'action': 'ACCEPT', 'proto': 'tcp', 'dport': '22',
        })

        assert response.status_code == 201
        method, path, kwargs = proxmox.calls[-1]
        assert (method, path) == ('POST', '/cluster/firewall/rules')
        assert kwargs['data']['dport'] == '22'

    def test_vm_scope_needs_node(self, client, proxmox, admin):
        response = client.post('/api/security/rules', headers=auth_headers(admin), json={
            'scope': 'vm', 'vmid': 101, 'type': 'in', 'action': 'DROP',
        })

        assert response.status_code == 400

    def test_delete_node_rule(self, client, proxmox, admin):
        response = client.delete('/api/security/rules/3?scope=node&node=pve1', headers=auth_headers(admin))

        assert response.status_code == 200
        assert proxmox.paths('DELETE') == ['/nodes/pve1/firewall/rules/3']
