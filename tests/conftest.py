"""Pytest configuration and shared fixtures."""

import pytest

from cloudy import constants
from cloudy import globals as g
from cloudy.core import db as db_module
from cloudy.core.proxmox import ProxmoxClient, owner_tag
from cloudy.utils.auth import hash_password, create_session


class FakeProxmox(ProxmoxClient):
    """real client with the HTTP layer replaced by canned answers

    responses maps (method, path) -> data, every call is recorded in calls
    """

    def __init__(self, resources=None):
        super().__init__('pve.test', 'root@pam!cloudy', 'secret')
        self.resources = list(resources or [])
        self.responses = {}
        self.calls = []
        self.next_vmid = 1001
        self._sleep = lambda seconds: None

    def _call(self, method, path, **kwargs):
        self.calls.append((method, path, kwargs))
        if path == '/cluster/resources':
            return self.resources
        if path == '/cluster/nextid':
            return self.next_vmid
        response = self.responses.get((method, path))
        if isinstance(response, Exception):
            raise response
        return response

    def paths(self, method=None):
        return [p for m, p, _ in self.calls if method is None or m == method]


def guest(vmid, node='pve1', owner=None, vm_type='qemu', template=False, status='running',
          cores=1, memory_mb=1024, disk_gb=20, name=None):
    """one /cluster/resources entry"""
    return {
        'vmid': vmid,
        'node': node,
        'type': vm_type,
        'name': name or f'guest{vmid}',
        'status': status,
        'template': 1 if template else 0,
        'tags': owner_tag(owner) if owner else '',
        'maxcpu': cores,
        'maxmem': memory_mb * 1024 * 1024,
        'maxdisk': disk_gb * 1024 * 1024 * 1024,
    }


@pytest.fixture(autouse=True)
def temp_config_dir(tmp_path, monkeypatch):
    """every test gets its own database + key file"""
    monkeypatch.setattr(constants, 'CONFIG_DIR', str(tmp_path))
    monkeypatch.setattr(constants, 'DATABASE_FILE', str(tmp_path / 'cloudy.db'))
    monkeypatch.setattr(constants, 'KEY_FILE', str(tmp_path / '.cloudy.key'))
    monkeypatch.setattr(constants, 'WEB_DIR', str(tmp_path / 'web'))
    monkeypatch.delenv('PROXMOX_API_URL', raising=False)
    monkeypatch.delenv('PROXMOX_API_TOKEN', raising=False)
    monkeypatch.delenv('PBS_API_URL', raising=False)
    monkeypatch.delenv('PBS_API_TOKEN', raising=False)
    db_module.reset_db()
    g.reset_state()
    yield tmp_path
    db_module.reset_db()
    g.reset_state()


@pytest.fixture
def db():
    return db_module.get_db()


@pytest.fixture
def app():
    from cloudy.app import create_app
    app = create_app()
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(db):
    """create a user straight in the database, returns the user dict"""
    def _make(username, role='USER', password='Secret123', **fields):
        salt, password_hash = hash_password(password)
        user = db.create_user(username, f'{username}@example.com', salt, password_hash,
                              role=role, email_verified=True)
        if fields:
            user = db.update_user(user['id'], **fields)
        return user
    return _make


def auth_headers(user):
    return {'X-Session-ID': create_session(user)}


@pytest.fixture
def admin(make_user):
    return make_user('admin', role='ADMIN')


@pytest.fixture
def alice(make_user):
    return make_user('alice')


@pytest.fixture
def bob(make_user):
    return make_user('bob')


@pytest.fixture
def proxmox():
    """FakeProxmox installed as the cached client"""
    fake = FakeProxmox()
    g.proxmox_client = fake
    return fake
