# -*- coding: utf-8 -*-
"""
Cloudy PBS Client - Layer 5
Proxmox Backup Server API, read mostly. Same request handling as ProxmoxClient.
"""

import logging

from cloudy.constants import PBS_DEFAULT_PORT, PROXMOX_API_TIMEOUT
from cloudy.core.errors import ProxmoxError
from cloudy.core.proxmox import ProxmoxClient, normalize_base_url


class PBSClient(ProxmoxClient):
    """PBS speaks the same api2/json dialect, only the auth header differs"""

    def __init__(self, base_url: str, token_id: str, token_secret: str,
                 verify_ssl: bool = False, timeout: int = PROXMOX_API_TIMEOUT):
        super().__init__(normalize_base_url(base_url, PBS_DEFAULT_PORT), token_id, token_secret,
                         verify_ssl=verify_ssl, timeout=timeout)
        self.logger = logging.getLogger('cloudy.pbs')

    @property
    def auth_header(self) -> str:
        # PBS separates id and secret with ':' instead of '='
        return f'PBSAPIToken={self.token_id}:{self._token_secret}'

    def get_status(self) -> dict:
        """never raises - dashboard widget"""
        try:
            version = self._api_get('/version') or {}
        except ProxmoxError as e:
            logging.warning(f"[PBS] Status check failed: {e.message}")
            return {'configured': True, 'online': False, 'error': e.message}
        return {
            'configured': True,
            'online': True,
            'version': version.get('version'),
            'release': version.get('release'),
        }

    def get_datastores(self) -> list:
        datastores = []
        for ds in self._api_get('/admin/datastore') or []:
            name = ds.get('store') or ds.get('name')
            entry = {**ds, 'name': name}
            try:
                entry['status'] = self._api_get(f'/admin/datastore/{name}/status')
            except ProxmoxError as e:
                logging.warning(f"[PBS] Could not get status of datastore {name}: {e.message}")
                entry['status'] = None
            datastores.append(entry)
        return datastores

    def get_groups(self, datastore: str) -> list:
        return self._api_get(f'/admin/datastore/{datastore}/groups') or []

    def get_snapshots(self, datastore: str, backup_type: str = None, backup_id: str = None) -> list:
        params = {}
        if backup_type:
            params['backup-type'] = backup_type
        if backup_id:
            params['backup-id'] = backup_id
        return self._api_get(f'/admin/datastore/{datastore}/snapshots', params=params or None) or []

    def delete_snapshot(self, datastore: str, backup_type: str, backup_id: str, backup_time: int):
        logging.info(f"[PBS] Deleting snapshot {backup_type}/{backup_id}/{backup_time} in {datastore}")
        return self._api_delete(f'/admin/datastore/{datastore}/snapshots', params={
            'backup-type': backup_type,
            'backup-id': backup_id,
            'backup-time': backup_time,
        })
