# -*- coding: utf-8 -*-
"""
Cloudy Instance Sharing - Layer 4
Grants another user READONLY / MAINTENANCE / ADMIN access to one guest.
"""

import uuid
import logging
from datetime import datetime, timezone

from cloudy.core.db import get_db
from cloudy.core.errors import NotFoundError, PermissionDeniedError, ValidationError
from cloudy.models.permissions import SHARE_LEVELS, share_allows


def _now() -> str:
    return datetime.now().isoformat()


def _to_utc(value) -> datetime:
    """ISO string -> aware UTC datetime, naive input counts as server local time"""
    parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    return parsed.astimezone(timezone.utc)


def _is_expired(expires_at) -> bool:
    if not expires_at:
        return False
    try:
        return _to_utc(expires_at) <= datetime.now(timezone.utc)
    except ValueError:
        # unparseable expiry - treat as expired rather than forever
        return True


def _user_info(user) -> dict:
    if not user:
        return None
    return {'id': user['id'], 'username': user['username'], 'email': user['email']}


def _to_dict(row, with_user: str = None) -> dict:
    share = {
        'id': row['id'],
        'vmid': row['vmid'],
        'node': row['node'],
        'vmType': row['vm_type'],
        'vmName': row['vm_name'],
        'ownerId': row['owner_id'],
        'sharedWithId': row['shared_with_id'],
        'permission': row['permission'],
        'expiresAt': row['expires_at'],
        'expired': _is_expired(row['expires_at']),
        'createdAt': row['created_at'],
    }
    if with_user:
        db = get_db()
        user_id = row['shared_with_id'] if with_user == 'sharedWith' else row['owner_id']
        share[with_user] = _user_info(db.get_user(user_id))
    return share


def _parse_expiry(expires_at):
    if not expires_at:
        return None
    try:
        return _to_utc(expires_at).isoformat()
    except ValueError:
        raise ValidationError('expiresAt must be an ISO date')


def share_instance(owner: dict, vmid: int, node: str, email: str, permission: str,
                   vm_type: str = 'qemu', vm_name: str = None, expires_at=None,
                   is_owner: bool = True) -> dict:
    """create or update a share; owner is the acting user

    is_owner is decided by the caller (owner tag on the guest, or admin)
    """
    permission = (permission or '').upper()
    if permission not in SHARE_LEVELS:
        raise ValidationError(f"Invalid permission: {permission}")
    if not is_owner:
        raise PermissionDeniedError('Only the owner can share this instance')

    db = get_db()
    target = db.get_user_by_email((email or '').strip().lower())
    if not target:
        raise NotFoundError('User not found')
    if target['id'] == owner['id']:
        raise ValidationError('You cannot share an instance with yourself')

    expires = _parse_expiry(expires_at)
    existing = db.query_one('SELECT id FROM instance_shares WHERE vmid = ? AND node = ? AND shared_with_id = ?',
                            (vmid, node, target['id']))
    if existing:
        share_id = existing['id']
        db.execute('UPDATE instance_shares SET permission = ?, expires_at = ?, vm_name = ?, vm_type = ? WHERE id = ?',
                   (permission, expires, vm_name, vm_type, share_id))
    else:
        share_id = str(uuid.uuid4())
        db.execute('''
            INSERT INTO instance_shares (id, vmid, node, vm_type, vm_name, owner_id, shared_with_id,
                                         permission, expires_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (share_id, vmid, node, vm_type, vm_name, owner['id'], target['id'], permission, expires, _now()))

    logging.info(f"[Sharing] {owner['username']} shared {vm_type}/{vmid}@{node} with {target['username']} ({permission})")
    return _to_dict(db.query_one('SELECT * FROM instance_shares WHERE id = ?', (share_id,)), 'sharedWith')


def revoke_share(share_id: str, user_id: str, is_admin: bool = False) -> dict:
    db = get_db()
    row = db.query_one('SELECT * FROM instance_shares WHERE id = ?', (share_id,))
    if not row:
        raise NotFoundError('Share not found')
    if row['owner_id'] != user_id and not is_admin:
        raise PermissionDeniedError('Only the owner can revoke this share')
    db.execute('DELETE FROM instance_shares WHERE id = ?', (share_id,))
    logging.info(f"[Sharing] Share {share_id} on {row['vmid']}@{row['node']} revoked")
    return _to_dict(row)


def get_my_shares(user_id: str) -> list:
    rows = get_db().query('SELECT * FROM instance_shares WHERE owner_id = ? ORDER BY created_at DESC', (user_id,))
    return [_to_dict(r, 'sharedWith') for r in rows]


def get_shared_with_me(user_id: str) -> list:
    rows = get_db().query('SELECT * FROM instance_shares WHERE shared_with_id = ? ORDER BY created_at DESC',
                          (user_id,))
    return [_to_dict(r, 'owner') for r in rows if not _is_expired(r['expires_at'])]


def get_instance_shares(vmid: int, node: str = None) -> list:
    if node:
        rows = get_db().query('SELECT * FROM instance_shares WHERE vmid = ? AND node = ?', (vmid, node))
    else:
        rows = get_db().query('SELECT * FROM instance_shares WHERE vmid = ?', (vmid,))
    return [_to_dict(r, 'sharedWith') for r in rows]


def get_share_permission(user_id: str, vmid: int, node: str):
    """granted level for user on the guest, None if no live share"""
    row = get_db().query_one('SELECT * FROM instance_shares WHERE vmid = ? AND node = ? AND shared_with_id = ?',
                             (vmid, node, user_id))
    if not row or _is_expired(row['expires_at']):
        return None
    return row['permission']


def has_permission(user_id: str, vmid: int, node: str, required: str) -> bool:
    granted = get_share_permission(user_id, vmid, node)
    return granted is not None and share_allows(granted, required)


def shared_instance_keys(user_id: str) -> set:
    """{(vmid, node)} of live shares - used to filter the instance list"""
    return {(s['vmid'], s['node']) for s in get_shared_with_me(user_id)}


def remove_instance_shares(vmid: int, node: str) -> int:
    cursor = get_db().execute('DELETE FROM instance_shares WHERE vmid = ? AND node = ?', (vmid, node))
    return cursor.rowcount


def search_users(query: str, exclude_user_id: str) -> list:
    query = (query or '').strip().lower()
    if len(query) < 2:
        return []
    # wildcards in the input are literal characters
    escaped = query.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    like = f'%{escaped}%'
    rows = get_db().query(r'''
        SELECT id, username, email FROM users
        WHERE (LOWER(email) LIKE ? ESCAPE '\' OR LOWER(username) LIKE ? ESCAPE '\') AND id != ? AND enabled = 1
        ORDER BY username LIMIT 10
    ''', (like, like, exclude_user_id))
    return [{'id': r['id'], 'username': r['username'], 'email': r['email']} for r in rows]
