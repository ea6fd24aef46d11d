# -*- coding: utf-8 -*-
"""
Cloudy Notifications - Layer 4
Per-user in-app notifications (bell icon in the dashboard).
"""

import uuid
import logging
from datetime import datetime

from cloudy.constants import NOTIFICATION_LIST_LIMIT
from cloudy.core.db import get_db
from cloudy.core.errors import NotFoundError, ValidationError

TYPES = ('info', 'success', 'warning', 'error')


def _to_dict(row) -> dict:
    return {
        'id': row['id'],
        'title': row['title'],
        'message': row['message'],
        'type': row['type'],
        'read': bool(row['read']),
        'createdAt': row['created_at'],
    }


def create(user_id: str, title: str, message: str, type: str = 'info') -> dict:
    if type not in TYPES:
        raise ValidationError(f"Invalid notification type: {type}")
    notification_id = str(uuid.uuid4())
    db = get_db()
    db.execute('INSERT INTO notifications (id, user_id, title, message, type, read, created_at) '
               'VALUES (?, ?, ?, ?, ?, 0, ?)',
               (notification_id, user_id, title, message, type, datetime.now().isoformat()))
    return _to_dict(db.query_one('SELECT * FROM notifications WHERE id = ?', (notification_id,)))


def notify(user_id: str, title: str, message: str, type: str = 'info'):
    """fire and forget variant used by the api routes"""
    if not user_id:
        return None
    try:
        return create(user_id, title, message, type)
    except Exception as e:
        logging.error(f"[Notify] Could not store notification for {user_id}: {e}")
        return None


def list_for_user(user_id: str, limit: int = NOTIFICATION_LIST_LIMIT) -> dict:
    db = get_db()
    rows = db.query('SELECT * FROM notifications WHERE user_id = ? ORDER BY created_at DESC LIMIT ?',
                    (user_id, limit))
    unread = db.query_one('SELECT COUNT(*) AS n FROM notifications WHERE user_id = ? AND read = 0',
                          (user_id,))['n']
    return {'notifications': [_to_dict(r) for r in rows], 'unread': unread}


def mark_read(user_id: str, notification_id: str):
    cursor = get_db().execute('UPDATE notifications SET read = 1 WHERE id = ? AND user_id = ?',
                              (notification_id, user_id))
    if cursor.rowcount == 0:
        raise NotFoundError('Notification not found')


def mark_all_read(user_id: str) -> int:
    cursor = get_db().execute('UPDATE notifications SET read = 1 WHERE user_id = ? AND read = 0', (user_id,))
    return cursor.rowcount


def delete(user_id: str, notification_id: str):
    cursor = get_db().execute('DELETE FROM notifications WHERE id = ? AND user_id = ?',
                              (notification_id, user_id))
    if cursor.rowcount == 0:
        raise NotFoundError('Notification not found')
