# -*- coding: utf-8 -*-
"""
Cloudy Audit Logging - Layer 3
"""

import json
import logging
import math
from datetime import datetime, timedelta

from flask import request, has_request_context

from cloudy.constants import AUDIT_RETENTION_DAYS, AUDIT_MAX_PAGE_SIZE
from cloudy.core.db import get_db

STATUS_SUCCESS = 'SUCCESS'
STATUS_ERROR = 'ERROR'

# action prefix -> category shown in the admin log view
CATEGORIES = {
    'user': 'AUTH',
    'auth': 'AUTH',
    'token': 'AUTH',
    'instance': 'COMPUTE',
    'snapshot': 'COMPUTE',
    'console': 'COMPUTE',
    'volume': 'STORAGE',
    'firewall': 'SECURITY',
    'backup': 'BACKUP',
    'billing': 'BILLING',
    'share': 'SHARING',
    'settings': 'SYSTEM',
    'setup': 'SYSTEM',
}


def category_for(action: str) -> str:
    return CATEGORIES.get((action or '').split('.', 1)[0], 'SYSTEM')


def log_audit(user: str, action: str, details=None, ip_address: str = None, *,
              user_id: str = None, category: str = None, status: str = STATUS_SUCCESS,
              target_id=None, target_name: str = None, target_type: str = None,
              error_message: str = None):
    """Add an entry to the audit log

    never raises - a broken audit write must not break the action that triggered it
    """
    if details is not None and not isinstance(details, str):
        details = json.dumps(details, default=str, sort_keys=True)

    entry = {
        'timestamp': datetime.now().isoformat(),
        'user': user,
        'user_id': user_id,
        'action': action,
        'category': category or category_for(action),
        'status': status,
        'target_id': str(target_id) if target_id is not None else None,
        'target_name': target_name,
        'target_type': target_type,
        'details': details,
        'error_message': error_message,
        'ip_address': ip_address or get_client_ip(),
        'user_agent': request.headers.get('User-Agent', '')[:200] if has_request_context() else None,
    }

    try:
        get_db().add_audit_entry(entry)
    except Exception as e:
        logging.error(f"Failed to save audit entry to database: {e}")

    target_info = f" [{target_type}:{target_id}]" if target_id is not None else ""
    logging.info(f"Audit: {user} - {action}{target_info} - {status} - {details}")


def log_request_audit(action: str, details=None, **kwargs):
    """log_audit with the user taken from the authenticated request"""
    session = getattr(request, 'session', None) or {}
    log_audit(session.get('user'), action, details, user_id=session.get('user_id'), **kwargs)


def get_logs(category: str = None, action: str = None, status: str = None, user: str = None,
             search: str = None, date_from: str = None, date_to: str = None,
             page: int = 1, limit: int = 50) -> dict:
    """filtered + paginated audit log, newest first"""
    page = max(1, int(page or 1))
    limit = max(1, min(AUDIT_MAX_PAGE_SIZE, int(limit or 50)))

    conditions = []
    params = []
    if category:
        conditions.append('category = ?')
        params.append(category)
    if action:
        conditions.append('action = ?')
        params.append(action)
    if status:
        conditions.append('status = ?')
        params.append(status)
    if user:
        conditions.append('(user = ? OR user_id = ?)')
        params.extend([user, user])
    if search:
        conditions.append('(target_name LIKE ? OR user LIKE ? OR target_id LIKE ?)')
        like = f'%{search}%'
        params.extend([like, like, like])
    if date_from:
        conditions.append('timestamp >= ?')
        params.append(date_from)
    if date_to:
        # bare dates are inclusive of the whole day
        if len(date_to) == 10:
            date_to = f"{date_to}T23:59:59.999999"
        conditions.append('timestamp <= ?')
        params.append(date_to)

    where = (' WHERE ' + ' AND '.join(conditions)) if conditions else ''
    db = get_db()
    total = db.query_one(f'SELECT COUNT(*) AS n FROM audit_log{where}', tuple(params))['n']
    rows = db.query(f'SELECT * FROM audit_log{where} ORDER BY id DESC LIMIT ? OFFSET ?',
                    tuple(params) + (limit, (page - 1) * limit))

    return {
        'logs': [_format_entry(row) for row in rows],
        'pagination': {
            'page': page,
            'limit': limit,
            'total': total,
            'totalPages': math.ceil(total / limit) if total else 0,
        },
    }


def get_stats() -> dict:
    db = get_db()
    now = datetime.now()
    day_ago = (now - timedelta(days=1)).isoformat()
    week_ago = (now - timedelta(days=7)).isoformat()

    by_category = {
        row['category'] or 'SYSTEM': row['n']
        for row in db.query('SELECT category, COUNT(*) AS n FROM audit_log GROUP BY category')
    }
    recent = db.query('SELECT * FROM audit_log ORDER BY id DESC LIMIT 10')

    return {
        'totalLogs': db.query_one('SELECT COUNT(*) AS n FROM audit_log')['n'],
        'last24hCount': db.query_one('SELECT COUNT(*) AS n FROM audit_log WHERE timestamp >= ?', (day_ago,))['n'],
        'last7dCount': db.query_one('SELECT COUNT(*) AS n FROM audit_log WHERE timestamp >= ?', (week_ago,))['n'],
        'errorCount': db.query_one('SELECT COUNT(*) AS n FROM audit_log WHERE status = ?', (STATUS_ERROR,))['n'],
        'byCategory': by_category,
        'recentLogs': [_format_entry(row) for row in recent],
    }


def _format_entry(row) -> dict:
    entry = dict(row)
    details = entry.get('details')
    if details:
        try:
            details = json.loads(details)
        except (TypeError, ValueError):
            pass
    return {
        'id': entry['id'],
        'timestamp': entry['timestamp'],
        'action': entry['action'],
        'category': entry.get('category'),
        'status': entry.get('status'),
        'userId': entry.get('user_id'),
        'username': entry.get('user'),
        'targetId': entry.get('target_id'),
        'targetName': entry.get('target_name'),
        'targetType': entry.get('target_type'),
        'details': details,
        'errorMessage': entry.get('error_message'),
        'ipAddress': entry.get('ip_address'),
        'userAgent': entry.get('user_agent'),
    }


def cleanup_audit_log():
    """Remove audit entries older than retention period"""
    try:
        deleted = get_db().cleanup_audit_log(days=AUDIT_RETENTION_DAYS)
        if deleted > 0:
            logging.info(f"Cleaned up {deleted} old audit log entries")
    except Exception as e:
        logging.error(f"Failed to cleanup audit log: {e}")


def _is_loopback(addr):
    return addr in ('127.0.0.1', '::1')


def get_client_ip():
    """client IP - only trust X-Forwarded-For from loopback (reverse proxy)"""
    if not has_request_context():
        return 'system'
    if _is_loopback(request.remote_addr):
        if request.headers.get('X-Forwarded-For'):
            return request.headers.get('X-Forwarded-For').split(',')[0].strip()
        elif request.headers.get('X-Real-IP'):
            return request.headers.get('X-Real-IP')
    return request.remote_addr
