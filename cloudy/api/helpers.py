# -*- coding: utf-8 -*-
"""shared helpers for all api routes - settings, error responses, client lookup"""

import logging

from flask import jsonify, request

from cloudy.constants import (
    SESSION_TIMEOUT, LOGIN_MAX_ATTEMPTS, LOGIN_LOCKOUT_TIME, LOGIN_ATTEMPT_WINDOW,
    BILLING_INTERVAL,
)
from cloudy.core.db import get_db
from cloudy.core.errors import CloudyError, ProxmoxError


def load_server_settings():
    """Load server settings from SQLite, merged over the defaults"""
    defaults = {
        # Brute force protection
        'login_max_attempts': LOGIN_MAX_ATTEMPTS,
        'login_lockout_time': LOGIN_LOCKOUT_TIME,
        'login_attempt_window': LOGIN_ATTEMPT_WINDOW,
        # Password policy
        'password_min_length': 8,
        'password_require_uppercase': True,
        'password_require_lowercase': True,
        'password_require_numbers': True,
        'password_require_special': False,
        'session_timeout': SESSION_TIMEOUT,
        # Auth providers
        'enable_local_auth': True,
        'enable_discord_auth': False,
        'require_email_verification': False,
        # Billing - NS: off until an admin sets up pricing
        'billing_enabled': False,
        'billing_interval': BILLING_INTERVAL,
        # SMTP
        'smtp_host': '',
        'smtp_port': 587,
        'smtp_user': '',
        'smtp_password': '',  # stored encrypted
        'smtp_secure': False,
        'mail_from': '',
        # URLs
        'frontend_url': '',
        'api_url': '',
        'setup_completed': False,
    }

    try:
        db = get_db()
        saved = db.get_server_settings()
        if saved:
            # merge so new fields are always present
            return {**defaults, **saved}
    except Exception as e:
        logging.error(f"Error loading server settings from database: {e}")

    return defaults


def save_server_settings(settings):
    try:
        db = get_db()
        db.save_server_settings(settings)
        return True
    except Exception as e:
        logging.error(f"Error saving server settings: {e}")
        return False


def get_session_timeout():
    return load_server_settings().get('session_timeout', SESSION_TIMEOUT)


def get_login_settings():
    # MK: pulled these out to be configurable via settings
    settings = load_server_settings()
    return {
        'max_attempts': settings.get('login_max_attempts', LOGIN_MAX_ATTEMPTS),
        'lockout_time': settings.get('login_lockout_time', LOGIN_LOCKOUT_TIME),
        'attempt_window': settings.get('login_attempt_window', LOGIN_ATTEMPT_WINDOW),
    }


def safe_error(e, default_msg='An internal error occurred'):
    """Return a safe error message for API responses.
    logs full exception but returns generic message to client.
    """
    logging.error(f"[API] {default_msg}: {e}", exc_info=True)
    return default_msg


def error_response(e: CloudyError):
    """CloudyError -> (json, status)"""
    if isinstance(e, ProxmoxError):
        logging.warning(f"[API] Proxmox error on {request.method} {request.path}: {e.message}")
    return jsonify(e.to_dict()), e.status_code


def get_json_body():
    """request JSON as dict, {} for empty/invalid bodies"""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def get_proxmox():
    """Get the Proxmox client, (client, None) if usable, (None, error_response) if not"""
    from cloudy.core.config import get_proxmox_client
    client = get_proxmox_client()
    if client is None:
        return None, (jsonify({
            'error': 'Proxmox is not configured. Complete the setup first.',
            'code': 'PROXMOX_NOT_CONFIGURED',
        }), 503)
    return client, None


def current_user_id():
    return request.session.get('user_id')


def is_admin():
    from cloudy.models.permissions import ROLE_ADMIN
    return request.session.get('role') == ROLE_ADMIN


def parse_int_arg(name, default, minimum=None, maximum=None):
    """int query arg with clamping, falls back to default on garbage"""
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        value = default
    if minimum is not None:
        value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


def check_instance_access(client, session: dict, vmid: int, node: str = None, required: str = None) -> dict:
    """resolve the guest and make sure the caller may touch it

    ADMIN role, the owner tag, or a live share of at least `required` (READONLY by default).
    Returns the cluster resource entry, raises NotFoundError / PermissionDeniedError.
    """
    from cloudy.core.errors import NotFoundError, PermissionDeniedError
    from cloudy.core.proxmox import has_owner_tag
    from cloudy.core.sharing import has_permission
    from cloudy.models.permissions import ROLE_ADMIN, SHARE_READONLY

    resource = client.find_instance(vmid)
    if resource is None or (node and resource.get('node') != node):
        raise NotFoundError(f'Instance {vmid} not found')

    if session.get('role') == ROLE_ADMIN:
        return resource
    if has_owner_tag(resource, session.get('user_id')):
        return resource
    if has_permission(session.get('user_id'), vmid, resource['node'], required or SHARE_READONLY):
        return resource
    raise PermissionDeniedError('You do not have access to this instance')
