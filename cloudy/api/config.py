# -*- coding: utf-8 -*-
"""app config, first-run setup and SMTP test routes"""

import logging

from flask import Blueprint, jsonify, request

from cloudy.core import config as app_config
from cloudy.core import mail
from cloudy.core.errors import CloudyError
from cloudy.models.permissions import ROLE_ADMIN
from cloudy.utils.auth import require_auth
from cloudy.utils.audit import log_audit, log_request_audit
from cloudy.utils.sanitization import validate_email
from cloudy.api.helpers import error_response, safe_error, get_json_body

bp = Blueprint('config', __name__)


@bp.route('/api/config/auth', methods=['GET'])
def get_auth_config():
    """public - the login page needs to know which methods are enabled"""
    return jsonify(app_config.get_public_auth_config())


@bp.route('/api/config/setup-status', methods=['GET'])
def get_setup_status():
    return jsonify({'setupCompleted': app_config.is_setup_completed()})


@bp.route('/api/config', methods=['GET'])
@require_auth(roles=[ROLE_ADMIN])
def get_config():
    return jsonify(app_config.get_app_config(masked=True))


@bp.route('/api/config', methods=['PATCH'])
@require_auth(roles=[ROLE_ADMIN])
def update_config():
    data = get_json_body()
    try:
        changed = app_config.update_app_config(data)
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to update config')}), 500

    if changed:
        # only key names, values may be secrets
        log_request_audit('settings.updated', {'changed': changed})
    return jsonify({'success': True, 'changed': changed, 'config': app_config.get_app_config(masked=True)})


@bp.route('/api/config/test-proxmox', methods=['POST'])
def test_proxmox():
    """allowed unauthenticated until setup is done, admin afterwards"""
    if app_config.is_setup_completed():
        return _test_proxmox_admin()
    return _run_proxmox_test()


@require_auth(roles=[ROLE_ADMIN])
def _test_proxmox_admin():
    return _run_proxmox_test()


def _run_proxmox_test():
    data = get_json_body()
    result = app_config.test_proxmox_connection(
        str(data.get('host') or '').strip(),
        str(data.get('tokenId') or '').strip(),
        str(data.get('tokenSecret') or '').strip(),
    )
    return jsonify(result)


@bp.route('/api/config/setup', methods=['POST'])
def run_setup():
    if app_config.is_setup_completed():
        return jsonify({'error': 'Setup has already been completed', 'code': 'SETUP_COMPLETED'}), 403

    data = get_json_body()
    try:
        changed = app_config.complete_setup(data)
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to complete setup')}), 500

    log_audit('system', 'setup.completed', {'changed': changed})
    logging.info("[Setup] First-run setup completed")
    return jsonify({'success': True, 'setupCompleted': True})


@bp.route('/api/config/smtp/test', methods=['POST'])
@require_auth(roles=[ROLE_ADMIN])
def test_smtp():
    return jsonify(mail.test_connection())


@bp.route('/api/config/smtp/test-email', methods=['POST'])
@require_auth(roles=[ROLE_ADMIN])
def send_test_email():
    data = get_json_body()
    try:
        to = validate_email(data.get('to') or request.user.get('email'))
    except CloudyError as e:
        return error_response(e)
    result = mail.send_test_email(to)
    log_request_audit('settings.test_email', {'to': to, 'success': result['success']})
    return jsonify(result)
