# -*- coding: utf-8 -*-
"""user management routes - admin only"""

import logging

from flask import Blueprint, jsonify, request

from cloudy.core.db import get_db
from cloudy.core.errors import ValidationError
from cloudy.models.permissions import ROLE_ADMIN, ROLES
from cloudy.utils.auth import (
    require_auth, public_user, invalidate_all_user_sessions, update_user_sessions_role,
)
from cloudy.utils.audit import log_request_audit
from cloudy.utils.sanitization import validate_non_negative_int, validate_node
from cloudy.api.helpers import error_response, get_json_body, current_user_id

bp = Blueprint('users', __name__)

# API name -> users column
LIMIT_FIELDS = {
    'maxCpu': 'max_cpu',
    'maxMemory': 'max_memory',
    'maxDisk': 'max_disk',
    'maxInstances': 'max_instances',
}


def _get_user_or_404(user_id):
    user = get_db().get_user(user_id)
    if not user:
        return None, (jsonify({'error': 'User not found'}), 404)
    return user, None


@bp.route('/api/users', methods=['GET'])
@require_auth(roles=[ROLE_ADMIN])
def list_users():
    return jsonify([public_user(u) for u in get_db().get_all_users()])


@bp.route('/api/users/<user_id>', methods=['GET'])
@require_auth(roles=[ROLE_ADMIN])
def get_user(user_id):
    user, err = _get_user_or_404(user_id)
    if err:
        return err
    return jsonify(public_user(user))


@bp.route('/api/users/<user_id>/role', methods=['PATCH'])
@require_auth(roles=[ROLE_ADMIN])
def update_user_role(user_id):
    role = str(get_json_body().get('role') or '').upper()
    if role not in ROLES:
        return jsonify({'error': f"Invalid role. Must be one of {', '.join(ROLES)}"}), 400

    if user_id == current_user_id() and role != ROLE_ADMIN:
        return jsonify({'error': 'You cannot remove your own admin role'}), 400

    user, err = _get_user_or_404(user_id)
    if err:
        return err

    old_role = user['role']
    user = get_db().update_user(user_id, role=role)
    # live sessions pick the new role up immediately
    update_user_sessions_role(user_id, role)

    logging.info(f"Role of '{user['username']}' changed {old_role} -> {role}")
    log_request_audit('user.role_changed', {'from': old_role, 'to': role},
                      target_id=user_id, target_name=user['username'], target_type='user')
    return jsonify(public_user(user))


@bp.route('/api/users/<user_id>/limits', methods=['PATCH'])
@require_auth(roles=[ROLE_ADMIN])
def update_user_limits(user_id):
    data = get_json_body()
    user, err = _get_user_or_404(user_id)
    if err:
        return err

    updates = {}
    try:
        for api_key, column in LIMIT_FIELDS.items():
            if data.get(api_key) is not None:
                updates[column] = validate_non_negative_int(data[api_key], api_key)
        if 'allowedNodes' in data:
            nodes = data['allowedNodes'] or []
            if not isinstance(nodes, list):
                raise ValidationError('allowedNodes must be a list')
            updates['allowed_nodes'] = [validate_node(n) for n in nodes]
    except ValidationError as e:
        return error_response(e)

    if not updates:
        return jsonify({'error': 'Nothing to update'}), 400

    user = get_db().update_user(user_id, **updates)
    log_request_audit('user.limits_changed', updates, target_id=user_id, target_name=user['username'],
                      target_type='user')
    return jsonify(public_user(user))


@bp.route('/api/users/<user_id>', methods=['PATCH'])
@require_auth(roles=[ROLE_ADMIN])
def update_user(user_id):
    """enable/disable, email verification and forced password change"""
    data = get_json_body()
    user, err = _get_user_or_404(user_id)
    if err:
        return err

    updates = {}
    if 'enabled' in data:
        if user_id == current_user_id() and not data['enabled']:
            return jsonify({'error': 'You cannot disable your own account'}), 400
        updates['enabled'] = bool(data['enabled'])
    if 'emailVerified' in data:
        updates['email_verified'] = bool(data['emailVerified'])
    if 'mustChangePassword' in data:
        updates['must_change_password'] = bool(data['mustChangePassword'])
    if not updates:
        return jsonify({'error': 'Nothing to update'}), 400

    user = get_db().update_user(user_id, **updates)
    if updates.get('enabled') is False:
        # NS: disabled means out now, not at next login
        invalidate_all_user_sessions(user_id)

    log_request_audit('user.updated', updates, target_id=user_id, target_name=user['username'], target_type='user')
    return jsonify(public_user(user))


@bp.route('/api/users/<user_id>', methods=['DELETE'])
@require_auth(roles=[ROLE_ADMIN])
def delete_user(user_id):
    if user_id == current_user_id():
        return jsonify({'error': 'You cannot delete your own account'}), 400

    user, err = _get_user_or_404(user_id)
    if err:
        return err

    invalidate_all_user_sessions(user_id)
    get_db().delete_user(user_id)

    logging.info(f"User '{user['username']}' deleted by {request.session.get('user')}")
    log_request_audit('user.deleted', None, target_id=user_id, target_name=user['username'], target_type='user')
    return jsonify({'success': True})
