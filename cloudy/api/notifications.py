# -*- coding: utf-8 -*-
"""notification routes - always scoped to the current user"""

from flask import Blueprint, jsonify

from cloudy.core import notifications
from cloudy.core.errors import CloudyError
from cloudy.utils.auth import require_auth
from cloudy.api.helpers import error_response, current_user_id

bp = Blueprint('notifications', __name__)


@bp.route('/api/notifications', methods=['GET'])
@require_auth()
def list_notifications():
    return jsonify(notifications.list_for_user(current_user_id()))


@bp.route('/api/notifications/<notification_id>/read', methods=['POST'])
@require_auth()
def mark_read(notification_id):
    try:
        notifications.mark_read(current_user_id(), notification_id)
    except CloudyError as e:
        return error_response(e)
    return jsonify({'success': True})


@bp.route('/api/notifications/read-all', methods=['POST'])
@require_auth()
def mark_all_read():
    return jsonify({'success': True, 'updated': notifications.mark_all_read(current_user_id())})


@bp.route('/api/notifications/<notification_id>', methods=['DELETE'])
@require_auth()
def delete_notification(notification_id):
    try:
        notifications.delete(current_user_id(), notification_id)
    except CloudyError as e:
        return error_response(e)
    return jsonify({'success': True})
