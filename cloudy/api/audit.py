# -*- coding: utf-8 -*-
"""audit log routes (admin only)"""

from flask import Blueprint, jsonify, request

from cloudy.core.db import get_db
from cloudy.models.permissions import ROLE_ADMIN
from cloudy.utils.auth import require_auth
from cloudy.utils.audit import get_logs, get_stats, log_request_audit
from cloudy.api.helpers import parse_int_arg

bp = Blueprint('audit', __name__)


@bp.route('/api/audit', methods=['GET'])
@require_auth(roles=[ROLE_ADMIN])
def get_audit_logs():
    """Get audit log entries

    filters: category, action, status, user, search, dateFrom, dateTo
    """
    args = request.args
    return jsonify(get_logs(
        category=args.get('category') or None,
        action=args.get('action') or None,
        status=args.get('status') or None,
        user=args.get('user') or args.get('userId') or None,
        search=args.get('search') or None,
        date_from=args.get('dateFrom') or None,
        date_to=args.get('dateTo') or None,
        page=parse_int_arg('page', 1, minimum=1),
        limit=parse_int_arg('limit', 50, 1, 100),
    ))


@bp.route('/api/audit/stats', methods=['GET'])
@require_auth(roles=[ROLE_ADMIN])
def get_audit_stats():
    return jsonify(get_stats())


@bp.route('/api/audit/integrity', methods=['GET'])
@require_auth(roles=[ROLE_ADMIN])
def verify_audit_integrity():
    """Verify integrity of audit log using HMAC signatures

    Returns:
    - total_entries: Total number of entries
    - verified: Entries with valid HMAC signature
    - unsigned: Entries without signature
    - potentially_tampered: Entries with invalid signature
    - integrity_percentage: Percentage of verified entries
    """
    result = get_db().verify_audit_log_integrity()

    # Log this check itself
    log_request_audit('audit.integrity_check',
                      f"Audit integrity check: {result['verified']}/{result['total_entries']} verified, "
                      f"{result['potentially_tampered']} potentially tampered")
    return jsonify(result)
