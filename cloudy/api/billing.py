# -*- coding: utf-8 -*-
"""billing routes - balance, estimate, transactions, admin credit management"""

from flask import Blueprint, jsonify, request

from cloudy.core import billing
from cloudy.core.errors import CloudyError, ValidationError
from cloudy.core.notifications import notify
from cloudy.models.permissions import ROLE_ADMIN
from cloudy.utils.auth import require_auth
from cloudy.utils.audit import log_request_audit
from cloudy.api.helpers import error_response, safe_error, get_json_body, current_user_id, parse_int_arg

bp = Blueprint('billing', __name__)


@bp.route('/api/billing/balance', methods=['GET'])
@require_auth()
def get_balance():
    return jsonify(billing.get_balance(current_user_id()))


@bp.route('/api/billing/summary', methods=['GET'])
@require_auth()
def get_summary():
    return jsonify(billing.get_summary(current_user_id()))


@bp.route('/api/billing/pricing', methods=['GET'])
@require_auth()
def get_pricing():
    return jsonify(billing.get_pricing())


@bp.route('/api/billing/estimate', methods=['GET'])
@require_auth()
def get_estimate():
    billing_type = str(request.args.get('billingType') or billing.BILLING_PAYG).upper()
    if billing_type not in billing.BILLING_TYPES:
        return jsonify({'error': f"Invalid billingType: {billing_type}"}), 400
    return jsonify(billing.estimate(
        parse_int_arg('cores', 1, minimum=1),
        parse_int_arg('memory', 1024, minimum=1),
        parse_int_arg('disk', 20, minimum=0),
        billing_type,
    ))


@bp.route('/api/billing/transactions', methods=['GET'])
@require_auth()
def get_transactions():
    return jsonify(billing.get_transactions(current_user_id(), parse_int_arg('limit', 50, 1, 200)))


@bp.route('/api/billing/usage', methods=['GET'])
@require_auth()
def get_usage_history():
    return jsonify(billing.get_usage_history(current_user_id()))


@bp.route('/api/billing/usage/active', methods=['GET'])
@require_auth()
def get_active_usage():
    return jsonify(billing.get_active_usage(current_user_id()))


# =====================================================
# ADMIN
# =====================================================

@bp.route('/api/billing/admin/balances', methods=['GET'])
@require_auth(roles=[ROLE_ADMIN])
def admin_balances():
    return jsonify(billing.get_all_balances())


@bp.route('/api/billing/admin/users/<user_id>/transactions', methods=['GET'])
@require_auth(roles=[ROLE_ADMIN])
def admin_user_transactions(user_id):
    try:
        billing.require_user(user_id)
    except CloudyError as e:
        return error_response(e)
    return jsonify(billing.get_transactions(user_id, parse_int_arg('limit', 50, 1, 200)))


@bp.route('/api/billing/admin/credits', methods=['POST'])
@require_auth(roles=[ROLE_ADMIN])
def admin_add_credits():
    data = get_json_body()
    try:
        user = billing.require_user(str(data.get('userId') or ''))
        tx = billing.add_credits(user['id'], data.get('amount'), data.get('description'), current_user_id())
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to add credits')}), 500

    notify(user['id'], 'Credits added', f"{tx['amount']:.2f} {billing.BILLING_CURRENCY} were added to your balance",
           'success')
    log_request_audit('billing.credits_added', {'amount': tx['amount'], 'balanceAfter': tx['balanceAfter']},
                      target_id=user['id'], target_name=user['username'], target_type='user')
    return jsonify(tx), 201


@bp.route('/api/billing/admin/refund', methods=['POST'])
@require_auth(roles=[ROLE_ADMIN])
def admin_refund():
    """give back money for a charge that should not have happened"""
    data = get_json_body()
    try:
        user = billing.require_user(str(data.get('userId') or ''))
        metadata = {'refundedBy': current_user_id()}
        if data.get('transactionId'):
            metadata['transactionId'] = str(data['transactionId'])
        tx = billing.refund_credits(user['id'], data.get('amount'), data.get('description'), metadata)
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to refund credits')}), 500

    notify(user['id'], 'Refund', f"{tx['amount']:.2f} {billing.BILLING_CURRENCY} were refunded to your balance",
           'success')
    log_request_audit('billing.refunded', {'amount': tx['amount'], 'balanceAfter': tx['balanceAfter']},
                      target_id=user['id'], target_name=user['username'], target_type='user')
    return jsonify(tx), 201


@bp.route('/api/billing/admin/pricing', methods=['GET'])
@require_auth(roles=[ROLE_ADMIN])
def admin_list_pricing():
    return jsonify(billing.list_pricing())


@bp.route('/api/billing/admin/pricing', methods=['PUT'])
@require_auth(roles=[ROLE_ADMIN])
def admin_upsert_pricing():
    data = get_json_body()
    if not data:
        return error_response(ValidationError('Pricing data required'))
    try:
        pricing = billing.upsert_pricing(data)
    except CloudyError as e:
        return error_response(e)

    log_request_audit('billing.pricing_updated', pricing, target_id=pricing['id'], target_name=pricing['name'],
                      target_type='pricing')
    return jsonify(pricing)


@bp.route('/api/billing/admin/process', methods=['POST'])
@require_auth(roles=[ROLE_ADMIN])
def admin_process_billing():
    """run the hourly charge now instead of waiting for the background thread"""
    results = billing.process_hourly_billing()
    log_request_audit('billing.processed', {'records': len(results),
                                            'failed': len([r for r in results if not r['success']])})
    return jsonify({'processed': len(results), 'results': results})
