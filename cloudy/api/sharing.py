# -*- coding: utf-8 -*-
"""instance sharing routes"""

from flask import Blueprint, jsonify, request

from cloudy.core import sharing
from cloudy.core.errors import CloudyError
from cloudy.core.notifications import notify
from cloudy.core.proxmox import has_owner_tag
from cloudy.models.permissions import SHARE_READONLY
from cloudy.utils.auth import require_auth
from cloudy.utils.audit import log_request_audit
from cloudy.utils.sanitization import parse_instance_id, validate_node, detect_vm_type
from cloudy.api.helpers import (
    get_proxmox, error_response, safe_error, get_json_body, current_user_id, is_admin, check_instance_access,
)

bp = Blueprint('sharing', __name__)


@bp.route('/api/sharing', methods=['POST'])
@require_auth()
def share_instance():
    client, err = get_proxmox()
    if err:
        return err
    data = get_json_body()
    try:
        vmid = parse_instance_id(data.get('vmid'))
        node = validate_node(data.get('node'))
        resource = check_instance_access(client, request.session, vmid, node, SHARE_READONLY)
        # a share grant does not make you the owner
        is_owner = is_admin() or has_owner_tag(resource, current_user_id())
        share = sharing.share_instance(
            request.user, vmid, node, data.get('email'), data.get('permission'),
            vm_type=resource.get('type') or detect_vm_type(None, data.get('vmType')),
            vm_name=resource.get('name') or data.get('vmName'),
            expires_at=data.get('expiresAt'),
            is_owner=is_owner,
        )
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to share instance')}), 500

    notify(share['sharedWithId'], 'Instance shared with you',
           f"{request.user['username']} shared {share['vmName'] or vmid} with you ({share['permission']})", 'info')
    log_request_audit('share.create', {'permission': share['permission'], 'sharedWith': share['sharedWithId'],
                                       'expiresAt': share['expiresAt']},
                      target_id=vmid, target_name=share['vmName'], target_type='instance')
    return jsonify(share), 201


@bp.route('/api/sharing/<share_id>', methods=['DELETE'])
@require_auth()
def revoke_share(share_id):
    try:
        share = sharing.revoke_share(share_id, current_user_id(), is_admin())
    except CloudyError as e:
        return error_response(e)

    notify(share['sharedWithId'], 'Share revoked', f"Your access to {share['vmName'] or share['vmid']} was revoked",
           'warning')
    log_request_audit('share.revoke', {'sharedWith': share['sharedWithId']}, target_id=share['vmid'],
                      target_name=share['vmName'], target_type='instance')
    return jsonify({'success': True})


@bp.route('/api/sharing/mine', methods=['GET'])
@require_auth()
def my_shares():
    return jsonify(sharing.get_my_shares(current_user_id()))


@bp.route('/api/sharing/shared-with-me', methods=['GET'])
@require_auth()
def shared_with_me():
    return jsonify(sharing.get_shared_with_me(current_user_id()))


@bp.route('/api/sharing/instance/<vmid>', methods=['GET'])
@require_auth()
def instance_shares(vmid):
    client, err = get_proxmox()
    if err:
        return err
    try:
        vmid = parse_instance_id(vmid)
        node = request.args.get('node')
        resource = check_instance_access(client, request.session, vmid,
                                         validate_node(node) if node else None, SHARE_READONLY)
    except CloudyError as e:
        return error_response(e)
    return jsonify(sharing.get_instance_shares(vmid, resource['node']))


@bp.route('/api/sharing/users/search', methods=['GET'])
@require_auth()
def search_users():
    return jsonify(sharing.search_users(request.args.get('q', ''), current_user_id()))
