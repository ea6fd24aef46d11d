# -*- coding: utf-8 -*-
"""storage routes - pools and volumes"""

import re

from flask import Blueprint, jsonify, request

from cloudy.core.errors import CloudyError, ValidationError
from cloudy.core.notifications import notify
from cloudy.models.permissions import ROLE_ADMIN
from cloudy.utils.auth import require_auth
from cloudy.utils.audit import log_request_audit
from cloudy.utils.sanitization import validate_node, validate_storage, parse_instance_id
from cloudy.api.helpers import get_proxmox, error_response, safe_error, get_json_body, current_user_id

bp = Blueprint('storage', __name__)

VOLUME_FORMATS = ('raw', 'qcow2', 'vmdk', 'subvol')
_SIZE_RE = re.compile(r'^\d+[KMGT]?$')
_FILENAME_RE = re.compile(r'^[a-zA-Z0-9][a-zA-Z0-9_.-]{0,127}$')


@bp.route('/api/storage/pools', methods=['GET'])
@require_auth()
def list_pools():
    client, err = get_proxmox()
    if err:
        return err
    try:
        node = request.args.get('node')
        return jsonify(client.get_storage_pools(validate_node(node) if node else None))
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to list storage pools')}), 500


@bp.route('/api/storage/volumes', methods=['GET'])
@require_auth()
def list_volumes():
    client, err = get_proxmox()
    if err:
        return err
    try:
        node = request.args.get('node')
        storage = request.args.get('storage')
        if node and storage:
            volumes = client.get_storage_content(validate_node(node), validate_storage(storage), 'images')
            return jsonify([{**v, 'node': node, 'storage': storage} for v in volumes])
        return jsonify(client.get_all_volumes())
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to list volumes')}), 500


@bp.route('/api/storage/volumes', methods=['POST'])
@require_auth(roles=[ROLE_ADMIN])
def create_volume():
    client, err = get_proxmox()
    if err:
        return err
    data = get_json_body()
    try:
        node = validate_node(data.get('node'))
        storage = validate_storage(data.get('storage'))
        filename = str(data.get('filename') or '').strip()
        if not _FILENAME_RE.match(filename):
            raise ValidationError('Invalid filename')
        size = str(data.get('size') or '').strip().upper()
        if not _SIZE_RE.match(size):
            raise ValidationError("Invalid size, use e.g. '10G'")
        fmt = str(data.get('format') or 'raw').lower()
        if fmt not in VOLUME_FORMATS:
            raise ValidationError(f"Invalid format. Must be one of {', '.join(VOLUME_FORMATS)}")
        vmid = parse_instance_id(data.get('vmid'))
        result = client.create_volume(node, storage, filename, size, vmid, fmt)
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to create volume')}), 500

    notify(current_user_id(), 'Volume created', f"{filename} ({size}) created on {storage}", 'success')
    log_request_audit('volume.create', {'node': node, 'storage': storage, 'size': size, 'format': fmt},
                      target_id=result, target_name=filename, target_type='volume')
    return jsonify({'success': True, 'volid': result}), 201


@bp.route('/api/storage/volumes', methods=['DELETE'])
@require_auth(roles=[ROLE_ADMIN])
def delete_volume():
    """volid comes as a query arg, it contains ':' and '/'"""
    client, err = get_proxmox()
    if err:
        return err
    try:
        node = validate_node(request.args.get('node'))
        storage = validate_storage(request.args.get('storage'))
        volume = str(request.args.get('volume') or '').strip()
        if not volume:
            raise ValidationError('volume is required')
        task = client.delete_volume(node, storage, volume)
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to delete volume')}), 500

    notify(current_user_id(), 'Volume deleted', f"{volume} deleted from {storage}", 'info')
    log_request_audit('volume.delete', {'node': node, 'storage': storage}, target_id=volume, target_type='volume')
    return jsonify({'success': True, 'task': task})
