# -*- coding: utf-8 -*-
"""monitoring routes - cluster totals and rrd graphs"""

from flask import Blueprint, jsonify, request

from cloudy.core.errors import CloudyError
from cloudy.models.permissions import SHARE_READONLY
from cloudy.utils.auth import require_auth
from cloudy.utils.sanitization import validate_node, parse_instance_id, detect_vm_type
from cloudy.api.helpers import get_proxmox, error_response, safe_error, check_instance_access

bp = Blueprint('monitoring', __name__)


@bp.route('/api/monitoring/cluster', methods=['GET'])
@require_auth()
def cluster_stats():
    client, err = get_proxmox()
    if err:
        return err
    try:
        return jsonify(client.get_cluster_stats())
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to get cluster stats')}), 500


@bp.route('/api/monitoring/nodes/<node>/rrd', methods=['GET'])
@require_auth()
def node_rrd(node):
    client, err = get_proxmox()
    if err:
        return err
    try:
        return jsonify(client.get_node_rrd(validate_node(node), request.args.get('timeframe', 'hour')))
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to get node metrics')}), 500


@bp.route('/api/monitoring/instances/<instance_id>/rrd', methods=['GET'])
@require_auth()
def instance_rrd(instance_id):
    client, err = get_proxmox()
    if err:
        return err
    try:
        vmid = parse_instance_id(instance_id)
        node = request.args.get('node')
        resource = check_instance_access(client, request.session, vmid,
                                         validate_node(node) if node else None, SHARE_READONLY)
        vm_type = resource.get('type') or detect_vm_type(instance_id, request.args.get('type'))
        return jsonify(client.get_vm_rrd(resource['node'], vmid, vm_type, request.args.get('timeframe', 'hour')))
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to get instance metrics')}), 500
