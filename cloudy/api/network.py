# -*- coding: utf-8 -*-
"""network routes - node interfaces and bridges, read only"""

from flask import Blueprint, jsonify, request

from cloudy.core.errors import CloudyError
from cloudy.utils.auth import require_auth
from cloudy.utils.sanitization import validate_node
from cloudy.api.helpers import get_proxmox, error_response, safe_error

bp = Blueprint('network', __name__)


@bp.route('/api/network/interfaces', methods=['GET'])
@require_auth()
def list_interfaces():
    client, err = get_proxmox()
    if err:
        return err
    try:
        node = request.args.get('node')
        if node:
            return jsonify(client.get_network_interfaces(validate_node(node)))
        return jsonify(client.get_all_networks())
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to list network interfaces')}), 500


@bp.route('/api/network/interfaces/<node>', methods=['GET'])
@require_auth()
def list_node_interfaces(node):
    client, err = get_proxmox()
    if err:
        return err
    try:
        return jsonify(client.get_network_interfaces(validate_node(node)))
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to list network interfaces')}), 500


@bp.route('/api/network/bridges', methods=['GET'])
@require_auth()
def list_bridges():
    client, err = get_proxmox()
    if err:
        return err
    try:
        return jsonify(client.get_network_bridges())
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to list bridges')}), 500
