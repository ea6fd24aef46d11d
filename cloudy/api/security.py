# -*- coding: utf-8 -*-
"""firewall routes - cluster, node and guest rules"""

import re

from flask import Blueprint, jsonify, request

from cloudy.core.errors import CloudyError, ValidationError
from cloudy.models.permissions import ROLE_ADMIN
from cloudy.utils.auth import require_auth
from cloudy.utils.audit import log_request_audit, STATUS_ERROR
from cloudy.utils.sanitization import validate_node, parse_instance_id, validate_vm_type
from cloudy.api.helpers import get_proxmox, error_response, safe_error, get_json_body

bp = Blueprint('security', __name__)

SCOPES = ('cluster', 'node', 'vm')
RULE_TYPES = ('in', 'out', 'group')
RULE_ACTIONS = ('ACCEPT', 'DROP', 'REJECT')
PROTOCOLS = ('tcp', 'udp', 'icmp', 'icmpv6', 'esp', 'ah', 'gre', 'sctp')

# ports: 22 / 1000:2000 / 80,443
_PORT_RE = re.compile(r'^\d{1,5}(:\d{1,5})?(,\d{1,5}(:\d{1,5})?)*$')
# ip, cidr, range or an ipset/alias name
_ADDR_RE = re.compile(r'^[a-zA-Z0-9+_.:/,-]{1,128}$')


def validate_rule(data: dict) -> dict:
    """body -> proxmox rule params, raises ValidationError"""
    rule_type = str(data.get('type') or '').lower()
    if rule_type not in RULE_TYPES:
        raise ValidationError(f"Invalid type. Must be one of {', '.join(RULE_TYPES)}")
    action = str(data.get('action') or '').upper()
    if rule_type != 'group' and action not in RULE_ACTIONS:
        raise ValidationError(f"Invalid action. Must be one of {', '.join(RULE_ACTIONS)}")

    rule = {'type': rule_type, 'action': action if rule_type != 'group' else str(data.get('action') or '')}
    if data.get('proto'):
        proto = str(data['proto']).lower()
        if proto not in PROTOCOLS:
            raise ValidationError(f"Invalid protocol: {proto}")
        rule['proto'] = proto
    for field in ('dport', 'sport'):
        if data.get(field):
            value = str(data[field]).replace(' ', '')
            if not _PORT_RE.match(value):
                raise ValidationError(f"Invalid {field}: {value}")
            rule[field] = value
    for field in ('source', 'dest'):
        if data.get(field):
            value = str(data[field]).strip()
            if not _ADDR_RE.match(value):
                raise ValidationError(f"Invalid {field}: {value}")
            rule[field] = value
    if data.get('comment'):
        rule['comment'] = str(data['comment'])[:255]
    rule['enable'] = 1 if data.get('enable', True) else 0
    return rule


def _scope_target(scope, node, vmid, vm_type):
    if scope not in SCOPES:
        raise ValidationError(f"Invalid scope. Must be one of {', '.join(SCOPES)}")
    if scope in ('node', 'vm') and not node:
        raise ValidationError('node is required for node and vm scope')
    if scope == 'vm' and not vmid:
        raise ValidationError('vmid is required for vm scope')
    return (
        validate_node(node) if node else None,
        parse_instance_id(vmid) if scope == 'vm' else None,
        validate_vm_type(vm_type) if scope == 'vm' else None,
    )


@bp.route('/api/security/rules', methods=['GET'])
@require_auth(roles=[ROLE_ADMIN])
def list_rules():
    client, err = get_proxmox()
    if err:
        return err
    try:
        if request.args.get('scope') == 'cluster':
            return jsonify([{**r, 'scope': 'cluster'} for r in client.get_cluster_firewall_rules()])
        return jsonify(client.get_all_firewall_rules())
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to list firewall rules')}), 500


@bp.route('/api/security/rules/node/<node>', methods=['GET'])
@require_auth(roles=[ROLE_ADMIN])
def list_node_rules(node):
    client, err = get_proxmox()
    if err:
        return err
    try:
        return jsonify(client.get_node_firewall_rules(validate_node(node)))
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to list node firewall rules')}), 500


@bp.route('/api/security/rules/vm/<vmid>', methods=['GET'])
@require_auth(roles=[ROLE_ADMIN])
def list_vm_rules(vmid):
    client, err = get_proxmox()
    if err:
        return err
    try:
        return jsonify(client.get_vm_firewall_rules(
            validate_node(request.args.get('node')),
            parse_instance_id(vmid),
            validate_vm_type(request.args.get('type', 'qemu')),
        ))
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to list guest firewall rules')}), 500


@bp.route('/api/security/rules', methods=['POST'])
@require_auth(roles=[ROLE_ADMIN])
def create_rule():
    client, err = get_proxmox()
    if err:
        return err
    data = get_json_body()
    scope = str(data.get('scope') or 'cluster').lower()
    try:
        node, vmid, vm_type = _scope_target(scope, data.get('node'), data.get('vmid'),
                                            data.get('vmtype') or data.get('vmType'))
        rule = validate_rule(data)
        client.create_firewall_rule(scope, rule, node, vmid, vm_type)
    except CloudyError as e:
        log_request_audit('firewall.rule_create', {'scope': scope}, target_type='firewall',
                          status=STATUS_ERROR, error_message=e.message)
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to create firewall rule')}), 500

    log_request_audit('firewall.rule_create', {'scope': scope, 'node': node, 'vmid': vmid, 'rule': rule},
                      target_id=vmid or node or 'cluster', target_type='firewall')
    return jsonify({'success': True, 'rule': rule}), 201


@bp.route('/api/security/rules/<int:pos>', methods=['DELETE'])
@require_auth(roles=[ROLE_ADMIN])
def delete_rule(pos):
    client, err = get_proxmox()
    if err:
        return err
    scope = str(request.args.get('scope') or 'cluster').lower()
    try:
        node, vmid, vm_type = _scope_target(scope, request.args.get('node'), request.args.get('vmid'),
                                            request.args.get('vmtype'))
        client.delete_firewall_rule(scope, pos, node, vmid, vm_type)
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to delete firewall rule')}), 500

    log_request_audit('firewall.rule_delete', {'scope': scope, 'node': node, 'vmid': vmid, 'pos': pos},
                      target_id=vmid or node or 'cluster', target_type='firewall')
    return jsonify({'success': True})
