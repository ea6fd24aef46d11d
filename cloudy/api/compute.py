# -*- coding: utf-8 -*-
"""compute routes - nodes, instances, lifecycle actions, snapshots, console tickets"""

import logging
from urllib.parse import urlencode

from flask import Blueprint, jsonify, request

from cloudy.constants import VM_ACTIONS
from cloudy.core.errors import CloudyError, ValidationError
from cloudy.core.proxmox import owner_tag, has_owner_tag
from cloudy.core import billing, sharing
from cloudy.core.notifications import notify
from cloudy.models.permissions import SHARE_MAINTENANCE, SHARE_ADMIN, SHARE_READONLY
from cloudy.utils.auth import require_auth
from cloudy.utils.audit import log_request_audit, STATUS_ERROR
from cloudy.utils.sanitization import (
    parse_instance_id, detect_vm_type, validate_node, validate_snapname, validate_guest_name,
)
from cloudy.api.helpers import (
    get_proxmox, error_response, safe_error, get_json_body, current_user_id, is_admin,
    load_server_settings, check_instance_access,
)

bp = Blueprint('compute', __name__)


def _positive_int(value, field, default=None):
    if value is None or value == '':
        if default is None:
            raise ValidationError(f"{field} is required")
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer")
    if number <= 0:
        raise ValidationError(f"{field} must be positive")
    return number


def _target(instance_id, data=None):
    """(vmid, node, vm_type) from the url id plus ?node/&type or body"""
    data = data or {}
    vmid = parse_instance_id(instance_id)
    node = data.get('node') or request.args.get('node')
    vm_type = detect_vm_type(instance_id, data.get('type') or request.args.get('type'))
    return vmid, (validate_node(node) if node else None), vm_type


@bp.route('/api/nodes', methods=['GET'])
@require_auth()
def list_nodes():
    client, err = get_proxmox()
    if err:
        return err
    try:
        return jsonify(client.get_nodes())
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to list nodes')}), 500


@bp.route('/api/instances', methods=['GET'])
@require_auth()
def list_instances():
    """admins see everything (?mine=1 for own), users their own plus shared"""
    client, err = get_proxmox()
    if err:
        return err
    try:
        instances = client.list_instances()
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to list instances')}), 500

    user_id = current_user_id()
    if is_admin() and request.args.get('mine') not in ('1', 'true'):
        return jsonify(instances)

    shared = sharing.shared_instance_keys(user_id)
    visible = []
    for inst in instances:
        if has_owner_tag(inst, user_id):
            visible.append({**inst, 'access': 'owner'})
        elif (inst.get('vmid'), inst.get('node')) in shared and not is_admin():
            visible.append({**inst, 'access': sharing.get_share_permission(user_id, inst['vmid'], inst['node'])})
    return jsonify(visible)


@bp.route('/api/templates', methods=['GET'])
@require_auth()
def list_templates():
    client, err = get_proxmox()
    if err:
        return err
    try:
        return jsonify(client.list_templates())
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to list templates')}), 500


@bp.route('/api/quota', methods=['GET'])
@require_auth()
def get_quota():
    """limits of the current user next to what they use right now"""
    client, err = get_proxmox()
    if err:
        return err
    user = request.user
    try:
        usage = client.get_user_usage(user['id'])
    except CloudyError as e:
        return error_response(e)
    return jsonify({
        'limits': {
            'maxCpu': user['max_cpu'],
            'maxMemory': user['max_memory'],
            'maxDisk': user['max_disk'],
            'maxInstances': user['max_instances'],
            'allowedNodes': user['allowed_nodes'],
        },
        'usage': usage,
    })


@bp.route('/api/instances/<instance_id>', methods=['GET'])
@require_auth()
def get_instance(instance_id):
    client, err = get_proxmox()
    if err:
        return err
    try:
        vmid, node, vm_type = _target(instance_id)
        resource = check_instance_access(client, request.session, vmid, node, SHARE_READONLY)
        node = resource['node']
        vm_type = resource.get('type', vm_type)
        status = client.get_instance_status(node, vmid, vm_type)
        config = client.get_instance_config(node, vmid, vm_type)
        ip = client.get_vm_ip(node, vmid, vm_type) if status.get('status') == 'running' else None
        return jsonify({**status, 'vmid': vmid, 'node': node, 'type': vm_type, 'config': config, 'ip': ip})
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to get instance')}), 500


@bp.route('/api/instances/<instance_id>/action', methods=['POST'])
@require_auth()
def instance_action(instance_id):
    """start/stop/shutdown/reboot/reset/suspend/resume"""
    client, err = get_proxmox()
    if err:
        return err
    data = get_json_body()
    action = str(data.get('action') or '').lower()
    if action not in VM_ACTIONS:
        return jsonify({'error': f"Invalid action. Must be one of {', '.join(VM_ACTIONS)}"}), 400

    try:
        vmid, node, vm_type = _target(instance_id, data)
        resource = check_instance_access(client, request.session, vmid, node, SHARE_MAINTENANCE)
        node = resource['node']
        vm_type = resource.get('type', vm_type)
        task = client.vm_action(node, vmid, vm_type, action, force=bool(data.get('force')))
    except CloudyError as e:
        log_request_audit(f'instance.{action}', None, target_id=instance_id, target_type='instance',
                          status=STATUS_ERROR, error_message=e.message)
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, f'Failed to {action} instance')}), 500

    log_request_audit(f'instance.{action}', {'node': node, 'type': vm_type}, target_id=vmid,
                      target_name=resource.get('name'), target_type='instance')
    return jsonify({'success': True, 'task': task, 'action': action})


@bp.route('/api/instances', methods=['POST'])
@require_auth()
def create_instance():
    """clone a template for the current user

    order matters: node allowed -> quota -> credits -> clone
    """
    client, err = get_proxmox()
    if err:
        return err
    data = get_json_body()
    user = request.user
    admin = is_admin()

    try:
        node = validate_node(data.get('node'))
        template_id = parse_instance_id(data.get('templateId'))
        name = validate_guest_name(data.get('name'))
        vm_type = detect_vm_type(None, data.get('type'))
        cores = _positive_int(data.get('cores'), 'cores', 1)
        memory = _positive_int(data.get('memory'), 'memory', 512)
        disk = _positive_int(data.get('disk'), 'disk', 20)
        billing_type = str(data.get('billingType') or billing.BILLING_PAYG).upper()
        if billing_type not in billing.BILLING_TYPES:
            raise ValidationError(f"Invalid billingType: {billing_type}")
    except CloudyError as e:
        return error_response(e)

    allowed_nodes = user.get('allowed_nodes') or []
    if allowed_nodes and node not in allowed_nodes:
        return jsonify({'error': f'You are not allowed to deploy on node {node}', 'code': 'NODE_NOT_ALLOWED'}), 403

    try:
        if not admin:
            usage = client.get_user_usage(user['id'])
            if usage['instances'] + 1 > (user['max_instances'] or 0):
                return jsonify({'error': f"Instance limit reached ({user['max_instances']})",
                                'code': 'QUOTA_EXCEEDED'}), 400
            if usage['cpu'] + cores > (user['max_cpu'] or 0):
                return jsonify({'error': f"CPU limit exceeded ({usage['cpu']} + {cores} > {user['max_cpu']})",
                                'code': 'QUOTA_EXCEEDED'}), 400
            if usage['memory'] + memory > (user['max_memory'] or 0):
                return jsonify({'error': f"Memory limit exceeded ({usage['memory']} + {memory} MB > {user['max_memory']} MB)",
                                'code': 'QUOTA_EXCEEDED'}), 400

            if load_server_settings().get('billing_enabled'):
                billing.check_credits(user['id'], cores, memory, disk, billing_type)

        result = client.create_instance(
            node, template_id, vm_type, name, cores, memory,
            tags=owner_tag(user['id']),
            username=data.get('ciuser'),
            password=data.get('password'),
            sshkeys=data.get('sshkeys'),
        )
    except CloudyError as e:
        log_request_audit('instance.create', {'node': node, 'template': template_id}, target_name=name,
                          target_type='instance', status=STATUS_ERROR, error_message=e.message)
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to create instance')}), 500

    vmid = result['vmid']
    try:
        billing.start_usage_tracking(user['id'], vmid, node, cores, memory, disk, billing_type, vm_type)
    except CloudyError as e:
        logging.error(f"[Billing] Could not start tracking {vmid}: {e.message}")

    notify(user['id'], 'Instance created', f"{name} ({vmid}) is being deployed on {node}", 'success')
    log_request_audit('instance.create', {'node': node, 'template': template_id, 'cores': cores,
                                          'memory': memory, 'type': vm_type, 'billingType': billing_type,
                                          'configApplied': result['config_applied']},
                      target_id=vmid, target_name=name, target_type='instance')
    return jsonify({'vmid': vmid, 'task': result['task']}), 201


@bp.route('/api/instances/<instance_id>', methods=['DELETE'])
@require_auth()
def delete_instance(instance_id):
    client, err = get_proxmox()
    if err:
        return err
    try:
        vmid, node, vm_type = _target(instance_id)
        resource = check_instance_access(client, request.session, vmid, node, SHARE_ADMIN)
        node = resource['node']
        vm_type = resource.get('type', vm_type)
        task = client.delete_instance(node, vmid, vm_type)
    except CloudyError as e:
        log_request_audit('instance.delete', None, target_id=instance_id, target_type='instance',
                          status=STATUS_ERROR, error_message=e.message)
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to delete instance')}), 500

    usage = billing.stop_usage_tracking(vmid, node)
    removed_shares = sharing.remove_instance_shares(vmid, node)

    notify(current_user_id(), 'Instance deleted', f"{resource.get('name') or vmid} was deleted", 'info')
    log_request_audit('instance.delete', {'node': node, 'type': vm_type, 'usage': usage,
                                          'sharesRemoved': removed_shares},
                      target_id=vmid, target_name=resource.get('name'), target_type='instance')
    return jsonify({'success': True, 'task': task})


# =====================================================
# SNAPSHOTS
# =====================================================

@bp.route('/api/instances/<instance_id>/snapshots', methods=['GET'])
@require_auth()
def list_snapshots(instance_id):
    client, err = get_proxmox()
    if err:
        return err
    try:
        vmid, node, vm_type = _target(instance_id)
        resource = check_instance_access(client, request.session, vmid, node, SHARE_READONLY)
        return jsonify(client.get_snapshots(resource['node'], vmid, resource.get('type', vm_type)))
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to list snapshots')}), 500


@bp.route('/api/instances/<instance_id>/snapshots', methods=['POST'])
@require_auth()
def create_snapshot(instance_id):
    client, err = get_proxmox()
    if err:
        return err
    data = get_json_body()
    try:
        snapname = validate_snapname(data.get('snapname') or data.get('name'))
        vmid, node, vm_type = _target(instance_id, data)
        resource = check_instance_access(client, request.session, vmid, node, SHARE_MAINTENANCE)
        node = resource['node']
        vm_type = resource.get('type', vm_type)
        task = client.create_snapshot(node, vmid, vm_type, snapname,
                                      description=data.get('description'), vmstate=bool(data.get('vmstate')))
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to create snapshot')}), 500

    notify(current_user_id(), 'Snapshot created', f"Snapshot {snapname} of {vmid} created", 'success')
    log_request_audit('snapshot.create', {'snapname': snapname, 'node': node}, target_id=vmid,
                      target_name=resource.get('name'), target_type='instance')
    return jsonify({'success': True, 'task': task}), 201


@bp.route('/api/instances/<instance_id>/snapshots/<snapname>', methods=['DELETE'])
@require_auth()
def delete_snapshot(instance_id, snapname):
    client, err = get_proxmox()
    if err:
        return err
    try:
        snapname = validate_snapname(snapname)
        vmid, node, vm_type = _target(instance_id)
        resource = check_instance_access(client, request.session, vmid, node, SHARE_MAINTENANCE)
        node = resource['node']
        task = client.delete_snapshot(node, vmid, resource.get('type', vm_type), snapname)
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to delete snapshot')}), 500

    notify(current_user_id(), 'Snapshot deleted', f"Snapshot {snapname} of {vmid} deleted", 'info')
    log_request_audit('snapshot.delete', {'snapname': snapname, 'node': node}, target_id=vmid,
                      target_name=resource.get('name'), target_type='instance')
    return jsonify({'success': True, 'task': task})


@bp.route('/api/instances/<instance_id>/snapshots/<snapname>/rollback', methods=['POST'])
@require_auth()
def rollback_snapshot(instance_id, snapname):
    client, err = get_proxmox()
    if err:
        return err
    try:
        snapname = validate_snapname(snapname)
        vmid, node, vm_type = _target(instance_id, get_json_body())
        resource = check_instance_access(client, request.session, vmid, node, SHARE_MAINTENANCE)
        node = resource['node']
        task = client.rollback_snapshot(node, vmid, resource.get('type', vm_type), snapname)
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to rollback snapshot')}), 500

    notify(current_user_id(), 'Snapshot restored', f"{vmid} rolled back to {snapname}", 'warning')
    log_request_audit('snapshot.rollback', {'snapname': snapname, 'node': node}, target_id=vmid,
                      target_name=resource.get('name'), target_type='instance')
    return jsonify({'success': True, 'task': task})


# =====================================================
# CONSOLE
# =====================================================

@bp.route('/api/instances/<instance_id>/console', methods=['POST'])
@require_auth()
def get_console_ticket(instance_id):
    """ticket + urls for the console - the browser normally uses wsUrl (our relay)"""
    client, err = get_proxmox()
    if err:
        return err
    data = get_json_body()
    try:
        vmid, node, vm_type = _target(instance_id, data)
        resource = check_instance_access(client, request.session, vmid, node, SHARE_MAINTENANCE)
        node = resource['node']
        vm_type = resource.get('type', vm_type)
        if vm_type == 'lxc':
            ticket = client.get_term_ticket(node, vmid, vm_type)
        else:
            ticket = client.get_vnc_ticket(node, vmid, vm_type)
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to get console ticket')}), 500

    mode = 'terminal' if vm_type == 'lxc' else 'vnc'
    ws_query = urlencode({'node': node, 'vmid': vmid, 'type': vm_type, 'mode': mode})
    return jsonify({
        **ticket,
        'vncUrl': client.console_browser_url(node, vmid, vm_type, ticket.get('ticket')),
        'wsUrl': f"/api/ws/vnc?{ws_query}",
    })
