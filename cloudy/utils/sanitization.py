# -*- coding: utf-8 -*-
"""
Cloudy Input Sanitization - Layer 1
Everything that ends up in a Proxmox URL path goes through here first.
"""

import re

from cloudy.constants import VM_TYPES
from cloudy.core.errors import ValidationError

_IDENTIFIER_RE = re.compile(r'[^a-zA-Z0-9_.@-]')
_NODE_RE = re.compile(r'^[a-zA-Z0-9]([a-zA-Z0-9.-]{0,62})$')
_STORAGE_RE = re.compile(r'^[a-zA-Z][a-zA-Z0-9_.-]{0,63}$')
_SNAPNAME_RE = re.compile(r'^[a-zA-Z][a-zA-Z0-9_-]{0,39}$')
_EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
_USERNAME_RE = re.compile(r'^[a-zA-Z0-9][a-zA-Z0-9_.-]{1,31}$')


def sanitize_identifier(value, max_length: int = 64) -> str:
    """strip everything that isnt a safe identifier char"""
    if not value:
        return ''
    return _IDENTIFIER_RE.sub('', str(value))[:max_length]


def parse_instance_id(raw) -> int:
    """'qemu/101', 'lxc-101', '101' -> 101 (non-digits are dropped)"""
    digits = re.sub(r'\D', '', str(raw or ''))
    if not digits:
        raise ValidationError(f"Invalid instance id: {raw!r}")
    vmid = int(digits)
    if vmid < 100 or vmid > 999999999:
        raise ValidationError(f"VMID out of range: {vmid}")
    return vmid


def detect_vm_type(raw_id, explicit: str = None) -> str:
    """explicit type wins, otherwise an 'lxc' prefix on the id, otherwise qemu"""
    if explicit:
        return validate_vm_type(explicit)
    if str(raw_id or '').lower().startswith('lxc'):
        return 'lxc'
    return 'qemu'


def validate_vm_type(vm_type: str) -> str:
    vm_type = (vm_type or 'qemu').lower()
    if vm_type not in VM_TYPES:
        raise ValidationError(f"Invalid type: {vm_type}. Must be one of {', '.join(VM_TYPES)}")
    return vm_type


def validate_node(node) -> str:
    node = str(node or '').strip()
    if not node:
        raise ValidationError('Node is required')
    if not _NODE_RE.match(node):
        raise ValidationError(f"Invalid node name: {node!r}")
    return node


def validate_storage(storage) -> str:
    storage = str(storage or '').strip()
    if not _STORAGE_RE.match(storage):
        raise ValidationError(f"Invalid storage name: {storage!r}")
    return storage


def validate_snapname(name) -> str:
    name = str(name or '').strip()
    if not _SNAPNAME_RE.match(name):
        raise ValidationError('Snapshot name must start with a letter and contain only letters, digits, _ or - (max 40)')
    return name


def validate_email(email) -> str:
    email = str(email or '').strip().lower()
    if not _EMAIL_RE.match(email) or len(email) > 254:
        raise ValidationError('Invalid email address')
    return email


def validate_username(username) -> str:
    username = str(username or '').strip()
    if not _USERNAME_RE.match(username):
        raise ValidationError('Username must be 2-32 characters: letters, digits, _ . -')
    return username


def validate_non_negative_int(value, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a non-negative integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a non-negative integer")
    if number < 0 or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(f"{field} must be a non-negative integer")
    return number


_GUEST_NAME_RE = re.compile(r'^[a-zA-Z0-9]([a-zA-Z0-9.-]{0,62})$')


def validate_guest_name(name) -> str:
    """proxmox wants DNS-style names for VMs and CT hostnames"""
    name = str(name or '').strip()
    if not _GUEST_NAME_RE.match(name) or name.endswith(('-', '.')):
        raise ValidationError('Name must be a valid hostname (letters, digits, - and ., max 63)')
    return name
