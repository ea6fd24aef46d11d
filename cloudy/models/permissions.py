# -*- coding: utf-8 -*-
"""
Cloudy Roles & Share Permissions - Layer 1
"""

ROLE_ADMIN = 'ADMIN'
ROLE_USER = 'USER'

ROLES = (ROLE_ADMIN, ROLE_USER)

# higher = more privileges, used when minting API tokens
ROLE_HIERARCHY = {
    ROLE_ADMIN: 2,
    ROLE_USER: 1,
}

# Instance shares
SHARE_READONLY = 'READONLY'
SHARE_MAINTENANCE = 'MAINTENANCE'
SHARE_ADMIN = 'ADMIN'

SHARE_LEVELS = {
    SHARE_READONLY: 1,
    SHARE_MAINTENANCE: 2,
    SHARE_ADMIN: 3,
}


def share_level(permission: str) -> int:
    return SHARE_LEVELS.get(permission, 0)


def share_allows(granted: str, required: str) -> bool:
    """True if a share with `granted` permission covers `required`"""
    return share_level(granted) >= share_level(required) > 0
