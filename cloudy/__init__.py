# -*- coding: utf-8 -*-
"""
Cloudy - self-service control panel for Proxmox VE
"""

from cloudy.constants import CLOUDY_VERSION

__version__ = CLOUDY_VERSION
