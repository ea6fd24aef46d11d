#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Cloudy Server - self-service cloud console backend for Proxmox VE

Users register, get quotas and credits, and create/manage their own VMs and
containers from templates. Admins manage users, pricing, firewall, storage
and backups. Everything talks to Proxmox through one API token.

Dev Team:
  NS - Nico Schmidt (Lead)
  MK - Marcus Kellermann (Backend)
  LW - Laura Weber (Frontend, but helps here too sometimes)
"""

# CRITICAL: Gevent MUST be first!! dont move this!! - NS
import os
import sys

USE_GEVENT = os.environ.get('CLOUDY_NO_GEVENT', '').lower() not in ('1', 'true', 'yes')

if USE_GEVENT:
    from gevent import monkey
    monkey.patch_all()


HELP = """
Cloudy Server

Usage:
  python cloudy_server.py [options]

Options:
  --debug           verbose logging
  --help, -h        this message

Env vars:
  CLOUDY_CONFIG_DIR     database + key file location (default ./config)
  CLOUDY_HOST           bind address (default 0.0.0.0)
  CLOUDY_PORT           port (default 5000)
  CLOUDY_CORS_ORIGINS   comma separated cors origins
  CLOUDY_NO_GEVENT      1 = use Flask's threaded server
  CLOUDY_WEB_DIR        built web client (default ./web)
  PROXMOX_API_URL       fallback Proxmox host if setup was not run
  PROXMOX_API_TOKEN     fallback token, user@realm!name=secret
  PBS_API_URL           fallback PBS host
  PBS_API_TOKEN         fallback PBS token
  FRONTEND_URL          base url used in verification / reset mails
"""


def run():
    if '--help' in sys.argv or '-h' in sys.argv:
        print(HELP)
        return
    from cloudy.app import main
    main(debug_mode='--debug' in sys.argv)


if __name__ == '__main__':
    run()
