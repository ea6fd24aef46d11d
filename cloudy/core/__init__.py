# -*- coding: utf-8 -*-
"""Cloudy core - persistence, Proxmox/PBS clients, billing, sharing"""
