# -*- coding: utf-8 -*-
"""Cloudy utilities - auth, audit, sanitization"""
