# -*- coding: utf-8 -*-
"""Cloudy models"""
