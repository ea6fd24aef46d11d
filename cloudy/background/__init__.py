# -*- coding: utf-8 -*-
"""
Cloudy Background Tasks - Layer 6
Long running daemon threads started from app.main().
"""
