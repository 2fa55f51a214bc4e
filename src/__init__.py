"""
SKYWATCH - Observatory Telemetry & Mount Kinematics
Package initialization

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.
"""

__version__ = "0.1.0"
__author__ = "SKYWATCH Development Team"
__description__ = "Observatory dashboard telemetry core with GEM and dome kinematics"

from .coordinates import parse_coordinate, hms_to_hours, format_hms
from .models import GeometryConfig, ObservatoryState, PierSide, ShutterState

__all__ = [
    'parse_coordinate',
    'hms_to_hours',
    'format_hms',
    'GeometryConfig',
    'ObservatoryState',
    'PierSide',
    'ShutterState',
]
