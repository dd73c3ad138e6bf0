"""
Autopilot
=========

Autonomous agent orchestration engine: drives an assistant CLI through
discovery, fix, test, improve and review cycles against a target project.
"""

__version__ = "0.1.0"
