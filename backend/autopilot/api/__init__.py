"""
Autopilot - API Package
=======================

FastAPI application and routers.
"""
