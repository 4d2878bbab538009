"""
RoboClub backend core.

This package provides the role-gated authentication and authorization core
of the robotics-club API:
- Configuration and service wiring
- Auth services, guards and routers (``roboclub.auth``)
- Email notifications
"""
