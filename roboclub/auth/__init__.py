"""
Authentication and authorization for RoboClub.

This module provides authentication and authorization services:
- User registration and login
- JWT token handling with optional session store
- Role pre-approval registry
- Role, permission and ownership guards
"""
