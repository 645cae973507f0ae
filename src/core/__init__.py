"""
Core Module - shared infrastructure for the device platform.

This module provides:
- Access control (roles, per-user overrides, scope, permission cache)
"""
