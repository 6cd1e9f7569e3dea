"""
Core Module - Shared infrastructure for cross-cutting concerns.

This module provides:
- The RBAC permission resolution engine (``core.rbac``)
- Structured logging configuration (``core.logging_config``)
"""
