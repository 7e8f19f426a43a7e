# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Framework Integrations - FastAPI admin endpoints.
"""

from n8nops.integrations.fastapi import (
    ops_lifespan,
    register_ops_routes,
    verify_api_key,
)

__all__ = [
    "ops_lifespan",
    "register_ops_routes",
    "verify_api_key",
]
