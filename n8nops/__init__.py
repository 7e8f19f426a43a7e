# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
n8n-ops - Backup, restore and update orchestration for an n8n + PostgreSQL
Docker Compose deployment.

Backups are atomic archives with age-based retention, restores walk an
explicit state machine with readiness gating, and updates always run
behind a fresh backup. Package name: n8nops.
"""

__version__ = "0.1.0"

# Configuration
from n8nops.config import OpsConfig, VersionSpec
from n8nops.env import load_config, migrate_default_secrets

# Runtime wiring
from n8nops.core import initialize_ops_state, operation_scope

# Orchestrators
from n8nops.backup import run_backup, run_restore
from n8nops.update import run_update

__all__ = [
    # Version
    "__version__",
    # Configuration
    "OpsConfig",
    "VersionSpec",
    "load_config",
    "migrate_default_secrets",
    # Runtime
    "initialize_ops_state",
    "operation_scope",
    # Orchestrators
    "run_backup",
    "run_restore",
    "run_update",
]
