# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example admin service for an n8n deployment.

Serves the n8n-ops admin endpoints next to the deployment so backups can
be triggered and inspected over HTTP.

Run from the directory holding docker-compose.yml and .env:
    N8N_OPS_ADMIN_API_KEY=... uvicorn examples.admin_app:app

Environment variables:
    N8N_OPS_PROJECT_DIR: Deployment directory (default: current directory)
    N8N_OPS_ADMIN_API_KEY: API key for admin endpoints
"""

import os
from pathlib import Path

from fastapi import FastAPI

from n8nops.env import load_config
from n8nops.integrations.fastapi import ops_lifespan
from n8nops.log import command_log_file, configure_logging

project_dir = Path(os.getenv("N8N_OPS_PROJECT_DIR", ".")).resolve()
ops_config = load_config(project_dir / ".env", project_dir)

configure_logging(command_log_file(ops_config.log_dir, "admin"))

app = FastAPI(
    title="n8n admin",
    description="Backup status and on-demand backups for an n8n deployment",
    version="1.0.0",
    lifespan=lambda app: ops_lifespan(app, ops_config),
)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "n8n deployment admin",
        "docs": "/docs",
        "n8nops_admin": "/admin/n8nops/health",
    }


# ============================================================================
# n8n-ops Admin Endpoints (registered by ops_lifespan)
# ============================================================================
#
# GET  /admin/n8nops/health    - Service states and backup directory check
# GET  /admin/n8nops/artifacts - Backup archives, newest first
# GET  /admin/n8nops/runs      - Backup, restore and update history
# GET  /admin/n8nops/runs/{id} - One run
# POST /admin/n8nops/backup    - Run a backup now
# GET  /admin/n8nops/config    - Configuration (redacted)
