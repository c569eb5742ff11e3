"""
Sweep orphaned vectors and metadata for one or more tenants.

Deletes are two-phase (vectors, then metadata), so a crash between the
phases, or a metadata write that fails after its vectors were written,
leaves orphans behind. Run this after such failures, or on a schedule
(cron) while no indexing job is running for the tenant.

Usage:
    python scripts/reconcile_index.py <tenant_id> [<tenant_id> ...]
"""

import argparse
import asyncio
import os
import sys

# Ensure src is in pythonpath
sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from dotenv import load_dotenv
load_dotenv()

from site_kb.config import Settings
from site_kb.container import ServiceContainer, build_services
from site_kb.core.errors import InvalidTenantError, JobConflictError
from site_kb.core.logging_config import configure_logging


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Remove orphaned vectors and documents.")
    parser.add_argument("tenant_ids", nargs="+", metavar="tenant_id")
    return parser.parse_args(argv)


async def reconcile_tenants(services: ServiceContainer, tenant_ids) -> int:
    """
    Reconcile each tenant in turn. Returns the process exit code.

    Invalid tenants and tenants with a running job are skipped and make
    the exit code 1.
    """
    exit_code = 0
    for tenant_id in tenant_ids:
        try:
            report = await services.coordinator.reconcile(tenant_id)
        except (InvalidTenantError, JobConflictError) as exc:
            print(f"{tenant_id}: skipped ({exc})")
            exit_code = 1
            continue

        print(
            f"{tenant_id}: removed {report.orphan_vectors_removed} orphan vectors, "
            f"{report.orphan_documents_removed} orphan documents"
        )
    return exit_code


async def main(argv=None) -> int:
    args = parse_args(argv)
    settings = Settings()
    configure_logging(settings.log_level)

    services = build_services(settings)
    await services.start()
    try:
        return await reconcile_tenants(services, args.tenant_ids)
    finally:
        await services.close()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
