"""
Index a site from the command line.

Runs one crawl -> process -> embed -> index job in-process, using the
same services the API builds, and prints the final job status.

Usage:
    python scripts/index_site.py <tenant_id> <collection_id> <domain> [--max-pages N]
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
from site_kb.container import build_services
from site_kb.core.logging_config import configure_logging


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Crawl a domain into a tenant collection.")
    parser.add_argument("tenant_id")
    parser.add_argument("collection_id")
    parser.add_argument("domain")
    parser.add_argument("--max-pages", type=int, default=None)
    parser.add_argument("--no-robots", action="store_true", help="Ignore robots.txt")
    parser.add_argument("--reindex", action="store_true", help="Delete existing content first")
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)
    settings = Settings()
    configure_logging(settings.log_level)

    services = build_services(settings)
    await services.start()
    try:
        coordinator = services.coordinator

        overrides = {}
        if args.max_pages is not None:
            overrides["max_pages"] = args.max_pages
        if args.no_robots:
            overrides["respect_robots"] = False
        options = coordinator.default_options.model_copy(update=overrides)

        if args.reindex:
            report = await coordinator.delete_collection(args.tenant_id, args.collection_id)
            print(f"Removed {report.vectors_removed} vectors, {report.documents_removed} documents.")

        ref = await coordinator.start_indexing(
            args.tenant_id, args.collection_id, args.domain, options
        )
        print(f"Job {ref.job_id} ({'started' if ref.created else 'already running'})")

        if ref.handle is not None:
            await ref.handle.wait()

        job = await services.jobs.get_job(ref.job_id)
        if job is None:
            print("Job record not found.")
            return 1

        print(
            f"Status: {job.status.value} | pages found {job.pages_found}, "
            f"processed {job.pages_processed}, failed {job.pages_failed}, "
            f"skipped {job.pages_skipped} | documents {job.documents_indexed}"
        )
        if job.error:
            print(f"Error: {job.error}")
        return 0 if job.status.value == "completed" else 1
    finally:
        await services.close()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
