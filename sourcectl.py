#!/usr/bin/env python3
"""
Source management CLI - commands for inspecting and driving the artifact synchronizer.

Usage: python sourcectl.py <command> [options]

Commands:
    list            - List configured sources with status and last check
    check <id>      - Run one check cycle for a source now
    check-all       - Check every enabled source concurrently
    enable <id>     - Enable a source (initializes and seeds it)
    disable <id>    - Disable a source (keeps its configuration)
    rescan <id>     - Register files that already exist at the source
    stats           - Show catalog statistics

check, check-all and rescan print the activity they recorded afterwards.
"""

import asyncio
import logging
import os
import sys
from datetime import datetime
from typing import Optional

# Add project root to PYTHONPATH
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from core.config import load_settings
from core.errors import LockContention, SourceError
from core.infra.storage import format_file_size
from core.models import CheckResult, SourceStatus
from main import LOG_FORMAT, create_runtime


class Colors:
    """ANSI color codes for terminal output."""
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    CYAN = "\033[96m"
    WHITE = "\033[97m"
    BOLD = "\033[1m"
    END = "\033[0m"


STATUS_COLORS = {
    SourceStatus.ACTIVE: Colors.GREEN,
    SourceStatus.CHECKING: Colors.BLUE,
    SourceStatus.ERROR: Colors.RED,
    SourceStatus.DISABLED: Colors.YELLOW,
}


def format_timestamp(dt: Optional[datetime]) -> str:
    """Format datetime for display."""
    if not dt:
        return "never"
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC")


def print_result(result: CheckResult) -> None:
    if result.skipped:
        print(f"{Colors.YELLOW}⏭  {result.source_id}: skipped (disabled){Colors.END}")
        return
    if not result.success:
        print(f"{Colors.RED}❌ {result.source_id}: {result.error}{Colors.END}")
        return
    color = Colors.GREEN if not result.failed else Colors.YELLOW
    print(
        f"{color}✅ {result.source_id}: {result.discovered} discovered, "
        f"{result.new} new, {result.fetched} stored, {result.failed} failed{Colors.END}"
    )


async def show_sources(orchestrator) -> None:
    configs = await orchestrator.config_store.find_all()
    print(f"{Colors.BOLD}📋 Configured Sources{Colors.END}")
    print("=" * 60)
    if not configs:
        print(f"{Colors.YELLOW}No sources configured{Colors.END}")
        return

    for config in configs:
        color = STATUS_COLORS.get(config.status, Colors.WHITE)
        print(f"{color}●{Colors.END} {Colors.BOLD}{config.id}{Colors.END} ({config.name})")
        print(f"   Type: {Colors.CYAN}{config.type}{Colors.END}")
        print(f"   Status: {color}{config.status.value}{Colors.END}")
        print(f"   Last Check: {Colors.WHITE}{format_timestamp(config.last_check)}{Colors.END}")


async def show_stats(catalog) -> None:
    stats = await catalog.stats()
    print(f"{Colors.BOLD}📊 Catalog Statistics{Colors.END}")
    print("=" * 50)
    print(f"Artifacts: {Colors.WHITE}{stats['total_artifacts']}{Colors.END}")
    print(f"Total Size: {Colors.WHITE}{format_file_size(stats['total_size'])}{Colors.END}")
    if stats["by_source"]:
        print(f"\n{Colors.BOLD}By source:{Colors.END}")
        for source_id, count in sorted(stats["by_source"].items()):
            print(f"  {source_id}: {Colors.CYAN}{count}{Colors.END}")
    if stats["by_category"]:
        print(f"\n{Colors.BOLD}By category:{Colors.END}")
        for category, count in sorted(stats["by_category"].items()):
            print(f"  {category}: {Colors.CYAN}{count}{Colors.END}")


def show_activity(activity) -> None:
    events = activity.recent(20)
    if not events:
        print(f"{Colors.YELLOW}No activity recorded{Colors.END}")
        return
    print(f"\n{Colors.BOLD}Activity{Colors.END}")
    for event in reversed(events):
        color = {"success": Colors.GREEN, "error": Colors.RED, "warning": Colors.YELLOW}.get(
            event.level, Colors.WHITE
        )
        print(f"{format_timestamp(event.timestamp)} {color}{event.kind:<6}{Colors.END} {event.message}")


def require_id() -> str:
    if len(sys.argv) < 3:
        print(f"{Colors.RED}Missing source id{Colors.END}")
        print(__doc__)
        sys.exit(2)
    return sys.argv[2]


async def main():
    """Main CLI entry point."""
    if len(sys.argv) < 2:
        print(__doc__)
        return

    command = sys.argv[1].lower()
    settings = load_settings()
    logging.basicConfig(level=logging.DEBUG if settings.debug else logging.WARNING,
                        format=LOG_FORMAT)

    db, catalog, orchestrator = await create_runtime(settings)
    try:
        if command == "list":
            await show_sources(orchestrator)
        elif command == "stats":
            await show_stats(catalog)
        elif command == "check":
            source_id = require_id()
            await orchestrator.start()
            print(f"{Colors.BLUE}🔍 Checking {source_id}...{Colors.END}")
            print_result(await orchestrator.check_source(source_id))
            show_activity(orchestrator.activity)
        elif command == "check-all":
            await orchestrator.start()
            print(f"{Colors.BLUE}🔍 Checking all enabled sources...{Colors.END}")
            for result in await orchestrator.check_all():
                print_result(result)
            show_activity(orchestrator.activity)
        elif command == "enable":
            source_id = require_id()
            await orchestrator.enable_source(source_id)
            print(f"{Colors.GREEN}✅ Source {source_id} enabled{Colors.END}")
        elif command == "disable":
            source_id = require_id()
            await orchestrator.disable_source(source_id)
            print(f"{Colors.GREEN}✅ Source {source_id} disabled{Colors.END}")
        elif command == "rescan":
            source_id = require_id()
            await orchestrator.start()
            print_result(await orchestrator.rescan_source(source_id))
            show_activity(orchestrator.activity)
        else:
            print(f"{Colors.RED}Unknown command: {command}{Colors.END}")
            print(__doc__)

    except LockContention as e:
        print(f"{Colors.YELLOW}⚠️  {e}{Colors.END}")
    except SourceError as e:
        print(f"{Colors.RED}Error: {e}{Colors.END}")
    except KeyboardInterrupt:
        print(f"\n{Colors.YELLOW}Interrupted{Colors.END}")
    finally:
        await orchestrator.stop()
        await db.close()


if __name__ == "__main__":
    asyncio.run(main())
