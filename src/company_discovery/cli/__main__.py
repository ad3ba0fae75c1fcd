"""
Unified CLI entry point for the company discovery layer.

Usage:
    python -m company_discovery.cli <command> [options]

Available commands:
    discover  - Look up company pages for a name
    quota     - Show quota windows and usage warnings
    health    - Run the health probes and show circuit state
    flags     - Evaluate the feature flag catalogue
    cleanup   - Remove expired entries from the durable cache

Examples:
    python -m company_discovery.cli discover "Acme Corp" --priority high
    python -m company_discovery.cli quota
    python -m company_discovery.cli flags --user-id u-42
"""

import argparse
import asyncio
import sys
from typing import Any, Awaitable, Callable, Dict, List, Optional

from company_discovery.domain.discovery.exceptions import DiscoveryError
from company_discovery.domain.discovery.models import IdentityContext, Priority
from company_discovery.domain.discovery.service import DiscoveryService
from company_discovery.infrastructure.factory import build_discovery_service
from company_discovery.utils.logging import get_logger

logger = get_logger(__name__)


def print_candidates(name: str, candidates: List[Any]) -> None:
    print("\n" + "=" * 60)
    print(f"Discovery results for: {name}")
    print("=" * 60)
    if not candidates:
        print("No candidates found")
        return
    for index, candidate in enumerate(candidates, start=1):
        print(f"{index}. {candidate.display_name} ({candidate.confidence:.2f})")
        print(f"   {candidate.url}")
        if candidate.source != "provider":
            print(f"   source: {candidate.source}")


def print_quota_status(status: Dict[str, Any]) -> None:
    print("\n" + "=" * 60)
    print("Quota Status")
    print("=" * 60)
    print(f"{'Window':<10} {'Used':>8} {'Limit':>8} {'Left':>8} {'Usage':>8}  Resets at")
    print("-" * 60)
    for window, limit in status["limits"].items():
        print(
            f"{window:<10} {status['current'][window]:>8} {limit:>8} "
            f"{status['remaining'][window]:>8} {status['utilization'][window]:>7.1f}%  "
            f"{status['reset_times'][window]}"
        )
    print(f"\nDenied calls: {status['denials']}")
    for warning in status.get("warnings", []):
        print(f"⚠️  [{warning['level']}] {warning['message']}")


def print_health_status(health: Dict[str, Any]) -> None:
    marks = {"healthy": "✅", "degraded": "⚠️ ", "unhealthy": "❌"}
    print("\n" + "=" * 60)
    print("Health Status")
    print("=" * 60)
    print(f"Overall: {marks.get(health['status'], '')} {health['status']}")
    for name, passed in health["checks"].items():
        line = f"  {'✅' if passed else '❌'} {name}"
        if name in health["errors"]:
            line += f" ({health['errors'][name]})"
        print(line)

    resilience = health.get("resilience", {})
    print(f"\nOffline mode: {resilience.get('offline_mode', False)}")
    open_circuits = resilience.get("open_circuits", [])
    print(f"Open circuits: {', '.join(open_circuits) if open_circuits else 'none'}")


def print_flag_evaluations(evaluations: Dict[str, Any]) -> None:
    print("\n" + "=" * 60)
    print("Feature Flags")
    print("=" * 60)
    for key, evaluation in sorted(evaluations.items()):
        state = "on " if evaluation.enabled else "off"
        variant = f" [{evaluation.variant}]" if evaluation.variant else ""
        print(f"{state}  {key:<24} v{evaluation.version}  {evaluation.reason}{variant}")


async def _with_service(action: Callable[[DiscoveryService], Awaitable[int]]) -> int:
    service = build_discovery_service()
    await service.start(run_housekeeping=False)
    try:
        return await action(service)
    finally:
        await service.stop()


async def _discover(service: DiscoveryService, name: str, priority: str) -> int:
    try:
        candidates = await service.discover(name, Priority(priority), interactive=False)
    except DiscoveryError as e:
        logger.warning("cli.discover_failed", error_type=type(e).__name__, error=str(e))
        print(f"❌ {type(e).__name__}: {e}")
        return 1
    print_candidates(name, candidates)
    return 0


async def _quota(service: DiscoveryService) -> int:
    print_quota_status(service.get_quota_status())
    return 0


async def _health(service: DiscoveryService) -> int:
    health = await service.get_health_status()
    print_health_status(health)
    return 0 if health["status"] == "healthy" else 1


async def _flags(service: DiscoveryService, user_id: Optional[str]) -> int:
    identity = IdentityContext(user_id=user_id) if user_id else None
    print_flag_evaluations(service.rollout.evaluate_all(identity))
    return 0


async def _cleanup(service: DiscoveryService) -> int:
    removed = await service.cleanup()
    swept = service.cache.sweep_memory()
    print(f"🧹 Removed {removed} expired durable entries ({swept} in memory)")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point with subcommand routing.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    parser = argparse.ArgumentParser(
        prog="company_discovery.cli",
        description="Company discovery CLI - lookups and operational status",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(
        title="commands",
        description="Available commands",
        dest="command",
        required=True,
        help="Command to execute",
    )

    discover_parser = subparsers.add_parser("discover", help="Look up company pages for a name")
    discover_parser.add_argument("name", help="Company name to look up")
    discover_parser.add_argument(
        "--priority",
        choices=[p.value for p in Priority],
        default=Priority.NORMAL.value,
        help="Queue priority (default: normal)",
    )

    subparsers.add_parser("quota", help="Show quota windows and usage warnings")
    subparsers.add_parser("health", help="Run health probes")

    flags_parser = subparsers.add_parser("flags", help="Evaluate feature flags")
    flags_parser.add_argument("--user-id", help="Evaluate for this user id")

    subparsers.add_parser("cleanup", help="Remove expired cache entries")

    args = parser.parse_args(argv)

    if args.command == "discover":
        return asyncio.run(_with_service(lambda s: _discover(s, args.name, args.priority)))
    elif args.command == "quota":
        return asyncio.run(_with_service(_quota))
    elif args.command == "health":
        return asyncio.run(_with_service(_health))
    elif args.command == "flags":
        return asyncio.run(_with_service(lambda s: _flags(s, args.user_id)))
    elif args.command == "cleanup":
        return asyncio.run(_with_service(_cleanup))
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
