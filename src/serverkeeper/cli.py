"""Command-line entry point: ``python -m serverkeeper``."""

import argparse
import logging
import sys
from pathlib import Path

from .backup import human_size
from .config import ConfigError, load_config
from .supervisor import ServerKeeper


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="serverkeeper", description="Game server supervisor and backups")
    parser.add_argument("-c", "--config", type=Path, help="YAML config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("status", help="Print a health verdict")
    sub.add_parser("heal", help="Check health and repair if needed")
    sub.add_parser("restart", help="Plain stop + start through systemd")
    sub.add_parser("repair", help="Force the full repair sequence")
    backup = sub.add_parser("backup", help="Run a backup now")
    backup.add_argument("--no-compress", action="store_true", help="Copy the tree instead of zipping")
    sub.add_parser("prune", help="Apply backup retention")
    sub.add_parser("verify", help="Verify the newest backup")
    sub.add_parser("stats", help="Backup statistics")
    sub.add_parser("watch", help="Run the supervisor loop in the foreground")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s'
    )

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    keeper = ServerKeeper(config)

    if args.command == "status":
        verdict = keeper.check_health()
        icon = "✓" if verdict.is_healthy else "✗"
        print(f"{icon} {config.service_name}: {verdict.reason}")
        print(f"   Service: {verdict.service_status.value}")
        print(f"   Process found: {verdict.process_found}")
        print(f"   Database responsive: {verdict.database_responsive}")
        print(f"   Log active: {verdict.log_active}")
        return 0 if verdict.is_healthy else 1

    if args.command == "heal":
        result = keeper.heal()
        print(f"Action: {result['action']}")
        return 0 if result.get("success", True) else 1

    if args.command == "restart":
        result = keeper.controller.restart(config.service_name)
        print(f"Restart {'ok' if result else 'failed: ' + result.detail}")
        return 0 if result else 1

    if args.command == "repair":
        outcome = keeper.repair()
        print(" -> ".join(s.value for s in outcome.states))
        return 0 if outcome.success else 1

    if args.command == "backup":
        result = keeper.backup_now(compress=False if args.no_compress else None)
        if result:
            print(f"✓ {result.artifact.path} ({human_size(result.artifact.size_bytes)}, tier {result.tier})")
            return 0
        print(f"✗ Backup failed: {result.error}")
        return 1

    if args.command == "prune":
        report = keeper.prune()
        print(f"Removed {len(report.removed)} backups, freed {human_size(report.freed_bytes)}")
        return 0 if report.enumerated and not report.failed else 1

    if args.command == "verify":
        ok = keeper.verify_latest()
        print("✓ Newest backup OK" if ok else "✗ Newest backup failed verification")
        return 0 if ok else 1

    if args.command == "stats":
        stats = keeper.statistics()
        print(f"Backups: {stats.count} ({stats.total_human})")
        if stats.newest:
            print(f"  Newest: {stats.newest.name} ({stats.newest.created_at:%Y-%m-%d %H:%M})")
            print(f"  Oldest: {stats.oldest.name} ({stats.oldest.created_at:%Y-%m-%d %H:%M})")
        return 0

    if args.command == "watch":
        keeper.start()
        try:
            while keeper.is_alive():
                keeper.join(timeout=1.0)
        except KeyboardInterrupt:
            keeper.stop()
        return 0

    return 2


if __name__ == "__main__":
    sys.exit(main())
