"""Refresh the local GeoIP databases from the command line (e.g. from cron)."""

import argparse
import sys

from geoip_api.config import get_settings
from geoip_api.errors import AppError
from geoip_api.logger import configure_logging
from geoip_api.updater import DatabaseUpdater


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Download and install GeoIP databases.")
    parser.add_argument(
        "provider",
        nargs="?",
        default="all",
        choices=["maxmind", "dbip", "all"],
        help="Provider to update (default: all)",
    )
    parser.add_argument("--force", action="store_true", help="Re-download files that already exist")
    parser.add_argument("--no-backup", action="store_true", help="Do not back up the current files")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.log_level, use_colors=sys.stderr.isatty())
    updater = DatabaseUpdater(settings)
    try:
        report = updater.update(args.provider, force=args.force, backup=not args.no_backup)
    except AppError as exc:
        print(f"Update failed: {exc}", file=sys.stderr)  # noqa: T201
        return 1

    for entry in report.updated:
        print(f"updated  {entry}")  # noqa: T201
    for entry in report.skipped:
        print(f"skipped  {entry}")  # noqa: T201
    for entry in report.errors:
        print(f"error    {entry}", file=sys.stderr)  # noqa: T201
    return 0 if report.success else 1


if __name__ == "__main__":
    sys.exit(main())
