# src/spmirror/cli.py

import argparse
import json
import os
import sys
from pathlib import Path
from typing import List, Optional, Tuple

from spmirror import log_utils
from spmirror.config import EngineConfig
from spmirror.constants import (
    CATEGORIES,
    CHARACTERISTICS,
    PACK_FORMAT_FOLDER,
    PACK_FORMATS,
    RELEASE_TYPES,
    REPORT_FORMATS,
    WILDCARD,
)
from spmirror.engine.catalog import CatalogResolver
from spmirror.engine.downloader import DownloadManager
from spmirror.engine.driverpack import DriverPackBuilder
from spmirror.engine.interfaces import (
    Filter,
    OsSpec,
    normalize_platform,
    normalize_selection,
)
from spmirror.engine.report import write_report
from spmirror.engine.state import RepositoryStore
from spmirror.engine.sync import RepositorySync, running_os_provider
from spmirror.exceptions import SpMirrorError, UsageError
from spmirror.log_utils import logger


def _add_filter_dimensions(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--category",
        action="append",
        metavar="CATEGORY",
        help=f"Category to match (repeatable): {', '.join(CATEGORIES)}",
    )
    parser.add_argument(
        "--release-type",
        action="append",
        metavar="TYPE",
        help=f"Release type to match (repeatable): {', '.join(RELEASE_TYPES)}",
    )
    parser.add_argument(
        "--characteristic",
        action="append",
        metavar="CHAR",
        help=f"Characteristic required (repeatable): {', '.join(CHARACTERISTICS)}",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="spmirror",
        description="spmirror - SoftPaq repository mirror and driver pack builder",
    )
    parser.add_argument(
        "--repo", default=os.getcwd(), help="Repository directory (default: cwd)"
    )
    parser.add_argument("--config", help="Path to spmirror.yaml")
    parser.add_argument("--log-level", help="Console log level (e.g. DEBUG)")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("init", help="Initialize a repository")
    subparsers.add_parser("info", help="Show repository state")

    add_parser = subparsers.add_parser("add-filter", help="Add a repository filter")
    add_parser.add_argument("--platform", required=True, help="4-digit platform id")
    add_parser.add_argument(
        "--os", default=WILDCARD, help="win10|win11[:version] or * (running OS)"
    )
    _add_filter_dimensions(add_parser)
    add_parser.add_argument("--prefer-ltsc", action="store_true")

    remove_parser = subparsers.add_parser(
        "remove-filter", help="Remove matching repository filters"
    )
    remove_parser.add_argument("--platform", required=True)
    remove_parser.add_argument(
        "--os", default=WILDCARD, help="OS to match; * matches any OS on file"
    )
    _add_filter_dimensions(remove_parser)
    remove_parser.add_argument(
        "--yes", action="store_true", help="Do not ask for confirmation"
    )

    setting_parser = subparsers.add_parser(
        "set-setting", help="Change a repository setting"
    )
    setting_parser.add_argument("name")
    setting_parser.add_argument("value")

    notify_parser = subparsers.add_parser(
        "notify", help="Manage e-mail notification settings"
    )
    notify_subparsers = notify_parser.add_subparsers(dest="notify_command")
    server_parser = notify_subparsers.add_parser("server", help="Set the mail server")
    server_parser.add_argument("server")
    server_parser.add_argument("--port", type=int, default=25)
    server_parser.add_argument("--tls", action="store_true")
    server_parser.add_argument("--user-name")
    server_parser.add_argument("--password")
    server_parser.add_argument("--from-address")
    server_parser.add_argument("--from-name")
    for name, help_text in (("add", "Add recipients"), ("remove", "Remove recipients")):
        recipients_parser = notify_subparsers.add_parser(name, help=help_text)
        recipients_parser.add_argument("addresses", nargs="+")
    notify_subparsers.add_parser("show", help="Show notification settings")
    notify_subparsers.add_parser("clear", help="Remove notification settings")

    sync_parser = subparsers.add_parser("sync", help="Sync the repository")
    sync_parser.add_argument("--reference-url", help="Override the reference host")
    sync_parser.add_argument(
        "--keep-invalid",
        action="store_true",
        help="Keep packages whose signature does not verify",
    )

    subparsers.add_parser("cleanup", help="Delete packages no longer selected")

    report_parser = subparsers.add_parser("report", help="Write the repository report")
    report_parser.add_argument("--format", choices=REPORT_FORMATS)
    report_parser.add_argument("--output", help="Report file path")

    query_parser = subparsers.add_parser("query", help="Query a reference catalog")
    _add_catalog_arguments(query_parser)

    pack_parser = subparsers.add_parser("driverpack", help="Build a driver pack")
    _add_catalog_arguments(pack_parser)
    pack_parser.add_argument("--name", help="Artifact base name (default DP<platform>)")
    pack_parser.add_argument("--output", default=os.getcwd(), help="Output directory")
    pack_parser.add_argument(
        "--format", choices=PACK_FORMATS, default=PACK_FORMAT_FOLDER
    )
    pack_parser.add_argument(
        "--unselect", action="append", default=[], help="Id or name fragment to leave out"
    )
    pack_parser.add_argument("--remove-older", action="store_true")
    pack_parser.add_argument("--overwrite", action="store_true")
    pack_parser.add_argument("--uwp", action="store_true", help="Build an app pack")
    pack_parser.add_argument(
        "--use-repository",
        action="store_true",
        help="Take packages from --repo when present instead of downloading",
    )
    return parser


def _add_catalog_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--platform", required=True)
    parser.add_argument("--os", help="win10:<version> or win11:<version>")
    parser.add_argument("--bitness", type=int)
    parser.add_argument(
        "--latest", action="store_true", help="Use the newest OS with a catalog"
    )
    parser.add_argument("--prefer-ltsc", action="store_true")
    parser.add_argument("--reference-url")
    _add_filter_dimensions(parser)


def _confirm_removal(filters: List[Filter]) -> bool:
    print("The following filters will be removed:")
    for flt in filters:
        print(f"  {flt.describe()}")
    answer = input("Remove these filters? [y/N] ").strip().lower()
    return answer in ("y", "yes")


def _print_json(data) -> None:
    print(json.dumps(data, indent=2))


def _query(
    args: argparse.Namespace,
    resolver: CatalogResolver,
    probed: Optional[Tuple[OsSpec, int]] = None,
):
    """Run a catalog query from parsed arguments; `probed` replaces `--latest` with an already probed OS."""
    if probed is not None:
        os_spec, bitness = probed
    else:
        os_spec = OsSpec.parse(args.os) if args.os else None
        bitness = args.bitness
    return resolver.query(
        args.platform,
        os_spec=os_spec,
        bitness=bitness,
        categories=args.category,
        release_types=args.release_type,
        characteristics=args.characteristic,
        prefer_ltsc=args.prefer_ltsc,
        reference_url=args.reference_url,
        latest=args.latest and probed is None,
    )


def _run_command(args: argparse.Namespace, config: EngineConfig) -> None:
    current_os = running_os_provider(config)
    store = RepositoryStore(args.repo, current_os=current_os)

    if args.command == "init":
        store.initialize()
    elif args.command == "info":
        _print_json(store.info())
    elif args.command == "add-filter":
        flt = Filter.create(
            args.platform,
            os=args.os,
            categories=args.category,
            release_types=args.release_type,
            characteristics=args.characteristic,
            prefer_ltsc=args.prefer_ltsc,
        )
        store.add_filter(flt)
    elif args.command == "remove-filter":
        store.remove_filters(
            args.platform,
            os_query=OsSpec.parse(args.os),
            categories=normalize_selection(args.category, CATEGORIES, "category"),
            release_types=normalize_selection(
                args.release_type, RELEASE_TYPES, "release type"
            ),
            characteristics=normalize_selection(
                args.characteristic, CHARACTERISTICS, "characteristic"
            ),
            confirm=None if args.yes else _confirm_removal,
        )
    elif args.command == "set-setting":
        store.set_setting(args.name, args.value)
    elif args.command == "notify":
        _run_notify(args, store)
    elif args.command == "sync":
        log_utils.add_activity_log(store.activity_log)
        try:
            sync = RepositorySync(
                store, config, current_os=current_os, keep_invalid=args.keep_invalid
            )
            result = sync.run(reference_url=args.reference_url)
        finally:
            log_utils.remove_activity_log()
        if result.failures:
            logger.warning(f"{len(result.failures)} packages could not be synced")
    elif args.command == "cleanup":
        store.load()
        log_utils.add_activity_log(store.activity_log)
        try:
            store.cleanup()
        finally:
            log_utils.remove_activity_log()
    elif args.command == "report":
        report_format = args.format or store.load().settings.report_format
        write_report(store.repo_path, report_format, args.output)
    elif args.command == "query":
        manager = DownloadManager(config)
        try:
            records = _query(args, CatalogResolver(config, manager))
        finally:
            manager.close()
        _print_json([r.to_dict() for r in records])
    elif args.command == "driverpack":
        _run_driverpack(args, config, store)


def _run_notify(args: argparse.Namespace, store: RepositoryStore) -> None:
    if args.notify_command == "server":
        store.set_notification_server(
            args.server,
            port=args.port,
            tls=args.tls,
            user_name=args.user_name,
            password=args.password,
            from_address=args.from_address,
            from_name=args.from_name,
        )
    elif args.notify_command == "add":
        store.add_recipients(args.addresses)
    elif args.notify_command == "remove":
        store.remove_recipients(args.addresses)
    elif args.notify_command == "clear":
        store.clear_notifications()
    else:
        _print_json(store.info()["Notifications"])


def _run_driverpack(
    args: argparse.Namespace, config: EngineConfig, store: RepositoryStore
) -> None:
    platform = normalize_platform(args.platform)
    manager = DownloadManager(config)
    try:
        resolver = CatalogResolver(config, manager)
        probed = None
        if args.latest:
            if args.os or args.bitness is not None:
                raise UsageError("--latest cannot be combined with --os or --bitness")
            probed = resolver.find_latest_supported(platform, args.reference_url)
        records = _query(args, resolver, probed)
        os_spec = probed[0] if probed else OsSpec.parse(args.os)
        builder = DriverPackBuilder(config, download_manager=manager)
        target = builder.build(
            records,
            os_spec,
            args.output,
            args.name or f"DP{platform}",
            pack_format=args.format,
            unselect=args.unselect,
            remove_older=args.remove_older,
            overwrite=args.overwrite,
            uwp=args.uwp,
            source_dir=store.repo_path if args.use_repository else None,
        )
    finally:
        manager.close()
    print(str(target.path))


def main(argv: Optional[List[str]] = None) -> int:
    """
    Entry point for the spmirror command-line interface.

    Returns:
        int: 0 on success, 1 when a spmirror error ended the command.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    try:
        config = EngineConfig.load(args.config)
        log_utils.set_log_level(args.log_level or config.log_level)
        if config.log_dir:
            log_utils.add_file_logging(Path(config.log_dir), config.log_level)
        _run_command(args, config)
    except SpMirrorError as e:
        logger.error(str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
