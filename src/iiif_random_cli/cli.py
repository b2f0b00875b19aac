import argparse
import sys
from pathlib import Path

from iiif_random_core import __version__
from iiif_random_core.config_manager import get_config_manager, resolve_display_settings, validate_item_url_pattern
from iiif_random_core.logger import get_logger, setup_logging
from iiif_random_core.pipeline import update_displayed_images
from iiif_random_core.services.storage.display_store import DisplayStore, DisplayStoreError

logger = get_logger(__name__)


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an integer: {value}") from exc
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1: {value}")
    return number


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="iiif-random",
        description="Pick random canvases from a pool of IIIF manifests and publish them for display",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--db", metavar="PATH", help="SQLite database (default: paths.database in config.json)")

    parser.add_argument("--refresh", action="store_true", help="Select a new set of images now")
    parser.add_argument("-n", "--number", type=_positive_int, help="Number of images for this run")
    parser.add_argument("--size", type=_positive_int, help="Max image size in pixels for this run")
    parser.add_argument("--rules-file", metavar="FILE", help="Selection rules to use for this run")
    parser.add_argument("--progress", action="store_true", help="Show a progress bar while fetching manifests")

    parser.add_argument("--import-urls", metavar="FILE", help="Replace the manifest URL pool (one URL per line)")
    parser.add_argument(
        "--no-refresh", action="store_true", help="Do not refresh the images after --import-urls"
    )
    parser.add_argument("--set-rules-file", metavar="FILE", help="Save selection rules to config.json")
    parser.add_argument(
        "--set-pattern",
        metavar="TEMPLATE",
        help="Save the v3 item URL pattern (must contain {identifier}; empty string clears it)",
    )

    parser.add_argument("--list", action="store_true", help="List the currently displayed images")
    parser.add_argument("--list-urls", action="store_true", help="List the manifest URL pool")
    return parser


def _read_text(path: str) -> str:
    return Path(path).expanduser().read_text(encoding="utf-8")


def _render_display_list(store: DisplayStore) -> None:
    items = store.get_display_images()
    if not items:
        print("No images are currently selected. Run with --refresh to generate the initial set.")
        return

    print(f"\n🖼  Currently displayed images ({len(items)})\n" + "=" * 80)
    for item in items:
        print(f"• {item.label}")
        print(f"    Image:       {item.image_url}")
        print(f"    Manifest:    {item.manifest_url}")
        print(f"    Source Page: {item.related_url}")


def _render_url_list(store: DisplayStore) -> None:
    urls = store.get_manifest_urls()
    print(f"\n📚 Manifest URL pool ({len(urls)} entries)\n" + "=" * 80)
    for url in urls:
        print(url)


def _save_settings(args) -> bool:
    """Persist --set-* options; return False if any value was rejected."""
    if args.set_rules_file is None and args.set_pattern is None:
        return True

    cm = get_config_manager()
    if args.set_rules_file is not None:
        cm.set_setting("display.selection_rules", _read_text(args.set_rules_file))
        print("✅ Selection rules saved.")
    if args.set_pattern is not None:
        try:
            cm.set_setting("display.v3_item_url_pattern", validate_item_url_pattern(args.set_pattern))
        except ValueError as exc:
            print(f"❌ {exc}")
            return False
        print("✅ v3 item URL pattern saved.")
    cm.save()
    return True


def _refresh(args, store: DisplayStore) -> bool:
    rules = _read_text(args.rules_file) if args.rules_file else None
    written = update_displayed_images(
        args.number,
        args.size,
        rules,
        store=store,
        settings=resolve_display_settings(),
        show_progress=args.progress,
    )
    if written:
        print(f"✅ The displayed images have been updated with {written} items.")
        return True
    print("⚠️  Could not update the displayed images. Please check the logs.")
    return False


def main(argv=None) -> int:
    """Entry point for the `iiif-random` command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    setup_logging()

    if not _save_settings(args):
        return 1

    try:
        store = DisplayStore(args.db)
    except DisplayStoreError as exc:
        logger.error("Cannot open database: %s", exc)
        return 1

    ok = True
    refresh = args.refresh
    if args.import_urls:
        try:
            count = store.replace_manifest_urls(_read_text(args.import_urls))
        except DisplayStoreError:
            print("❌ An error occurred while updating the URL list.")
            return 1
        print(f"✅ The manifest URL list has been updated ({count} URLs).")
        refresh = refresh or not args.no_refresh

    if refresh:
        ok = _refresh(args, store)

    if args.list_urls:
        _render_url_list(store)
    if args.list:
        _render_display_list(store)

    nothing_requested = not (refresh or args.import_urls or args.list or args.list_urls)
    if nothing_requested and args.set_rules_file is None and args.set_pattern is None:
        parser.print_help()

    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
