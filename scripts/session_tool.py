"""CLI for inspecting and managing saved SSP workbench data."""

import asyncio
import sys
import argparse
from pathlib import Path

from ssp_workflow.config import get_config
from ssp_workflow.models.document import STAGE_TITLES
from ssp_workflow.utils.storage import FileBackend, PersistenceStore, StorageError, format_bytes


def open_store(storage_dir: str = None) -> PersistenceStore:
    """Open the file-backed store used by the workbench."""
    config = get_config()
    backend = FileBackend(storage_dir or config.storage_dir)
    return PersistenceStore(
        backend,
        max_snapshot_bytes=config.max_snapshot_bytes,
        history_limit=config.save_history_limit,
        clear_retry_attempts=config.clear_retry_attempts,
    )


async def show_status(store: PersistenceStore) -> int:
    snapshot = await store.load()
    if snapshot is None:
        print("No saved SSP data")
        return 0

    document = snapshot.document
    print(f"System: {document.system_name}")
    print(f"Stage: {STAGE_TITLES[document.stage]} ({document.stage.value})")
    print(f"Controls: {len(document.controls)}")
    print(f"Catalogue: {document.catalogue_ref or '-'}")
    last_save = await store.last_save_time()
    print(f"Last saved: {last_save.isoformat() if last_save else 'unknown'}")
    print(f"Size: {format_bytes(await store.storage_size())}")
    return 0


async def show_history(store: PersistenceStore) -> int:
    entries = await store.history_entries()
    if not entries:
        print("No save history")
        return 0
    for entry in entries:
        print(f"{entry.timestamp.isoformat()}  {entry.system_name}  ({entry.control_count} controls)")
    return 0


async def export_backup(store: PersistenceStore, path: Path) -> int:
    """Write the saved snapshot to a file."""
    backup = await store.export_backup()
    if backup is None:
        print("No saved SSP data to export")
        return 1
    path.write_text(backup, encoding="utf-8")
    print(f"Exported backup to {path}")
    return 0


async def import_backup(store: PersistenceStore, path: Path) -> int:
    """Load a backup file into storage."""
    if not path.exists():
        print(f"File not found: {path}")
        return 1
    result = await store.import_backup(path.read_text(encoding="utf-8"))
    if not result.saved:
        print(f"Backup was not imported ({result.reason})")
        return 1
    print(f"Imported backup ({format_bytes(result.size_bytes or 0)})")
    return 0


async def clear_data(store: PersistenceStore) -> int:
    await store.clear()
    print("Saved SSP data cleared")
    return 0


async def main_async(args) -> int:
    """Main async function."""
    store = open_store(args.storage_dir)

    if args.command == "status":
        return await show_status(store)
    if args.command == "history":
        return await show_history(store)
    if args.command == "export":
        return await export_backup(store, Path(args.path))
    if args.command == "import":
        return await import_backup(store, Path(args.path))
    return await clear_data(store)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="SSP workbench saved data tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show what is saved
  python session_tool.py status

  # Back up and restore
  python session_tool.py export ssp_backup.json
  python session_tool.py import ssp_backup.json
        """,
    )
    parser.add_argument(
        "--storage-dir",
        help="Storage directory (default: from configuration)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("status", help="Show the saved document")
    subparsers.add_parser("history", help="List recent saves")
    export_parser = subparsers.add_parser("export", help="Export a backup file")
    export_parser.add_argument("path", help="Backup file to write")
    import_parser = subparsers.add_parser("import", help="Import a backup file")
    import_parser.add_argument("path", help="Backup file to read")
    subparsers.add_parser("clear", help="Delete saved data")

    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(main_async(args)))
    except StorageError as e:
        print(f"\nStorage error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
