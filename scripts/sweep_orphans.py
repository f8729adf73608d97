"""Find blobs that no picture row references and optionally delete them.

Run from the repository root while uploads are paused, since an upload in
flight has its blob stored before its row exists:

    python -m scripts.sweep_orphans            # report only
    python -m scripts.sweep_orphans --delete   # remove orphans
"""
import argparse
import asyncio
import logging

from config import Settings
from database import Database
from gallery import Gallery
from storage import build_object_store


async def run(delete: bool) -> list[str]:
    settings = Settings.from_env()
    db = Database(settings.db_path)
    await db.initialize()
    gallery = Gallery(db, build_object_store(settings))
    return await gallery.sweep_orphans(dry_run=not delete)


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--delete", action="store_true", help="delete orphaned blobs")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)

    orphans = asyncio.run(run(args.delete))
    action = "Deleted" if args.delete else "Found"
    print(f"{action} {len(orphans)} orphaned blob(s).")
    for key in orphans:
        print(f"  {key}")


if __name__ == "__main__":
    main()
