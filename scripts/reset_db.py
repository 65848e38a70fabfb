#!/usr/bin/env python3
"""Script to reset the database and the uploaded knowledge files.

Usage:
  python scripts/reset_db.py [--force] [--only db|uploads]
"""

import argparse
import os
import shutil
import sys
from pathlib import Path

# Add project root to sys.path so we can import the backend package
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dotenv import load_dotenv

from coach_backend.core.database import Base, get_engine, init_db


def reset_database(force: bool):
    """Drop and recreate all tables."""
    print("🏋️ Resetting database...")
    if not force:
        confirm = input("  This will delete all users, conversations and messages. Continue? [y/N]: ")
        if confirm.lower() != 'y':
            print("  Skipping database reset.")
            return

    init_db(os.environ.get("DATABASE_URL", "sqlite:///data/fitcoach.sqlite"))

    engine = get_engine()
    if engine is None:
        print("  ❌ Failed to initialize the database engine.")
        return
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    print("  ✅ Tables dropped and recreated.")


def reset_uploads(force: bool):
    """Delete every stored knowledge file."""
    upload_dir = Path(os.environ.get("UPLOAD_DIR", "data/uploads"))
    print(f"🏋️ Clearing uploads in {upload_dir}...")
    if not upload_dir.exists():
        print("  ℹ️ Upload directory does not exist.")
        return

    if not force:
        confirm = input("  This will delete all uploaded knowledge files. Continue? [y/N]: ")
        if confirm.lower() != 'y':
            print("  Skipping uploads reset.")
            return

    shutil.rmtree(upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    print("  ✅ Upload directory emptied.")


def main():
    parser = argparse.ArgumentParser(description="Reset FitCoach data.")
    parser.add_argument("--force", "-f", action="store_true", help="Skip confirmation prompts")
    parser.add_argument("--only", choices=["db", "uploads"], help="Only reset one datastore")
    args = parser.parse_args()

    load_dotenv(project_root / ".env")

    print("\n⚠️ WARNING: Data Reset ⚠️\n")

    if args.only in ["db", None]:
        reset_database(args.force)
        print("")

    if args.only in ["uploads", None]:
        reset_uploads(args.force)
        print("")

    print("✅ Done!")


if __name__ == "__main__":
    main()
