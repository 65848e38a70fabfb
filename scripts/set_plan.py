#!/usr/bin/env python3
"""Switch a user between the FREE and PRO plans.

Usage:
  python scripts/set_plan.py <user_id> FREE|PRO
"""

import argparse
import os
import sys
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dotenv import load_dotenv

from coach_backend.core.database import init_db, set_user_plan


def main():
    parser = argparse.ArgumentParser(description="Set a FitCoach user's plan.")
    parser.add_argument("user_id", help="Auth provider subject of the user")
    parser.add_argument("plan", choices=["FREE", "PRO"])
    args = parser.parse_args()

    load_dotenv(project_root / ".env")
    init_db(os.environ.get("DATABASE_URL", "sqlite:///data/fitcoach.sqlite"))

    set_user_plan(args.user_id, args.plan)
    print(f"✅ {args.user_id} is now on the {args.plan} plan.")


if __name__ == "__main__":
    main()
