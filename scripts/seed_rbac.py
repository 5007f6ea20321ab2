#!/usr/bin/env python3
"""Seed the configured persistence back-end with the default roles and users.

Usage:
    python scripts/seed_rbac.py            # only when the store is empty
    python scripts/seed_rbac.py --force    # replace existing data
"""

import sys
from pathlib import Path

# Ensure project root is on path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from rbac_engine.common.config import get_settings
from rbac_engine.common.logging import setup_logging
from rbac_engine.store.persistence import build_persistence
from rbac_engine.store.seed import default_seed
from rbac_engine.store.service import EntityStore


def seed_rbac(force: bool = False) -> None:
    settings = get_settings()
    setup_logging(settings.log_level)
    store = EntityStore(settings, build_persistence(settings))

    if not store.is_empty() and not force:
        print("  [skip] store already contains data (use --force to replace)")
        return

    store.reset(default_seed())
    for role in store.get_roles():
        print(f"  [created] {role.key} ({len(role.permissions)} permissions, "
              f"{store.count_users_with_role(role.id)} users)")

    print(f"\nDone. {len(store.get_permissions())} permissions seeded.")


if __name__ == "__main__":
    seed_rbac(force="--force" in sys.argv[1:])
