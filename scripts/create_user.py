"""Create an account directly in MongoDB.

Usage:
  python scripts/create_user.py --username alice --email alice@example.com --password '...' --role admin

NOTE: This is intended for local/dev, e.g. to seed the first admin.
"""

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from account_service.auth.crud import create_account
from account_service.auth.security import get_password_hasher
from account_service.config import load_config
from account_service.db import MongoConnector, ensure_indexes
from account_service.errors import AccountServiceError
from account_service.lifecycle import get_lifecycle
from account_service.models import ROLES


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--username", required=True)
    ap.add_argument("--email", required=True)
    ap.add_argument("--password", required=True)
    ap.add_argument("--first-name")
    ap.add_argument("--last-name")
    ap.add_argument("--role", choices=sorted(ROLES), default="student")
    args = ap.parse_args()

    cfg = load_config()
    connector = MongoConnector(cfg)
    lifecycle = get_lifecycle()
    lifecycle.on_shutdown(connector.close)
    # Ctrl-C during a slow connect or hash still closes the pool.
    lifecycle.install_signal_handlers()
    if not connector.connect().ok:
        sys.exit(1)

    try:
        db = connector.database
        ensure_indexes(db)
        account = create_account(
            db,
            hasher=get_password_hasher(cfg.AUTH_HASH_ROUNDS),
            username=args.username,
            email=args.email,
            password=args.password,
            first_name=args.first_name,
            last_name=args.last_name,
            role=args.role,
        )
    except AccountServiceError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(2)
    finally:
        connector.close()

    print("Created user:")
    print(account.view().to_dict())


if __name__ == "__main__":
    main()
