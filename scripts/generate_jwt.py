from __future__ import annotations

import argparse
from datetime import datetime, timedelta, timezone

import jwt

from leadlock.auth import ADMIN_ROLE


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate an admin JWT for the Lead Lock API.")
    parser.add_argument("--secret", required=True, help="Value of ADMIN_JWT_SECRET.")
    parser.add_argument("--subject", default="operator")
    parser.add_argument("--roles", default=ADMIN_ROLE, help="Comma-separated roles.")
    parser.add_argument("--hours", type=int, default=12)
    parser.add_argument("--algorithm", default="HS256")
    args = parser.parse_args()

    payload = {
        "sub": args.subject,
        "roles": [item.strip() for item in args.roles.split(",") if item.strip()],
        "exp": datetime.now(timezone.utc) + timedelta(hours=args.hours),
    }
    print(jwt.encode(payload, args.secret, algorithm=args.algorithm))


if __name__ == "__main__":
    main()
