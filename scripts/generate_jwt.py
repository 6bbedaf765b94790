from __future__ import annotations

import argparse
from datetime import datetime, timedelta

import jwt

from stageflow.app.auth import ALL_ROLES


def main() -> None:
    parser = argparse.ArgumentParser(description="Issue a bearer token for the Stageflow API.")
    parser.add_argument("--secret", required=True)
    parser.add_argument("--subject", required=True, help="User id recorded as the stage-change actor.")
    parser.add_argument(
        "--roles",
        required=True,
        help=f"Comma-separated roles out of: {', '.join(sorted(ALL_ROLES))}.",
    )
    parser.add_argument("--email", default="")
    parser.add_argument("--hours", type=int, default=12)
    parser.add_argument("--algorithm", default="HS256")
    args = parser.parse_args()

    roles = [item.strip() for item in args.roles.split(",") if item.strip()]
    unknown = sorted(set(roles) - ALL_ROLES)
    if unknown:
        parser.error(f"unknown roles: {', '.join(unknown)}")

    claims = {
        "sub": args.subject,
        "roles": roles,
        "exp": datetime.utcnow() + timedelta(hours=args.hours),
    }
    if args.email.strip():
        claims["email"] = args.email.strip()
    print(jwt.encode(claims, args.secret, algorithm=args.algorithm))


if __name__ == "__main__":
    main()
