#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
from datetime import UTC, datetime, timedelta

import jwt


def build_claims(
    *,
    user_id: str,
    name: str,
    email: str,
    ttl_minutes: int,
    issuer: str,
    audience: str,
) -> dict[str, object]:
    now = datetime.now(UTC)
    claims: dict[str, object] = {
        "sub": user_id,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
    }
    if name:
        claims["name"] = name
    if email:
        claims["email"] = email
    if issuer:
        claims["iss"] = issuer
    if audience:
        claims["aud"] = audience
    return claims


def main() -> int:
    parser = argparse.ArgumentParser(description="Mint an HS256 bearer token for local API testing")
    parser.add_argument("user_id", help="token subject (the account id)")
    parser.add_argument("--name", default="", help="display name carried in the name claim")
    parser.add_argument("--email", default="", help="email claim")
    parser.add_argument("--ttl-minutes", type=int, default=60, help="token lifetime")
    parser.add_argument("--secret", default=os.environ.get("JWT_SHARED_SECRET", ""), help="HS256 shared secret")
    parser.add_argument("--issuer", default=os.environ.get("JWT_ISSUER", ""), help="iss claim")
    parser.add_argument("--audience", default=os.environ.get("JWT_AUDIENCE", ""), help="aud claim")
    parser.add_argument("--json", action="store_true", help="print claims and token as JSON")
    args = parser.parse_args()

    if not args.secret:
        parser.error("a shared secret is required (--secret or JWT_SHARED_SECRET)")

    claims = build_claims(
        user_id=args.user_id,
        name=args.name,
        email=args.email,
        ttl_minutes=max(1, args.ttl_minutes),
        issuer=args.issuer,
        audience=args.audience,
    )
    token = jwt.encode(claims, args.secret, algorithm="HS256")
    if args.json:
        print(json.dumps({"claims": claims, "token": token}, ensure_ascii=True, sort_keys=True, indent=2))
    else:
        print(token)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
