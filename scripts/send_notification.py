#!/usr/bin/env python3
"""
Trigger a broadcast through the deployed service.

Usage:
  ADMIN_TOKEN=... python scripts/send_notification.py "Title" "Body" "https://nft-season.vercel.app/?group=live"

Optional: NOTIFY_API="https://nft-season.vercel.app" (defaults to production)
"""

import argparse
import os
import sys

import httpx
from dotenv import load_dotenv

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
load_dotenv(os.path.join(project_root, ".env"))

DEFAULT_API = "https://nft-season.vercel.app"


def die(message: str) -> None:
    print(message, file=sys.stderr)
    sys.exit(1)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Broadcast a push notification to all enabled subscribers.")
    parser.add_argument("title")
    parser.add_argument("body")
    parser.add_argument("target_url")
    parser.add_argument("--notification-id", default=None)
    parser.add_argument("--dry-run", action="store_true", help="Only report the recipient count")
    parser.add_argument("--timeout", type=float, default=60.0)
    args = parser.parse_args(argv)

    admin_token = os.getenv("ADMIN_TOKEN")
    if not admin_token:
        die("Missing ADMIN_TOKEN env var")

    api_base = (os.getenv("NOTIFY_API") or DEFAULT_API).rstrip("/")
    payload = {"title": args.title, "body": args.body, "targetUrl": args.target_url, "dryRun": args.dry_run}
    if args.notification_id:
        payload["notificationId"] = args.notification_id

    try:
        with httpx.Client(timeout=args.timeout) as client:
            response = client.post(
                f"{api_base}/api/notify/broadcast",
                headers={"Authorization": f"Bearer {admin_token}"},
                json=payload,
            )
    except httpx.HTTPError as exc:
        die(f"Send failed: {exc}")

    if response.status_code >= 400:
        die(f"Send failed: status={response.status_code}\n{response.text}")

    print(response.text)
    return 0


if __name__ == "__main__":
    sys.exit(main())
