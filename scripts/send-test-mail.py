#!/usr/bin/env python3
"""Send a sample login-code mail to check the SMTP settings.

Reads the same environment / .env as the server. Does not touch the
database and the code in the mail cannot be used to sign in.

Usage:
    python3 scripts/send-test-mail.py you@example.com
"""

from __future__ import annotations

import argparse
import logging
import os
import sys

# Allow running from repo root: add backend/ to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "backend"))

from app.config import get_settings
from app.services.mailer import MailDeliveryError, Mailer
from app.utils.crypto import generate_otp_code


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Send a sample login-code mail using the configured SMTP server."
    )
    parser.add_argument("to", help="Recipient address")
    parser.add_argument(
        "--ttl-minutes",
        type=int,
        default=10,
        help="Expiry shown in the mail body (default: 10)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    mailer = Mailer(get_settings())
    if not mailer.configured:
        print("SMTP_HOST is not set; nothing sent.", file=sys.stderr)
        return 1

    try:
        mailer.send_otp(args.to, generate_otp_code(), args.ttl_minutes)
    except MailDeliveryError as e:
        print(f"Send failed: {e}", file=sys.stderr)
        return 2

    print(f"Test mail sent to {args.to} from {mailer.sender}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
