#!/usr/bin/env python3
"""
One-shot digest processing
Run the digest for one user or for every user with selected channels,
or only retry videos whose processing failed
"""

import os
import sys
import logging
import argparse

from dotenv import load_dotenv

from tubedigest.core.constants import DATABASE_FILE
from tubedigest.managers.service_factory import build_services
from tubedigest.utils.logging_setup import setup_logging
from tubedigest.utils.validators import is_valid_email


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Assemble and send TubeDigest emails")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument('--email', help="Send the digest for this user")
    target.add_argument('--all', action='store_true', help="Send digests for every user with selected channels")
    target.add_argument('--retry-failed', action='store_true', help="Only retry videos without summaries")
    parser.add_argument('--db', default=os.getenv('DATABASE_PATH', DATABASE_FILE), help="SQLite database path")
    return parser.parse_args(argv)


def run(args) -> int:
    logger = logging.getLogger('tubedigest')
    services = build_services(args.db)

    stuck = services.pipeline.cleanup_stuck_videos()
    if stuck:
        logger.info(f"Reset {stuck} stuck videos")

    if args.retry_failed:
        result = services.pipeline.retry_failed_processing()
        logger.info(f"Retry: {result['succeeded']}/{result['attempted']} succeeded")
        return 0 if result['failed'] == 0 else 1

    if args.email:
        if not is_valid_email(args.email):
            logger.error(f"Invalid email address: {args.email}")
            return 2
        emails = [args.email]
    else:
        emails = [user['email'] for user in services.db.get_users_with_channels()]
        logger.info(f"Running digests for {len(emails)} users")

    failures = 0
    for email in emails:
        try:
            result = services.digests.assemble_and_send(email)
            logger.info(f"   {email}: {result['status']}")
        except Exception as e:
            failures += 1
            logger.error(f"   ❌ {email}: {e}")

    logger.info("=" * 60)
    logger.info(f"Done: {len(emails) - failures} ok, {failures} failed")
    return 0 if failures == 0 else 1


def main(argv=None):
    """Entry point with error handling"""
    load_dotenv()
    args = parse_args(argv)
    setup_logging()
    try:
        sys.exit(run(args))
    except KeyboardInterrupt:
        print("\n\n👋 Stopped by user")
        sys.exit(0)
    except Exception as e:
        logging.getLogger('tubedigest').critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
