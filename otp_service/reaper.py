"""Out-of-band purge of expired and long-verified OTP records.

Run from cron or any scheduler::

    otp-reaper               # every identity
    otp-reaper -e a@b.com    # a single identity
"""
import argparse
import logging

from otp_service.config import settings
from otp_service.database import init_db
from otp_service.services.otp import otp_service

LOGGER = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Purge stale OTP records")
    parser.add_argument("-e", "--email", help="only purge records for this email")
    args = parser.parse_args(argv)

    logging.basicConfig(level=settings.log_level)
    init_db()
    if args.email:
        otp_service.cleanup(args.email)
    else:
        removed = otp_service.cleanup_all()
        LOGGER.info("Reaper finished, %s record(s) removed", removed)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
