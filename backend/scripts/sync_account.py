#!/usr/bin/env python3
"""
Run one sync job in-process, without a broker.

Syncs the account, classifies its new threads and then either escalates the
human threads right away (default) or only lists them.

Usage (from backend directory, with the package installed):
  python scripts/sync_account.py owner@example.com [options]

Options:
  --sync-type TYPE   incremental (default), full or backfill
  --days N           Override the sync window for full/backfill
  --context TEXT     User context passed to the LLM prompt
  --no-escalate      Classify only; print the threads that would be escalated
  --verbose, -v      Debug logging
"""
import argparse
import json
import logging
import sys
from contextlib import nullcontext

from mailsift.config import configure_logging, validate_settings
from mailsift.database import SessionLocal
from mailsift.errors import ConfigurationError, MailsiftError
from mailsift.models import SyncKind
from mailsift.services.escalation import EscalationJob
from mailsift.services.llm_service import LLMEscalationService
from mailsift.services.pipeline import run_sync_pipeline

logger = logging.getLogger("mailsift.sync_account")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Sync and classify one mailbox in-process")
    parser.add_argument("email")
    parser.add_argument("--sync-type", choices=[k.value for k in SyncKind], default=SyncKind.INCREMENTAL.value)
    parser.add_argument("--days", type=int, default=None)
    parser.add_argument("--context", default=None)
    parser.add_argument("--no-escalate", action="store_true")
    parser.add_argument("--verbose", "-v", action="store_true")
    args = parser.parse_args(argv)

    configure_logging("DEBUG" if args.verbose else "INFO")
    try:
        for role in ["sync"] if args.no_escalate else ["sync", "llm"]:
            validate_settings(role)
    except ConfigurationError as e:
        logger.error(str(e))
        return 2

    jobs: list[EscalationJob] = []
    db = SessionLocal()
    try:
        report = run_sync_pipeline(
            db,
            args.email,
            sync_type=args.sync_type,
            days_to_sync=args.days,
            user_context=args.context,
            enqueue_escalation=jobs.append,
            # No other worker runs here; the account lock is a broker concern.
            lock_factory=lambda account_id: nullcontext(True),
        )
    except MailsiftError as e:
        logger.error(str(e))
        return 1
    finally:
        db.close()

    if jobs and not args.no_escalate:
        service = LLMEscalationService(user_context=args.context)
        batch = service.process_batch([j.email_id for j in jobs])
        report["escalation"] = {"succeeded": len(batch.succeeded), "failed": len(batch.failed)}
    elif jobs:
        report["pending_escalation"] = [j.thread_id for j in jobs]

    print(json.dumps(report, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
