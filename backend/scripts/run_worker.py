#!/usr/bin/env python3
"""
Start one worker process group for a role.

Usage (from backend directory, with the package installed):
  python scripts/run_worker.py sync      # sync queue, SYNC_WORKER_CONCURRENCY processes
  python scripts/run_worker.py llm       # llm-escalation queue, LLM_QUEUE_CONCURRENCY processes
  python scripts/run_worker.py beat      # periodic triggers

Required settings for the role are checked before the broker connection is
opened; missing ones abort with a non-zero exit code. SIGTERM triggers
Celery's warm shutdown: no new jobs are taken and in-flight jobs finish.
"""
import argparse
import logging
import os
import sys

from mailsift.celery_app import WORKER_ROLE_ENV, celery_app
from mailsift.config import configure_logging, settings, validate_settings
from mailsift.errors import ConfigurationError
from mailsift.services.monitor import LLM_QUEUE, SYNC_QUEUE

logger = logging.getLogger("mailsift.run_worker")


def celery_argv(role: str) -> list[str]:
    if role == "sync":
        return ["worker", "-Q", SYNC_QUEUE, "-c", str(settings.sync_worker_concurrency), "-n", "sync@%h"]
    if role == "llm":
        return ["worker", "-Q", LLM_QUEUE, "-c", str(settings.llm_queue_concurrency), "-n", "llm@%h"]
    if role == "beat":
        return ["beat"]
    raise ValueError(f"Unknown role '{role}'")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run a mailsift worker role")
    parser.add_argument("role", choices=["sync", "llm", "beat"])
    parser.add_argument("--loglevel", default=settings.log_level)
    args = parser.parse_args(argv)

    configure_logging(args.loglevel)
    try:
        validate_settings(args.role)
    except ConfigurationError as e:
        logger.error(str(e))
        return 2

    os.environ[WORKER_ROLE_ENV] = args.role
    celery_app.start(argv=celery_argv(args.role) + ["--loglevel", args.loglevel.upper()])
    return 0


if __name__ == "__main__":
    sys.exit(main())
