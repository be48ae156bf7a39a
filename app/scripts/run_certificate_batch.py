"""Run the certificate batch on demand, outside the Celery schedule."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from app.certificates.repositories import CertificateLedger
from app.certificates.services.candidate_selector import CandidateSelector
from app.certificates.services.pipeline import run_batch
from app.core.config import Settings, get_settings
from app.core.log_config import setup_logging
from app.core.redis import BATCH_LOCK_NAME, get_redis, run_lock
from app.db.session import make_session_factory


def list_candidates(settings: Settings, minimum_grade: float | None = None) -> None:
    """Print the candidates the next batch would process."""
    db = make_session_factory(settings)()
    try:
        candidates = CandidateSelector(db, settings).select_pending(minimum_grade)
    finally:
        db.close()

    print(f"[DRY RUN] {len(candidates)} pending certificates")
    for candidate in candidates:
        print(
            f"   student={candidate.student_id} course={candidate.course_id} "
            f"grade={candidate.grade:g} {candidate.full_name} / {candidate.course_name}"
        )


def reset_exhausted(settings: Settings) -> None:
    """Give parked error rows a fresh attempt budget."""
    db = make_session_factory(settings)()
    try:
        count = CertificateLedger(db, settings).reset_exhausted()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
    print(f"Reset {count} exhausted certificates")


def run(settings: Settings, use_lock: bool = True) -> int:
    """Run one batch and return the exit code.

    0 when every candidate was issued, 1 when some failed, 2 when the batch
    aborted and 3 when another batch holds the run lock.
    """
    if use_lock:
        client = get_redis(settings)
        try:
            with run_lock(
                client, BATCH_LOCK_NAME, settings.CERTIFICATE_BATCH_LOCK_TTL_SECONDS
            ) as acquired:
                if not acquired:
                    print("Another certificate batch is running; nothing done.")
                    return 3
                report = run_batch(settings)
        finally:
            client.close()
    else:
        report = run_batch(settings)

    print("=" * 60)
    if report.aborted:
        print(f"Batch aborted: {report.abort_reason}")
        return 2
    print(
        f"Selected: {report.selected}  Completed: {report.completed}  "
        f"Failed: {report.failed}  Conflicts: {report.conflicts}  "
        f"({report.duration_seconds}s)"
    )
    for outcome in report.outcomes:
        if outcome.error:
            print(
                f"   student={outcome.student_id} course={outcome.course_id} "
                f"[{outcome.stage}] {outcome.error}"
            )
    return 0 if report.failed == 0 else 1


def main() -> None:
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Issue pending course certificates")
    parser.add_argument(
        "--dry-run", action="store_true", help="List pending candidates without issuing"
    )
    parser.add_argument(
        "--minimum-grade", type=float, default=None, help="Override the minimum grade (dry run)"
    )
    parser.add_argument(
        "--reset-exhausted",
        action="store_true",
        help="Re-arm error rows that used up their retry attempts, then exit",
    )
    parser.add_argument(
        "--no-lock", action="store_true", help="Skip the Redis run lock (single-host setups)"
    )
    args = parser.parse_args()

    settings = get_settings()
    setup_logging(settings)

    if args.reset_exhausted:
        reset_exhausted(settings)
        return
    if args.dry_run:
        list_candidates(settings, args.minimum_grade)
        return
    sys.exit(run(settings, use_lock=not args.no_lock))


if __name__ == "__main__":
    main()
