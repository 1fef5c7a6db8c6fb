"""SQL constants for pull consumers."""

from __future__ import annotations

from sqlalchemy import text

# Oldest eligible POLL jobs of an owner. The caller picks the first one whose
# secret authenticates the request; locked rows belong to another poller.
POLL_CANDIDATES_SQL = text("""
    SELECT id, payload, headers,
           signing_secret, signing_vault, signing_header,
           signing_style, signing_alg, signing_enc
    FROM pgqueue_jobs
    WHERE owner = :owner
      AND job_type = 'POLL'
      AND status = 'new'
      AND run_at <= now()
    ORDER BY run_at ASC, id ASC
    FOR UPDATE SKIP LOCKED
    LIMIT :lim
""")

LEASE_JOB_SQL = text("""
    UPDATE pgqueue_jobs
    SET status = 'polled',
        run_at = now() + make_interval(secs => :lease_seconds),
        last_at = now(),
        updated_at = now()
    WHERE id = :id AND status = 'new'
    RETURNING id
""")

COMPLETE_NEW_JOB_SQL = text("""
    UPDATE pgqueue_jobs
    SET status = 'completed',
        last_at = now(),
        updated_at = now()
    WHERE id = :id AND status = 'new'
    RETURNING id
""")

ACK_CANDIDATE_SQL = text("""
    SELECT id,
           signing_secret, signing_vault, signing_header,
           signing_style, signing_alg, signing_enc
    FROM pgqueue_jobs
    WHERE id = :id
      AND job_type = 'POLL'
      AND status = 'polled'
    FOR UPDATE SKIP LOCKED
""")

ACK_JOB_SQL = text("""
    UPDATE pgqueue_jobs
    SET status = 'completed',
        last_at = now(),
        updated_at = now()
    WHERE id = :id AND status = 'polled'
    RETURNING id
""")
