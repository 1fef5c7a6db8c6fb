"""SQL constants for the sweeps."""

from __future__ import annotations

from sqlalchemy import text


# ---------- Claim sweep ----------
# One transaction per sweep. Rows locked by a concurrent sweep are skipped,
# never waited on, so two sweeps can never dispatch the same job.
# POLL jobs in 'new' belong to pull consumers; only an expired 'polled' lease
# is claimable here.

CLAIM_DUE_JOBS_SQL = text("""
    SELECT id, job_type, status, target, payload, headers, jwt, owner, auth_mode,
           retry_count, retry_limit,
           signing_secret, signing_vault, signing_header,
           signing_style, signing_alg, signing_enc,
           clock_timestamp() AS db_now
    FROM pgqueue_jobs
    WHERE (
        (status = 'new' AND job_type <> 'POLL')
        OR (status = 'failed' AND retry_count <= retry_limit)
        OR (status = 'polled' AND job_type = 'POLL')
      )
      AND run_at <= now()
    ORDER BY run_at ASC, id ASC
    FOR UPDATE SKIP LOCKED
    LIMIT :lim
""")

# Every state change guards on the status the sweep observed.

SETTLE_JOB_SQL = text("""
    UPDATE pgqueue_jobs
    SET status = :status,
        retry_count = retry_count + :retry_inc,
        run_at = COALESCE(:run_at, run_at),
        last_at = :now,
        response_status = :response_status,
        response_content = :response_content,
        response_headers = :response_headers,
        updated_at = now()
    WHERE id = :id AND status = :expected
    RETURNING id
""")

MARK_PROCESSING_SQL = text("""
    UPDATE pgqueue_jobs
    SET status = 'processing',
        last_at = :now,
        updated_at = now()
    WHERE id = :id AND status = :expected
    RETURNING id
""")

INSERT_FAILED_LOG_SQL = text("""
    INSERT INTO pgqueue_failed_log (job_id, attempt, response_status, response_content, created_at)
    VALUES (:job_id, :attempt, :response_status, :response_content, now())
""")

INSERT_EXECUTED_REQUEST_SQL = text("""
    INSERT INTO pgqueue_executed_requests (handle, job_id, executor_id, submitted_at)
    VALUES (:handle, :job_id, :executor_id, now())
""")


# ---------- Resolution sweep ----------
# Handles owned by this executor, plus handles of any executor that have been
# outstanding longer than the lost-request timeout.

CLAIM_PENDING_REQUESTS_SQL = text("""
    SELECT er.handle, er.executor_id, er.submitted_at,
           j.id, j.job_type, j.status, j.target, j.payload, j.headers,
           j.jwt, j.owner, j.auth_mode, j.retry_count, j.retry_limit,
           j.signing_secret, j.signing_vault, j.signing_header,
           j.signing_style, j.signing_alg, j.signing_enc,
           clock_timestamp() AS db_now,
           (er.executor_id <> :executor_id) AS is_foreign
    FROM pgqueue_executed_requests er
    JOIN pgqueue_jobs j ON j.id = er.job_id
    WHERE j.status = 'processing'
      AND (
        er.executor_id = :executor_id
        OR er.submitted_at < now() - make_interval(secs => :lost_after)
      )
    ORDER BY er.submitted_at ASC
    FOR UPDATE OF j SKIP LOCKED
    LIMIT :lim
""")

DELETE_EXECUTED_REQUEST_SQL = text("""
    DELETE FROM pgqueue_executed_requests WHERE handle = :handle
""")

# Join rows whose job was settled some other way.
DELETE_ORPHANED_REQUESTS_SQL = text("""
    DELETE FROM pgqueue_executed_requests er
    USING pgqueue_jobs j
    WHERE j.id = er.job_id AND j.status <> 'processing'
""")
