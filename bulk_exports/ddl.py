"""Database schema DDL for bulk exports."""

EXPORT_JOBS_TABLE_DDL = """
CREATE TABLE export_jobs (
  id                 UUID PRIMARY KEY,
  customer_id        TEXT NOT NULL,
  format             TEXT NOT NULL CHECK (format IN ('csv', 'xlsx', 'json')),
  query              JSONB NOT NULL,

  status             TEXT NOT NULL CHECK (status IN ('QUEUED', 'PROCESSING', 'COMPLETED', 'FAILED')),
  progress           INT NOT NULL DEFAULT 0 CHECK (progress BETWEEN 0 AND 100),
  records_processed  BIGINT NOT NULL DEFAULT 0,

  priority           INT NOT NULL DEFAULT 0,
  run_at             TIMESTAMPTZ NOT NULL,

  attempts           INT NOT NULL DEFAULT 0,
  max_attempts       INT NOT NULL,
  retry_policy       JSONB NOT NULL,

  lease_expires_at   TIMESTAMPTZ,
  cancel_requested   BOOLEAN NOT NULL DEFAULT FALSE,

  result             JSONB,
  error              JSONB,
  schedule_id        UUID,

  started_at         TIMESTAMPTZ,
  completed_at       TIMESTAMPTZ,
  created_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at         TIMESTAMPTZ NOT NULL DEFAULT now(),

  CHECK (status <> 'COMPLETED' OR result IS NOT NULL),
  CHECK (status <> 'FAILED' OR error IS NOT NULL)
);

CREATE INDEX idx_export_jobs_queued_run_at
ON export_jobs (priority, run_at)
WHERE status = 'QUEUED';

CREATE INDEX idx_export_jobs_customer_status
ON export_jobs (customer_id, status);

-- Pruning keeps the newest finished jobs of each status
CREATE INDEX idx_export_jobs_finished
ON export_jobs (status, completed_at DESC)
WHERE status IN ('COMPLETED', 'FAILED');

-- Index for lease reaper to find expired leases efficiently
CREATE INDEX idx_export_jobs_expired_leases
ON export_jobs (lease_expires_at)
WHERE status = 'PROCESSING' AND lease_expires_at IS NOT NULL;
"""

EXPORT_SCHEDULES_TABLE_DDL = """
CREATE TABLE export_schedules (
  id           UUID PRIMARY KEY,
  customer_id  TEXT NOT NULL,
  name         TEXT NOT NULL,
  cron_expr    TEXT NOT NULL,
  format       TEXT NOT NULL CHECK (format IN ('csv', 'xlsx', 'json')),
  payload      JSONB NOT NULL,
  is_active    BOOLEAN NOT NULL DEFAULT TRUE,
  last_run_at  TIMESTAMPTZ,
  next_run_at  TIMESTAMPTZ,
  created_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at   TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX idx_export_schedules_due
ON export_schedules (next_run_at)
WHERE is_active;

CREATE INDEX idx_export_schedules_customer
ON export_schedules (customer_id, created_at DESC);
"""

ALL_DDL = EXPORT_JOBS_TABLE_DDL + EXPORT_SCHEDULES_TABLE_DDL
