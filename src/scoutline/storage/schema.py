"""
Database schema for Scoutline's SQLite store.

Analysis records, their per-domain results and the queued jobs of every work
queue share one database file so that several worker processes can
coordinate through it.
"""

from __future__ import annotations

from sqlalchemy import Column, Float, ForeignKey, Index, Integer, MetaData, Table, Text, UniqueConstraint

convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=convention)

analyses_table = Table(
    "analyses",
    metadata,
    Column("analysis_id", Text, primary_key=True),
    Column("requester_id", Text, nullable=False, index=True),
    Column("targets", Text, nullable=False, comment="JSON array of normalised domains"),
    Column("config", Text, nullable=False, comment="JSON AnalysisConfig"),
    Column("status", Text, nullable=False, index=True),
    Column("progress_message", Text, nullable=False, default=""),
    Column("insights", Text, comment="JSON, write-once"),
    Column("error_detail", Text, comment="Write-once"),
    Column("advanced_at", Text, comment="Set when the AI job is enqueued"),
    Column("created_at", Text, nullable=False),
    Column("updated_at", Text, nullable=False),
    Column("processing_started_at", Text),
    Column("completed_at", Text),
)

scraped_results_table = Table(
    "scraped_results",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "analysis_id",
        Text,
        ForeignKey("analyses.analysis_id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("domain", Text, nullable=False),
    Column("data", Text, nullable=False),
    Column("scraped_at", Text, nullable=False),
    UniqueConstraint("analysis_id", "domain", name="uq_scraped_results_analysis_domain"),
)

failed_targets_table = Table(
    "failed_targets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "analysis_id",
        Text,
        ForeignKey("analyses.analysis_id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("domain", Text, nullable=False),
    Column("error", Text, nullable=False),
    Column("attempts", Integer, nullable=False, default=0),
    Column("failed_at", Text, nullable=False),
    UniqueConstraint("analysis_id", "domain", name="uq_failed_targets_analysis_domain"),
)

queue_jobs_table = Table(
    "queue_jobs",
    metadata,
    Column("job_id", Text, primary_key=True),
    Column("queue_name", Text, nullable=False),
    Column("name", Text, nullable=False),
    Column("payload", Text, nullable=False),
    Column("state", Text, nullable=False),
    Column("attempt", Integer, nullable=False, default=1),
    Column("max_attempts", Integer, nullable=False),
    Column("priority", Integer, nullable=False, default=0),
    Column("next_eligible_at", Float, nullable=False),
    Column("last_error", Text),
    Column("result", Text),
    Column("created_at", Float, nullable=False),
    Column("started_at", Float),
    Column("heartbeat_at", Float, comment="Last sign of life from the worker running the job"),
    Column("finished_at", Float),
)

Index(
    "ix_queue_jobs_claim",
    queue_jobs_table.c.queue_name,
    queue_jobs_table.c.state,
    queue_jobs_table.c.priority,
    queue_jobs_table.c.next_eligible_at,
)
Index("ix_queue_jobs_retention", queue_jobs_table.c.queue_name, queue_jobs_table.c.state, queue_jobs_table.c.finished_at)
