"""
Job Queue

Durable queue of step invocations backed by the ``step_jobs`` table.
Each job asks the worker to run one step runner for one record.
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, select, update

from invoicechain.db.connection import Database
from invoicechain.db.models import StepJob
from invoicechain.models.record import Step
from invoicechain.utils import utcnow

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Job execution status"""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    DEAD_LETTER = "DEAD_LETTER"


ACTIVE_STATUSES = [JobStatus.PENDING.value, JobStatus.PROCESSING.value]


class JobQueue:
    """
    Queue for step jobs.

    Provides methods for:
    - Enqueuing jobs (one active job per record and step)
    - Claiming due jobs
    - Retry scheduling and dead letter handling

    Usage:
        queue = JobQueue(db)

        job_id = queue.enqueue('inv_123', Step.EXTRACTION)

        # Delayed retry
        queue.enqueue('inv_123', Step.ARCHIVAL, delay_seconds=5)
    """

    def __init__(self, db: Database):
        self.db = db

    def enqueue(self, record_id: str, step: Step, delay_seconds: float = 0.0) -> str:
        """
        Enqueue a step job.

        If a pending or processing job for the same record and step already
        exists, its id is returned instead of creating a duplicate.

        Args:
            record_id: Record to process
            step: Step to run
            delay_seconds: Delay before the job becomes due

        Returns:
            Job ID
        """
        existing = self._find_active(record_id, step)
        if existing:
            logger.debug(f"Duplicate job detected for {record_id}:{step.value}")
            return existing.id

        now = utcnow()
        job = StepJob(
            record_id=record_id,
            step=step.value,
            status=JobStatus.PENDING.value,
            attempts=0,
            run_after=now + timedelta(seconds=delay_seconds),
            created_at=now
        )
        with self.db.transaction() as session:
            session.add(job)
            session.flush()
            job_id = job.id

        logger.info(f"Enqueued job {job_id} ({step.value}) for record {record_id}")
        return job_id

    def claim_due(self, limit: int = 10, now: Optional[datetime] = None) -> List[StepJob]:
        """
        Claim up to ``limit`` due pending jobs, oldest first.

        Each job is moved to PROCESSING with a conditional update, so a job
        is handed to at most one caller.
        """
        now = now or utcnow()
        with self.db.session() as session:
            query = (
                select(StepJob)
                .where(and_(
                    StepJob.status == JobStatus.PENDING.value,
                    StepJob.run_after <= now
                ))
                .order_by(StepJob.run_after, StepJob.created_at)
                .limit(limit)
            )
            candidates = session.execute(query).scalars().all()

            claimed = []
            for job in candidates:
                result = session.execute(
                    update(StepJob)
                    .where(and_(StepJob.id == job.id, StepJob.status == JobStatus.PENDING.value))
                    .values(
                        status=JobStatus.PROCESSING.value,
                        attempts=StepJob.attempts + 1,
                        started_at=now
                    )
                    .execution_options(synchronize_session=False)
                )
                session.commit()
                if result.rowcount == 1:
                    claimed.append(job.id)

            if not claimed:
                return []
            jobs = session.execute(
                select(StepJob).where(StepJob.id.in_(claimed)).order_by(StepJob.run_after, StepJob.created_at)
            ).scalars().all()
            # Detach with current values
            for job in jobs:
                session.refresh(job)
            session.expunge_all()
            return list(jobs)

    def mark_completed(self, job_id: str, outcome: str) -> None:
        """Mark a job as finished; ``outcome`` is the runner outcome kind"""
        with self.db.transaction() as session:
            job = session.get(StepJob, job_id)
            if job:
                job.status = JobStatus.COMPLETED.value
                job.outcome = outcome
                job.completed_at = utcnow()

    def schedule_retry(self, job_id: str, error: str, run_after: datetime) -> None:
        """Put a failed job back in the queue, due at ``run_after``"""
        with self.db.transaction() as session:
            job = session.get(StepJob, job_id)
            if job:
                job.status = JobStatus.PENDING.value
                job.last_error = error
                job.run_after = run_after
                job.started_at = None

    def mark_dead(self, job_id: str, error: str) -> None:
        """Move a job to the dead letter status"""
        with self.db.transaction() as session:
            job = session.get(StepJob, job_id)
            if job:
                job.status = JobStatus.DEAD_LETTER.value
                job.last_error = error
                job.outcome = 'failed'
                job.completed_at = utcnow()
        logger.warning(f"Job {job_id} moved to dead letter: {error}")

    def retry_dead(self, job_id: str, reset_attempts: bool = True) -> bool:
        """
        Send a dead letter job back to the queue.

        Returns:
            True if reset to pending
        """
        with self.db.transaction() as session:
            job = session.get(StepJob, job_id)

            if not job or job.status != JobStatus.DEAD_LETTER.value:
                return False

            job.status = JobStatus.PENDING.value
            job.outcome = None
            job.completed_at = None
            job.started_at = None
            job.run_after = utcnow()
            if reset_attempts:
                job.attempts = 0

        logger.info(f"Reset job {job_id} to pending")
        return True

    def requeue_stale(self, older_than_seconds: float) -> int:
        """
        Return PROCESSING jobs started too long ago to PENDING.

        Picks up work left behind by a worker that died mid-job.

        Returns:
            Number of jobs requeued
        """
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        with self.db.transaction() as session:
            result = session.execute(
                update(StepJob)
                .where(and_(
                    StepJob.status == JobStatus.PROCESSING.value,
                    StepJob.started_at < cutoff
                ))
                .values(status=JobStatus.PENDING.value, started_at=None)
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount

        if count:
            logger.warning(f"Requeued {count} stale jobs")
        return count

    def get_pending_count(self, step: Optional[Step] = None) -> int:
        """Get count of pending jobs"""
        with self.db.session() as session:
            query = select(func.count()).select_from(StepJob).where(StepJob.status == JobStatus.PENDING.value)
            if step:
                query = query.where(StepJob.step == step.value)
            return session.execute(query).scalar_one()

    def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Get status of a job"""
        with self.db.session() as session:
            job = session.get(StepJob, job_id)

            if not job:
                return None

            return self._to_dict(job)

    def list_jobs(self, record_id: str) -> List[Dict[str, Any]]:
        """Jobs of one record, oldest first"""
        with self.db.session() as session:
            query = select(StepJob).where(StepJob.record_id == record_id).order_by(StepJob.created_at)
            return [self._to_dict(job) for job in session.execute(query).scalars()]

    def get_dead_letter_jobs(self, step: Optional[Step] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Get jobs in dead letter status"""
        with self.db.session() as session:
            query = select(StepJob).where(StepJob.status == JobStatus.DEAD_LETTER.value)

            if step:
                query = query.where(StepJob.step == step.value)

            query = query.order_by(StepJob.completed_at.desc()).limit(limit)

            return [self._to_dict(job) for job in session.execute(query).scalars()]

    def clear_completed(self, older_than_days: int = 30) -> int:
        """
        Clear completed jobs older than specified days.

        Returns:
            Number of jobs cleared
        """
        cutoff = utcnow() - timedelta(days=older_than_days)

        with self.db.transaction() as session:
            jobs = session.execute(
                select(StepJob).where(and_(
                    StepJob.status == JobStatus.COMPLETED.value,
                    StepJob.completed_at < cutoff
                ))
            ).scalars().all()
            count = len(jobs)

            for job in jobs:
                session.delete(job)

        logger.info(f"Cleared {count} completed jobs")
        return count

    def get_queue_stats(self) -> Dict[str, Any]:
        """Get queue statistics"""
        with self.db.session() as session:
            rows = session.execute(
                select(StepJob.status, StepJob.step, func.count()).group_by(StepJob.status, StepJob.step)
            ).all()

        stats = {
            'total': 0,
            'by_status': {},
            'by_step': {}
        }
        for status, step, count in rows:
            stats['total'] += count
            stats['by_status'][status] = stats['by_status'].get(status, 0) + count
            stats['by_step'][step] = stats['by_step'].get(step, 0) + count
        return stats

    def _find_active(self, record_id: str, step: Step) -> Optional[StepJob]:
        with self.db.session() as session:
            query = select(StepJob).where(and_(
                StepJob.record_id == record_id,
                StepJob.step == step.value,
                StepJob.status.in_(ACTIVE_STATUSES)
            )).limit(1)
            return session.execute(query).scalars().first()

    @staticmethod
    def _to_dict(job: StepJob) -> Dict[str, Any]:
        return {
            'id': job.id,
            'record_id': job.record_id,
            'step': job.step,
            'status': job.status,
            'attempts': job.attempts,
            'outcome': job.outcome,
            'last_error': job.last_error,
            'run_after': job.run_after.isoformat() if job.run_after else None,
            'created_at': job.created_at.isoformat() if job.created_at else None,
            'completed_at': job.completed_at.isoformat() if job.completed_at else None
        }
