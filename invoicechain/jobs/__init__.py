"""
Step job queue and async worker
"""

from invoicechain.jobs.queue import JobQueue, JobStatus
from invoicechain.jobs.worker import Worker, WorkerConfig, run_worker

__all__ = ['JobQueue', 'JobStatus', 'Worker', 'WorkerConfig', 'run_worker']
