"""
InvoiceChain CLI commands

This module provides command-line interface for submitting invoices,
inspecting records and running the worker.
"""

import asyncio
import json
import logging
from pathlib import Path

import click

from invoicechain.bootstrap import build_chain
from invoicechain.config.chain_config import ChainConfig
from invoicechain.config.logging_config import configure_logging
from invoicechain.db.connection import Database
from invoicechain.db.repository import RecordNotFoundError
from invoicechain.models.record import OverallStatus, Step

logger = logging.getLogger(__name__)


def _load_config(config_path):
    if config_path:
        path = Path(config_path)
        if path.exists():
            return ChainConfig.from_file(str(path))
        return ChainConfig(config_file=path)
    return ChainConfig.instance()


def _get_chain(ctx):
    """Build the chain once per invocation"""
    if ctx.obj.get('chain') is None:
        ctx.obj['chain'] = build_chain(ctx.obj['config'])
    return ctx.obj['chain']


@click.group()
@click.option('--config', 'config_path', type=click.Path(dir_okay=False), envvar='INVOICECHAIN_CONFIG',
              help='Path to configuration file (default: ~/.invoicechain/config.yaml)')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']), help='Logging level')
@click.pass_context
def cli(ctx, config_path, log_level):
    """InvoiceChain command-line interface"""
    ctx.ensure_object(dict)
    if ctx.obj.get('config') is None:
        try:
            ctx.obj['config'] = _load_config(config_path)
        except RuntimeError as e:
            click.echo(f"❌ Error: {str(e)}", err=True)
            raise click.Abort()
    configure_logging(ctx.obj['config'], level=log_level)


@cli.command()
@click.option('--db-type', type=click.Choice(['sqlite', 'postgresql']), help='Database type')
@click.option('--db-path', type=click.Path(), help='SQLite database path')
@click.option('--storage-type', type=click.Choice(['filesystem', 's3']), help='Archive storage type')
@click.option('--storage-path', type=click.Path(), help='Archive directory for filesystem storage')
@click.option('--s3-bucket', help='Archive bucket for S3 storage')
@click.option('--ledger-path', type=click.Path(), help='CSV ledger file')
@click.option('--dispatch', type=click.Choice(['queue', 'inline']), help='Run steps through the job queue or inline')
@click.pass_context
def init(ctx, db_type, db_path, storage_type, storage_path, s3_bucket, ledger_path, dispatch):
    """Write the configuration file and create the database tables"""
    config = ctx.obj['config']

    overrides = {
        'database.type': db_type,
        'database.path': db_path,
        'storage.type': storage_type,
        'storage.filesystem.path': storage_path,
        'storage.s3.bucket': s3_bucket,
        'ledger.path': ledger_path,
        'chain.dispatch': dispatch,
    }
    for key, value in overrides.items():
        if value is not None:
            config.set(key, value)

    if not config.validate():
        click.echo("❌ Error: configuration is invalid, see log for details", err=True)
        raise click.Abort()

    try:
        config.save()
        db = Database(config)
        db.dispose()
    except (OSError, RuntimeError) as e:
        click.echo(f"❌ Error: {str(e)}", err=True)
        raise click.Abort()

    click.echo("✅ InvoiceChain initialized")
    click.echo(f"   Config: {config.config_file}")
    click.echo(f"   Database: {config.get('database.type')}")
    click.echo(f"   Storage: {config.get('storage.type')}")
    click.echo(f"   Dispatch: {config.get('chain.dispatch')}")


@cli.command()
@click.argument('file', type=click.Path(exists=True, dir_okay=False))
@click.option('--date', 'manual_date', type=click.DateTime(formats=['%Y-%m-%d']),
              help='Invoice date (YYYY-MM-DD), overrides the extracted date')
@click.pass_context
def submit(ctx, file, manual_date):
    """Submit an invoice image"""
    chain = _get_chain(ctx)
    try:
        record_id = chain.service.ingest(file, manual_date=manual_date.date() if manual_date else None)
    except FileNotFoundError as e:
        click.echo(f"❌ Error: {str(e)}", err=True)
        raise click.Abort()

    summary = chain.service.get_status(record_id)
    click.echo("✅ Invoice submitted")
    click.echo(f"   ID: {record_id}")
    click.echo(f"   Status: {summary['overall_status']}")


@cli.command()
@click.argument('record_id')
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table', help='Output format')
@click.pass_context
def status(ctx, record_id, output_format):
    """Show the status of an invoice record"""
    chain = _get_chain(ctx)
    try:
        summary = chain.service.get_status(record_id)
    except RecordNotFoundError as e:
        click.echo(f"❌ Error: {str(e)}", err=True)
        raise click.Abort()

    if output_format == 'json':
        click.echo(json.dumps(summary, indent=2, default=str))
        return

    click.echo(f"\nRecord {summary['id']}: {summary['overall_status']}\n")
    click.echo(f"{'Step':<12} {'Status':<12} {'Attempts':<9}")
    click.echo("-" * 35)
    for step, state in summary['steps'].items():
        click.echo(f"{step:<12} {state['status']:<12} {state['attempts']:<9}")
    if summary['error_message']:
        click.echo(f"\nLast error ({summary['failed_step']}): {summary['error_message']}")
    if summary['completed_at']:
        click.echo(f"\nCompleted at: {summary['completed_at']}")


@cli.command()
@click.argument('record_id')
@click.pass_context
def retry(ctx, record_id):
    """Re-invoke the first unfinished step of a record"""
    chain = _get_chain(ctx)
    try:
        step = chain.service.retry(record_id)
    except RecordNotFoundError as e:
        click.echo(f"❌ Error: {str(e)}", err=True)
        raise click.Abort()

    if step is None:
        click.echo(f"Record {record_id} is already completed.")
    else:
        click.echo(f"✅ Dispatched step {step.value} for record {record_id}")


@cli.command('list')
@click.option('--status', 'status_filter', type=click.Choice([s.value for s in OverallStatus]), default='failed',
              help='Overall status to list')
@click.option('--limit', type=int, default=50, help='Maximum number of records')
@click.pass_context
def list_records(ctx, status_filter, limit):
    """List invoice records by overall status"""
    chain = _get_chain(ctx)
    records = chain.service.list_by_status(OverallStatus(status_filter), limit)

    if not records:
        click.echo(f"No {status_filter} records found.")
        return

    click.echo(f"\nFound {len(records)} record(s):\n")
    click.echo(f"{'ID':<40} {'File':<30} {'Failed step':<12}")
    click.echo("-" * 84)
    for record in records:
        failed_step = record.failed_step.value if record.failed_step else ''
        click.echo(f"{record.id:<40} {(record.original_filename or ''):<30} {failed_step:<12}")


@cli.command()
@click.option('--once', is_flag=True, help='Process due jobs once and exit')
@click.pass_context
def worker(ctx, once):
    """Run the step job worker"""
    chain = _get_chain(ctx)
    job_worker = chain.worker()

    if once:
        processed = asyncio.run(job_worker.run_once())
        click.echo(f"Processed {processed} job(s)")
        return

    click.echo("Worker running, press Ctrl+C to stop")
    asyncio.run(job_worker.run())


@cli.group()
def jobs():
    """Inspect and manage the step job queue"""
    pass


@jobs.command('stats')
@click.pass_context
def job_stats(ctx):
    """Show queue statistics"""
    chain = _get_chain(ctx)
    stats = chain.queue.get_queue_stats()

    click.echo(f"Total jobs: {stats['total']}")
    for job_status, count in sorted(stats['by_status'].items()):
        click.echo(f"  {job_status:<12} {count}")
    for step in Step.ordered():
        pending = chain.queue.get_pending_count(step)
        click.echo(f"  pending {step.value:<10} {pending}")


@jobs.command('dead')
@click.option('--limit', type=int, default=50, help='Maximum number of jobs')
@click.pass_context
def dead_jobs(ctx, limit):
    """List dead letter jobs"""
    chain = _get_chain(ctx)
    dead = chain.queue.get_dead_letter_jobs(limit=limit)

    if not dead:
        click.echo("No dead letter jobs.")
        return

    for job in dead:
        click.echo(f"{job['id']}\t{job['record_id']}\t{job['step']}\t{job['last_error']}")


@jobs.command('retry')
@click.argument('job_id')
@click.pass_context
def retry_job(ctx, job_id):
    """Send a dead letter job back to the queue"""
    chain = _get_chain(ctx)
    if not chain.queue.retry_dead(job_id):
        click.echo(f"❌ Error: job {job_id} not found or not in dead letter", err=True)
        raise click.Abort()
    click.echo(f"✅ Job {job_id} requeued")


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
