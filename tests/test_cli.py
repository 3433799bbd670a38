"""
Tests for the command-line interface
"""

import json
import logging
from datetime import date

import pytest
import yaml
from click.testing import CliRunner

from invoicechain.bootstrap import build_chain
from invoicechain.cli import cli
from invoicechain.config.chain_config import ChainConfig
from invoicechain.models.record import Step


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def chain(config, db, executors):
    return build_chain(config, db=db, executors=executors)


@pytest.fixture
def invoke(runner, config, chain):
    def _invoke(*args):
        return runner.invoke(cli, ['--log-level', 'ERROR', *args], obj={'config': config, 'chain': chain})
    return _invoke


class TestSubmitAndStatus:
    """Tests for submit, status and retry commands"""

    def test_submit(self, invoke, chain, invoice_file):
        result = invoke('submit', str(invoice_file))

        assert result.exit_code == 0, result.output
        assert "Invoice submitted" in result.output
        assert "Status: pending" in result.output
        assert chain.queue.get_pending_count(Step.EXTRACTION) == 1

    def test_submit_with_date(self, invoke, chain, invoice_file):
        result = invoke('submit', str(invoice_file), '--date', '2025-04-01')

        assert result.exit_code == 0, result.output
        record = chain.service.list_ready_for(Step.EXTRACTION)[0]
        assert record.manual_date == date(2025, 4, 1)

    def test_submit_missing_file(self, invoke, tmp_path):
        result = invoke('submit', str(tmp_path / 'missing.jpg'))

        assert result.exit_code == 2

    def test_status_json(self, invoke, chain, invoice_file):
        record_id = chain.service.ingest(str(invoice_file))

        result = invoke('status', record_id, '--format', 'json')

        assert result.exit_code == 0, result.output
        summary = json.loads(result.output)
        assert summary['id'] == record_id
        assert summary['steps']['extraction']['status'] == 'pending'

    def test_status_table(self, invoke, chain, invoice_file):
        record_id = chain.service.ingest(str(invoice_file))

        result = invoke('status', record_id)

        assert result.exit_code == 0, result.output
        assert f"Record {record_id}: pending" in result.output
        assert "extraction" in result.output

    def test_status_unknown_record(self, invoke):
        result = invoke('status', 'inv_missing')

        assert result.exit_code == 1
        assert "Error" in result.output

    def test_retry(self, invoke, chain, invoice_file):
        record_id = chain.service.ingest(str(invoice_file))

        result = invoke('retry', record_id)

        assert result.exit_code == 0, result.output
        assert f"Dispatched step extraction for record {record_id}" in result.output
        assert chain.queue.get_pending_count() == 1


class TestListAndWorker:
    """Tests for list and worker commands"""

    def test_list_empty(self, invoke):
        result = invoke('list')

        assert result.exit_code == 0, result.output
        assert "No failed records found." in result.output

    def test_list_pending(self, invoke, chain, invoice_file):
        record_id = chain.service.ingest(str(invoice_file))

        result = invoke('list', '--status', 'pending')

        assert result.exit_code == 0, result.output
        assert record_id in result.output
        assert "lunch.png" in result.output

    def test_worker_once(self, invoke, chain, invoice_file):
        record_id = chain.service.ingest(str(invoice_file))

        result = invoke('worker', '--once')

        assert result.exit_code == 0, result.output
        assert "Processed 1 job(s)" in result.output
        assert chain.service.get_status(record_id)['steps']['extraction']['status'] == 'completed'
        assert chain.queue.get_pending_count(Step.ARCHIVAL) == 1


class TestJobsCommands:
    """Tests for the jobs command group"""

    def test_stats(self, invoke, chain, invoice_file):
        chain.service.ingest(str(invoice_file))

        result = invoke('jobs', 'stats')

        assert result.exit_code == 0, result.output
        assert "Total jobs: 1" in result.output
        assert "PENDING" in result.output

    def test_dead_and_retry(self, invoke, chain):
        job_id = chain.queue.enqueue('inv_123', Step.ARCHIVAL)
        chain.queue.mark_dead(job_id, "Permanent failure: boom")

        result = invoke('jobs', 'dead')
        assert result.exit_code == 0, result.output
        assert job_id in result.output
        assert "Permanent failure: boom" in result.output

        result = invoke('jobs', 'retry', job_id)
        assert result.exit_code == 0, result.output
        assert chain.queue.get_job_status(job_id)['status'] == 'PENDING'

    def test_retry_unknown_job(self, invoke):
        result = invoke('jobs', 'retry', 'job_missing')

        assert result.exit_code == 1


class TestInit:
    """Tests for the init command"""

    def test_writes_config_and_database(self, runner, tmp_path):
        config = ChainConfig(config_file=tmp_path / 'config' / 'config.yaml')

        result = runner.invoke(cli, [
            '--log-level', 'ERROR',
            'init',
            '--db-path', str(tmp_path / 'data' / 'chain.db'),
            '--storage-path', str(tmp_path / 'archive'),
            '--ledger-path', str(tmp_path / 'ledger.csv'),
            '--dispatch', 'inline'
        ], obj={'config': config})

        assert result.exit_code == 0, result.output
        assert "InvoiceChain initialized" in result.output
        assert (tmp_path / 'data' / 'chain.db').exists()

        saved = yaml.safe_load((tmp_path / 'config' / 'config.yaml').read_text())
        assert saved['chain']['dispatch'] == 'inline'
        assert saved['storage']['filesystem']['path'] == str(tmp_path / 'archive')

    def test_rejects_s3_without_bucket(self, runner, tmp_path):
        config = ChainConfig(config_file=tmp_path / 'config.yaml')

        result = runner.invoke(cli, ['init', '--storage-type', 's3'], obj={'config': config})

        assert result.exit_code == 1
        assert not (tmp_path / 'config.yaml').exists()

    def test_invalid_config_file(self, runner, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text(yaml.safe_dump({'chain': {'dispatch': 'carrier-pigeon'}}))

        result = runner.invoke(cli, ['--config', str(path), 'list'], obj={})

        assert result.exit_code == 1
        assert "Error" in result.output
