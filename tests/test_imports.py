"""
Test that normalized imports (without 'src.' prefix) work correctly.

These tests validate that modules can be imported using the top-level
namespace when PYTHONPATH includes the src/ directory.
"""

from __future__ import annotations


def test_import_core_modules():
    """Test that core submodules can be imported."""
    from core import ApiError, AuthError, Job, JobStatus, Transaction
    from core.config_loader import get_config
    from core.logger_config import init_logger

    assert ApiError is not None
    assert AuthError is not None
    assert Job is not None
    assert JobStatus is not None
    assert Transaction is not None
    assert get_config is not None
    assert init_logger is not None


def test_import_ledger_modules():
    """Test that the ledger package re-exports its API."""
    from ledger import build_ledger_view, build_positions, detect_discrepancy, sort_transactions

    assert build_positions is not None
    assert sort_transactions is not None
    assert detect_discrepancy is not None
    assert build_ledger_view is not None


def test_import_jobs_and_feeds():
    """Test that jobs and data feeds can be imported."""
    from bars import StreamingDataAssembler
    from data.feeds import HistoricalDataChannel, WebSocketJobChannel, stream_sse
    from jobs import JobListTracker, JobProgressClient, JobStateMachine, StallDetector

    assert StreamingDataAssembler is not None
    assert HistoricalDataChannel is not None
    assert WebSocketJobChannel is not None
    assert stream_sse is not None
    assert JobListTracker is not None
    assert JobProgressClient is not None
    assert JobStateMachine is not None
    assert StallDetector is not None


def test_cli_parse_args():
    """Test the watch_job CLI argument parsing."""
    from tools.watch_job import parse_args

    args = parse_args(["--job-id", "J1", "--no-websocket", "--intervals", "day,week"])
    assert args.job_id == "J1"
    assert args.no_websocket is True
    assert args.intervals == "day,week"
    assert args.token is None
