import json
import os
import tempfile

import pytest

from playlist_studio.crosscutting.metrics import MetricsCollector


class TestMetricsCollector:
    """Tests for per-edit metrics."""

    def setup_method(self):
        """Set up test fixtures."""
        self.metrics = MetricsCollector(max_records=3)

    def test_edit_context_records_batches(self):
        """Test that batches inside an edit are attributed to it."""
        with self.metrics.edit_context('add', 'pl1', 150):
            self.metrics.record_batch()
            self.metrics.record_batch()

        record = self.metrics.records[0]
        assert record.kind == 'add'
        assert record.track_count == 150
        assert record.batch_count == 2
        assert record.succeeded
        assert record.end_time is not None

    def test_failed_edit_keeps_error_type(self):
        """Test that an exception in the block marks the edit failed and propagates."""
        with pytest.raises(ValueError):
            with self.metrics.edit_context('remove', 'pl1', 1):
                self.metrics.record_failed_batch(1)
                raise ValueError("boom")

        record = self.metrics.records[0]
        assert not record.succeeded
        assert record.error_type == 'ValueError'
        assert record.failed_batches == [1]

    def test_batches_outside_an_edit_are_ignored(self):
        """Test that counters without an open edit do nothing."""
        self.metrics.record_batch()

        assert self.metrics.records == []
        assert self.metrics.end_edit() is None

    def test_unknown_kind_is_rejected(self):
        """Test edit kind validation."""
        with pytest.raises(ValueError):
            self.metrics.start_edit('transfer', 'pl1', 1)

    def test_summary_by_kind_and_record_cap(self):
        """Test aggregation and that old records are dropped."""
        for kind in ('add', 'add', 'reorder', 'rebuild'):
            with self.metrics.edit_context(kind, 'pl1', 2):
                self.metrics.record_batch()

        summary = self.metrics.summary()
        assert summary['total_edits'] == 3
        assert summary['by_kind']['add']['count'] == 1
        assert summary['by_kind']['reorder']['batches'] == 1
        assert summary['by_kind']['rebuild']['tracks'] == 2
        assert summary['by_kind']['remove']['average_duration_ms'] == 0.0

    def test_save_to_file(self):
        """Test JSON export."""
        with self.metrics.edit_context('add', 'pl1', 1):
            pass

        with tempfile.NamedTemporaryFile(suffix='.json', delete=False) as f:
            path = f.name
        try:
            self.metrics.save_to_file(path)
            with open(path) as f:
                data = json.load(f)
        finally:
            os.unlink(path)

        assert data['summary']['total_edits'] == 1
        assert data['edits'][0]['kind'] == 'add'
        assert isinstance(data['edits'][0]['start_time'], str)
