import json
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


EDIT_KINDS = ('add', 'remove', 'rebuild', 'reorder')


@dataclass
class EditRecord:
    """Metrics for a single playlist edit."""
    kind: str
    playlist_id: str
    track_count: int
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_ms: int = 0
    batch_count: int = 0
    failed_batches: List[int] = field(default_factory=list)
    succeeded: bool = False
    error_type: Optional[str] = None

    @property
    def failed_batch_count(self) -> int:
        return len(self.failed_batches)


class MetricsCollector:
    """Collects per-edit metrics for add/remove/rebuild/reorder calls.

    An edit is opened with ``edit_context``; batch counters recorded inside that
    block on the same thread are attributed to it.
    """

    def __init__(self, max_records: int = 1000):
        self.max_records = max_records
        self.records: List[EditRecord] = []
        self._lock = threading.Lock()
        self._local = threading.local()

    def _current(self) -> Optional[EditRecord]:
        return getattr(self._local, 'record', None)

    def start_edit(self, kind: str, playlist_id: str, track_count: int) -> EditRecord:
        if kind not in EDIT_KINDS:
            raise ValueError(f"Unknown edit kind: {kind}")
        record = EditRecord(kind=kind, playlist_id=playlist_id,
                            track_count=track_count, start_time=datetime.now())
        self._local.record = record
        return record

    def end_edit(self, error: Optional[BaseException] = None) -> Optional[EditRecord]:
        record = self._current()
        if record is None:
            return None
        record.end_time = datetime.now()
        record.duration_ms = int((record.end_time - record.start_time).total_seconds() * 1000)
        record.succeeded = error is None
        record.error_type = type(error).__name__ if error is not None else None
        self._local.record = None
        with self._lock:
            self.records.append(record)
            if len(self.records) > self.max_records:
                del self.records[:len(self.records) - self.max_records]
        return record

    @contextmanager
    def edit_context(self, kind: str, playlist_id: str, track_count: int):
        """Context manager timing one edit; the block's exception marks it failed."""
        record = self.start_edit(kind, playlist_id, track_count)
        try:
            yield record
        except BaseException as e:
            self.end_edit(e)
            raise
        else:
            self.end_edit()

    def record_batch(self) -> None:
        record = self._current()
        if record is not None:
            record.batch_count += 1

    def record_failed_batch(self, batch_number: int) -> None:
        record = self._current()
        if record is not None:
            record.batch_count += 1
            record.failed_batches.append(batch_number)

    def summary(self) -> Dict[str, Any]:
        """Aggregate totals per edit kind."""
        with self._lock:
            records = list(self.records)
        by_kind: Dict[str, Dict[str, Any]] = {}
        for kind in EDIT_KINDS:
            subset = [r for r in records if r.kind == kind]
            durations = [r.duration_ms for r in subset]
            by_kind[kind] = {
                'count': len(subset),
                'failed': sum(1 for r in subset if not r.succeeded),
                'tracks': sum(r.track_count for r in subset),
                'batches': sum(r.batch_count for r in subset),
                'failed_batches': sum(r.failed_batch_count for r in subset),
                'average_duration_ms': sum(durations) / len(durations) if durations else 0.0,
            }
        return {
            'total_edits': len(records),
            'failed_edits': sum(1 for r in records if not r.succeeded),
            'by_kind': by_kind,
            'generated_at': time.time(),
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to dictionary for JSON serialization."""
        with self._lock:
            records = [asdict(r) for r in self.records]
        for record in records:
            record['start_time'] = record['start_time'].isoformat()
            if record['end_time']:
                record['end_time'] = record['end_time'].isoformat()
        return {'summary': self.summary(), 'edits': records}

    def save_to_file(self, file_path: str) -> None:
        """Save metrics to JSON file."""
        with open(file_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)
