"""
Activity (audit) records

Every executed, failed or simulated action is recorded as an ActivityRecord
in a persistent ActivityStore backend. Runs touching many torrents also
store their per-torrent rows in the in-memory ActivityRunStore, keyed by
the activity id, so the summary record stays small.
"""

import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from qbt_reconciler.logging import get_logger

logger = get_logger(__name__)

RUN_RETENTION_SECONDS = 24 * 3600
MAX_RUNS = 500
DEFAULT_RUN_PAGE_SIZE = 200


class Outcome:
    """Activity outcome constants"""
    SUCCESS = 'success'
    FAILED = 'failed'
    DRY_RUN = 'dry_run'

    @classmethod
    def all(cls) -> List[str]:
        return [cls.SUCCESS, cls.FAILED, cls.DRY_RUN]


class ActivityAction:
    """Activity action names"""
    SPEED_LIMITS_CHANGED = 'speed_limits_changed'
    SHARE_LIMITS_CHANGED = 'share_limits_changed'
    LIMIT_FAILED = 'limit_failed'
    PAUSED = 'paused'
    RESUMED = 'resumed'
    RECHECKED = 'rechecked'
    REANNOUNCED = 'reannounced'
    TAGS_CHANGED = 'tags_changed'
    CATEGORY_CHANGED = 'category_changed'
    MOVED = 'moved'
    DELETED_CONDITION = 'deleted_condition'
    DELETE_FAILED = 'delete_failed'
    EXTERNAL_PROGRAM = 'external_program'
    DRY_RUN_NO_MATCH = 'dry_run_no_match'


@dataclass
class ActivityRecord:
    instance: str
    action: str
    outcome: str
    hash: str = ''
    torrent_name: str = ''
    tracker_domain: str = ''
    rule_id: Optional[int] = None
    rule_name: str = ''
    reason: str = ''
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat()
        return data


class ActivityStore(ABC):
    """
    Abstract base class for activity store backends

    Implementations must provide:
    - Persistent record storage
    - Newest-first listing per instance
    - Thread-safe operations
    - Retention-based pruning
    """

    @abstractmethod
    def create(self, record: ActivityRecord) -> int:
        """
        Store a record

        Args:
            record: Activity record (its id is ignored)

        Returns:
            New record id
        """
        pass

    @abstractmethod
    def list(self, instance: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[ActivityRecord]:
        """
        List records newest first

        Args:
            instance: Restrict to one instance, or None for all
            limit: Maximum number of records (max 500)
            offset: Pagination offset

        Returns:
            List of ActivityRecord
        """
        pass

    @abstractmethod
    def get(self, activity_id: int) -> Optional[ActivityRecord]:
        pass

    @abstractmethod
    def prune(self, retention_days: int) -> int:
        """
        Delete records older than the retention period

        Returns:
            Number of records deleted
        """
        pass

    @abstractmethod
    def health_check(self) -> bool:
        pass

    @abstractmethod
    def close(self):
        pass


@dataclass
class _Run:
    instance: str
    items: List[Dict[str, Any]]
    created_at: float


class ActivityRunStore:
    """
    In-memory per-torrent rows of an activity

    Runs expire after 24 hours; at most 500 runs are kept, oldest evicted first.
    """

    def __init__(self, retention_seconds: int = RUN_RETENTION_SECONDS, max_runs: int = MAX_RUNS):
        self.retention_seconds = retention_seconds
        self.max_runs = max_runs
        self._runs: 'OrderedDict[int, _Run]' = OrderedDict()
        self._lock = threading.Lock()

    def put(self, activity_id: int, instance: str, items: List[Dict[str, Any]]):
        if activity_id is None or not items:
            return
        with self._lock:
            self._runs.pop(activity_id, None)
            self._runs[activity_id] = _Run(instance=instance, items=list(items), created_at=time.time())
            while len(self._runs) > self.max_runs:
                self._runs.popitem(last=False)

    def get(self, instance: str, activity_id: int, offset: int = 0,
            limit: int = DEFAULT_RUN_PAGE_SIZE) -> Optional[Tuple[int, List[Dict[str, Any]]]]:
        """
        Page through a run's rows

        Returns:
            (total rows, page), or None if the run is unknown, expired or
            belongs to another instance
        """
        with self._lock:
            run = self._runs.get(activity_id)
            if run is None or run.instance != instance:
                return None
            if time.time() - run.created_at > self.retention_seconds:
                del self._runs[activity_id]
                return None
            offset = max(offset, 0)
            if limit <= 0:
                limit = DEFAULT_RUN_PAGE_SIZE
            return len(run.items), run.items[offset:offset + limit]

    def prune(self) -> int:
        cutoff = time.time() - self.retention_seconds
        with self._lock:
            expired = [k for k, run in self._runs.items() if run.created_at < cutoff]
            for k in expired:
                del self._runs[k]
        if expired:
            logger.debug(f"Pruned {len(expired)} expired activity runs")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)
