"""
Redis Activity Store Backend

Activity store using Redis with:
- Connection pooling
- Atomic id allocation
- Optional persistence (depends on Redis configuration)
"""

import json
from typing import Dict, List, Optional
from datetime import datetime, timedelta, timezone

import redis

from qbt_reconciler.activity import ActivityRecord, ActivityStore
from qbt_reconciler.logging import get_logger

logger = get_logger(__name__)

MAX_LIST_LIMIT = 500


class RedisActivityStore(ActivityStore):
    """
    Redis-based activity store

    Uses Redis data structures:
    - STRING: Id counter
    - HASH: Record data
    - ZSET: Record ids by creation time, overall and per instance

    Key patterns:
    - qbt_reconciler:activity:next_id - Id counter (STRING)
    - qbt_reconciler:activity:{id} - Record data (HASH)
    - qbt_reconciler:activity:by_time - All records by created_at (ZSET)
    - qbt_reconciler:activity:instance:{name} - Records of an instance by created_at (ZSET)
    """

    KEY_PREFIX = "qbt_reconciler"

    def __init__(self, redis_url: str = 'redis://localhost:6379/0'):
        """
        Initialize Redis store

        Args:
            redis_url: Redis connection URL
                      Format: redis://[:password@]host[:port][/database]
        """
        self.redis_url = redis_url

        try:
            self.pool = redis.ConnectionPool.from_url(
                redis_url,
                decode_responses=True,
                max_connections=10,
                socket_timeout=5,
                socket_connect_timeout=5
            )
            self.redis = redis.Redis(connection_pool=self.pool)
            self.redis.ping()

            logger.info(f"Redis activity store initialized: {redis_url}")

        except redis.ConnectionError as e:
            raise ConnectionError(f"Cannot connect to Redis at {redis_url}: {e}")

    def _key(self, *parts: str) -> str:
        """Build Redis key with prefix"""
        return ':'.join([self.KEY_PREFIX] + [str(p) for p in parts])

    def create(self, record: ActivityRecord) -> int:
        """Store a record"""
        activity_id = int(self.redis.incr(self._key('activity', 'next_id')))
        timestamp = record.created_at.timestamp()

        data = {
            'id': activity_id,
            'instance': record.instance,
            'hash': record.hash,
            'torrent_name': record.torrent_name,
            'tracker_domain': record.tracker_domain,
            'action': record.action,
            'rule_id': '' if record.rule_id is None else record.rule_id,
            'rule_name': record.rule_name,
            'outcome': record.outcome,
            'reason': record.reason,
            'details': json.dumps(record.details) if record.details else '',
            'created_at': record.created_at.isoformat(),
        }

        pipeline = self.redis.pipeline()
        pipeline.hset(self._key('activity', activity_id), mapping=data)
        pipeline.zadd(self._key('activity', 'by_time'), {activity_id: timestamp})
        pipeline.zadd(self._key('activity', 'instance', record.instance), {activity_id: timestamp})
        pipeline.execute()

        logger.debug(f"Recorded activity {activity_id}: {record.action} ({record.outcome}) on {record.instance}")
        return activity_id

    def list(self, instance: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[ActivityRecord]:
        """List records newest first"""
        limit = min(limit, MAX_LIST_LIMIT)
        if limit <= 0:
            return []

        index_key = self._key('activity', 'instance', instance) if instance else self._key('activity', 'by_time')
        ids = self.redis.zrevrange(index_key, offset, offset + limit - 1)

        records = []
        for activity_id in ids:
            record = self.get(int(activity_id))
            if record:
                records.append(record)
        return records

    def get(self, activity_id: int) -> Optional[ActivityRecord]:
        """Get record by id"""
        data = self.redis.hgetall(self._key('activity', activity_id))
        if not data:
            return None
        return self._hash_to_record(data)

    def prune(self, retention_days: int) -> int:
        """Remove records older than the retention period"""
        cutoff_date = datetime.now(timezone.utc) - timedelta(days=retention_days)
        old_ids = self.redis.zrangebyscore(self._key('activity', 'by_time'), '-inf', cutoff_date.timestamp())

        if not old_ids:
            return 0

        for activity_id in old_ids:
            instance = self.redis.hget(self._key('activity', activity_id), 'instance')

            pipeline = self.redis.pipeline()
            pipeline.delete(self._key('activity', activity_id))
            pipeline.zrem(self._key('activity', 'by_time'), activity_id)
            if instance:
                pipeline.zrem(self._key('activity', 'instance', instance), activity_id)
            pipeline.execute()

        logger.info(f"Pruned {len(old_ids)} activity records older than {cutoff_date}")
        return len(old_ids)

    def health_check(self) -> bool:
        """Check if Redis is accessible"""
        try:
            self.redis.ping()
            return True
        except redis.RedisError as e:
            logger.error(f"Activity store health check failed: {e}")
            return False

    def _hash_to_record(self, data: Dict[str, str]) -> ActivityRecord:
        """
        Convert Redis hash to ActivityRecord

        Args:
            data: Redis HASH data

        Returns:
            ActivityRecord with parsed details
        """
        return ActivityRecord(
            id=int(data['id']),
            instance=data.get('instance', ''),
            hash=data.get('hash', ''),
            torrent_name=data.get('torrent_name', ''),
            tracker_domain=data.get('tracker_domain', ''),
            action=data.get('action', ''),
            rule_id=int(data['rule_id']) if data.get('rule_id') else None,
            rule_name=data.get('rule_name', ''),
            outcome=data.get('outcome', ''),
            reason=data.get('reason', ''),
            details=json.loads(data['details']) if data.get('details') else {},
            created_at=datetime.fromisoformat(data['created_at']),
        )

    def close(self):
        """Close Redis connection pool"""
        if getattr(self, 'pool', None) is not None:
            self.pool.disconnect()

    def __del__(self):
        """Cleanup on deletion"""
        self.close()
