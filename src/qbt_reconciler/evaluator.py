"""
Condition evaluator

Recursive, depth-bounded interpreter for condition trees. Evaluation is
read-only: it never mutates the torrent or the context, and it never raises
for malformed values or patterns. Anything it cannot decide evaluates false.
"""

import re
import time
from typing import List, Optional, Tuple

from qbt_reconciler.context import EvaluationContext
from qbt_reconciler.logging import get_logger
from qbt_reconciler.models import (
    AGE_FIELDS, FLOAT_FIELDS, INT_FIELDS, MAX_CONDITION_DEPTH, PAUSED_STATES, PERCENT_OPERATORS,
    ConditionNode, Field, NodeKind, Operator, TorrentSnapshot,
)
from qbt_reconciler.utils import normalize_name, parse_tags

logger = get_logger(__name__)

MIN_CONTAINS_NAME_LENGTH = 10

# Field -> TorrentSnapshot attribute
_ATTRIBUTES = {
    Field.NAME: 'name',
    Field.HASH: 'hash',
    Field.CATEGORY: 'category',
    Field.TAGS: 'tags',
    Field.SAVE_PATH: 'save_path',
    Field.CONTENT_PATH: 'content_path',
    Field.STATE: 'state',
    Field.TRACKER: 'tracker',
    Field.COMMENT: 'comment',
    Field.SIZE: 'size',
    Field.TOTAL_SIZE: 'total_size',
    Field.DOWNLOADED: 'downloaded',
    Field.UPLOADED: 'uploaded',
    Field.AMOUNT_LEFT: 'amount_left',
    Field.ADDED_ON: 'added_on',
    Field.COMPLETION_ON: 'completion_on',
    Field.LAST_ACTIVITY: 'last_activity',
    Field.SEEDING_TIME: 'seeding_time',
    Field.TIME_ACTIVE: 'time_active',
    Field.RATIO: 'ratio',
    Field.PROGRESS: 'progress',
    Field.AVAILABILITY: 'availability',
    Field.DL_SPEED: 'dlspeed',
    Field.UP_SPEED: 'upspeed',
    Field.NUM_SEEDS: 'num_seeds',
    Field.NUM_LEECHS: 'num_leechs',
    Field.NUM_COMPLETE: 'num_complete',
    Field.NUM_INCOMPLETE: 'num_incomplete',
    Field.TRACKERS_COUNT: 'trackers_count',
    Field.PRIVATE: 'private',
    Field.ADDED_ON_AGE: 'added_on',
    Field.COMPLETION_ON_AGE: 'completion_on',
    Field.LAST_ACTIVITY_AGE: 'last_activity',
}

_DOWNLOADING_STATES = frozenset({
    'downloading', 'stalledDL', 'metaDL', 'queuedDL', 'allocating', 'checkingDL', 'forcedDL',
})
_UPLOADING_STATES = frozenset({'uploading', 'stalledUP', 'queuedUP', 'checkingUP', 'forcedUP'})
_ACTIVE_STATES = frozenset({'downloading', 'uploading', 'forcedDL', 'forcedUP'})
_CHECKING_STATES = frozenset({'checkingDL', 'checkingUP', 'checkingResumeData'})


class ConditionEvaluator:
    """
    Evaluates condition trees against torrent snapshots

    Args:
        ctx: Per-run evaluation context; None disables every lookup that
             needs cross-torrent facts (FREE_SPACE, health, grouping, ...)
    """

    def __init__(self, ctx: Optional[EvaluationContext] = None):
        self.ctx = ctx

    def evaluate(self, node: Optional[ConditionNode], torrent: TorrentSnapshot, depth: int = 0) -> bool:
        """
        Evaluate a condition node

        Args:
            node: Group or leaf node
            torrent: Torrent snapshot
            depth: Current recursion depth

        Returns:
            True if the torrent matches
        """
        if node is None or depth > MAX_CONDITION_DEPTH:
            return False

        if node.operator not in (Operator.EXISTS_IN, Operator.CONTAINS_IN) and node.uses_regex:
            try:
                node.compiled_pattern()
            except re.error as e:
                logger.debug(f"Regex compilation failed for {node.field} pattern '{node.value}': {e}")
                return False

        if node.kind == NodeKind.GROUP:
            result = self._evaluate_group(node, torrent, depth)
        else:
            result = self._evaluate_leaf(node, torrent)

        if node.negate:
            result = not result
        return result

    def _evaluate_group(self, node: ConditionNode, torrent: TorrentSnapshot, depth: int) -> bool:
        if not node.children:
            logger.debug(f"Empty {node.operator} group evaluates false")
            return False

        if node.operator == Operator.OR:
            return any(self.evaluate(child, torrent, depth + 1) for child in node.children)
        if node.operator == Operator.AND:
            return all(self.evaluate(child, torrent, depth + 1) for child in node.children)
        return False

    def _evaluate_leaf(self, node: ConditionNode, torrent: TorrentSnapshot) -> bool:
        field = node.field
        ctx = self.ctx

        if field == Field.NAME:
            if node.operator == Operator.EXISTS_IN:
                return self._exists_in_category(torrent, node.value)
            if node.operator == Operator.CONTAINS_IN:
                return self._contains_in_category(torrent, node.value)
            return compare_string(torrent.name, node)

        if field == Field.TAGS:
            return compare_tags(torrent.tags, node)

        if field == Field.STATE:
            return self._compare_state(torrent, node)

        if field in (Field.HASH, Field.CATEGORY, Field.SAVE_PATH, Field.CONTENT_PATH,
                     Field.TRACKER, Field.COMMENT):
            return compare_string(getattr(torrent, _ATTRIBUTES[field]), node)

        if field == Field.FREE_SPACE:
            if ctx is None:
                return False
            free_space = ctx.free_space()
            if free_space is None:
                return False
            return compare_int(free_space, node)

        if field in AGE_FIELDS:
            timestamp = getattr(torrent, _ATTRIBUTES[field])
            if timestamp <= 0:
                return False
            now = ctx.now() if ctx else None
            return compare_age(timestamp, node, now)

        if field == Field.SAME_CONTENT_COUNT:
            return compare_int(self.same_content_count(torrent.hash, node.include_cross_seeds), node)

        if field in (Field.UNREGISTERED_SAME_CONTENT_COUNT, Field.REGISTERED_SAME_CONTENT_COUNT):
            if field == Field.UNREGISTERED_SAME_CONTENT_COUNT:
                count = self.unregistered_same_content_count(torrent.hash, node.include_cross_seeds)
            else:
                count = self.registered_same_content_count(torrent.hash, node.include_cross_seeds)
            if node.operator in PERCENT_OPERATORS:
                total = self.same_content_count(torrent.hash, node.include_cross_seeds)
                return compare_percent(count, total, node)
            return compare_int(count, node)

        if field == Field.GROUP_SIZE:
            return compare_int(self.group_size(torrent.hash, node.group_id), node)

        if field == Field.IS_GROUPED:
            return compare_bool(self.group_size(torrent.hash, node.group_id) >= 2, node)

        if field == Field.IS_UNREGISTERED:
            return compare_bool(ctx is not None and ctx.is_unregistered(torrent.hash), node)

        if field == Field.PRIVATE:
            return compare_bool(torrent.private, node)

        if field == Field.HARDLINK_SCOPE:
            if ctx is None or not ctx.has_local_access:
                return False
            scope = ctx.hardlink_scopes.get(torrent.hash)
            if not scope:
                return False
            return compare_hardlink_scope(scope, node)

        if field in FLOAT_FIELDS:
            return compare_float(getattr(torrent, _ATTRIBUTES[field]), node)

        if field in INT_FIELDS:
            return compare_int(getattr(torrent, _ATTRIBUTES[field]), node)

        return False

    # ------------------------------------------------------------------
    # State buckets
    # ------------------------------------------------------------------

    def _compare_state(self, torrent: TorrentSnapshot, node: ConditionNode) -> bool:
        if node.operator == Operator.EQUAL:
            return self._matches_state(torrent, node.value)
        if node.operator == Operator.NOT_EQUAL:
            return not self._matches_state(torrent, node.value)
        return compare_string(torrent.state, node)

    def _matches_state(self, torrent: TorrentSnapshot, value: str) -> bool:
        wanted = (value or '').strip()
        if not wanted:
            return False

        state = torrent.state
        bucket = wanted.lower()

        if bucket == 'completed':
            return torrent.progress >= 1.0
        if bucket == 'downloading':
            return state in _DOWNLOADING_STATES
        if bucket in ('uploading', 'seeding'):
            return state in _UPLOADING_STATES
        if bucket in ('paused', 'stopped'):
            return state in PAUSED_STATES
        if bucket in ('running', 'resumed'):
            return state not in PAUSED_STATES
        if bucket == 'active':
            return state in _ACTIVE_STATES
        if bucket == 'inactive':
            return state not in _ACTIVE_STATES
        if bucket == 'stalled':
            return state in ('stalledDL', 'stalledUP')
        if bucket in ('stalled_uploading', 'stalled_seeding'):
            return state == 'stalledUP'
        if bucket == 'stalled_downloading':
            return state == 'stalledDL'
        if bucket == 'checking':
            return state in _CHECKING_STATES
        if bucket == 'moving':
            return state == 'moving'
        if bucket in ('errored', 'error'):
            return state in ('error', 'missingFiles')
        if bucket == 'missingfiles':
            return state == 'missingFiles'
        if bucket == 'unregistered':
            return self.ctx is not None and self.ctx.is_unregistered(torrent.hash)
        if bucket == 'tracker_down':
            return (self.ctx is not None and self.ctx.tracker_down is not None
                    and torrent.hash in self.ctx.tracker_down)

        return state.lower() == bucket

    # ------------------------------------------------------------------
    # Cross-category lookups
    # ------------------------------------------------------------------

    def _exists_in_category(self, torrent: TorrentSnapshot, target: str) -> bool:
        ctx = self.ctx
        if ctx is None or not ctx.category_index:
            return False

        key = (target or '').strip().lower()
        # All-whitespace is not the same as the uncategorized bucket ('')
        if target and not key:
            return False

        hashes = ctx.category_index.get(key, {}).get(torrent.name.lower())
        if not hashes:
            return False
        return any(h != torrent.hash for h in hashes)

    def _contains_in_category(self, torrent: TorrentSnapshot, target: str) -> bool:
        ctx = self.ctx
        if ctx is None or not ctx.category_names:
            return False

        key = (target or '').strip().lower()
        if target and not key:
            return False

        current = normalize_name(torrent.name)
        if len(current) < MIN_CONTAINS_NAME_LENGTH:
            return False

        for entry in ctx.category_names.get(key, []):
            if entry.hash == torrent.hash:
                continue
            if len(entry.normalized_name) < MIN_CONTAINS_NAME_LENGTH:
                continue
            if current in entry.normalized_name or entry.normalized_name in current:
                return True
        return False

    # ------------------------------------------------------------------
    # Cross-seed and grouping counts
    # ------------------------------------------------------------------

    def content_group(self, torrent_hash: str, include_cross_seeds: bool) -> List[str]:
        """Hashes sharing content with a torrent (basename match first when including cross-seeds)"""
        ctx = self.ctx
        if ctx is None:
            return []
        if include_cross_seeds:
            group = ctx.basename_groups.get(torrent_hash)
            if group:
                return group
        return ctx.content_groups.get(torrent_hash) or []

    def same_content_count(self, torrent_hash: str, include_cross_seeds: bool) -> int:
        group = self.content_group(torrent_hash, include_cross_seeds)
        return len(group) if group else 1

    def unregistered_same_content_count(self, torrent_hash: str, include_cross_seeds: bool) -> int:
        ctx = self.ctx
        if ctx is None or ctx.unregistered is None:
            return 0
        return sum(
            1 for h in self.content_group(torrent_hash, include_cross_seeds)
            if h != torrent_hash and h in ctx.unregistered
        )

    def registered_same_content_count(self, torrent_hash: str, include_cross_seeds: bool) -> int:
        unregistered = self.ctx.unregistered if self.ctx else None
        return sum(
            1 for h in self.content_group(torrent_hash, include_cross_seeds)
            if h != torrent_hash and (unregistered is None or h not in unregistered)
        )

    def group_size(self, torrent_hash: str, group_id: str = '') -> int:
        ctx = self.ctx
        if ctx is None:
            return 0
        index = None
        group_id = (group_id or '').strip().lower()
        if group_id:
            index = ctx.group_index_cache.get((ctx.active_rule_id, group_id))
        else:
            index = ctx.active_group_index
        if index is None:
            return 0
        return index.size_for(torrent_hash)


def evaluate(node: Optional[ConditionNode], torrent: TorrentSnapshot,
             ctx: Optional[EvaluationContext] = None, depth: int = 0) -> bool:
    """Evaluate a condition tree against a torrent"""
    return ConditionEvaluator(ctx).evaluate(node, torrent, depth)


# ----------------------------------------------------------------------
# Comparators
# ----------------------------------------------------------------------

def compare_string(value: str, node: ConditionNode) -> bool:
    """Case-insensitive string comparison (or regex search)"""
    if node.uses_regex:
        return node.compiled_pattern().search(value or '') is not None

    value = (value or '').lower()
    target = (node.value or '').lower()
    op = node.operator

    if op == Operator.EQUAL:
        return value == target
    if op == Operator.NOT_EQUAL:
        return value != target
    if op == Operator.CONTAINS:
        return target in value
    if op == Operator.NOT_CONTAINS:
        return target not in value
    if op == Operator.STARTS_WITH:
        return value.startswith(target)
    if op == Operator.ENDS_WITH:
        return value.endswith(target)
    return False


def compare_tags(raw: str, node: ConditionNode) -> bool:
    """
    Compare a comma-separated tag string element by element

    "CONTAINS x" matches if any single tag contains x. Regex matches the
    raw joined string.
    """
    if node.uses_regex:
        return node.compiled_pattern().search(raw or '') is not None

    tags = [t.lower() for t in parse_tags(raw)]
    target = (node.value or '').strip().lower()
    op = node.operator

    if op == Operator.EQUAL:
        return target in tags
    if op == Operator.NOT_EQUAL:
        return target not in tags
    if op == Operator.CONTAINS:
        return any(target in t for t in tags)
    if op == Operator.NOT_CONTAINS:
        return not any(target in t for t in tags)
    if op == Operator.STARTS_WITH:
        return any(t.startswith(target) for t in tags)
    if op == Operator.ENDS_WITH:
        return any(t.endswith(target) for t in tags)
    return False


def _parse_number(text: str, integer: bool) -> Optional[float]:
    text = (text or '').strip()
    if text == '':
        return 0
    try:
        return int(text) if integer else float(text)
    except ValueError:
        pass
    if integer:
        try:
            return float(text)
        except ValueError:
            return None
    return None


def _compare_number(value: float, target: float, node: ConditionNode) -> bool:
    op = node.operator
    if op == Operator.EQUAL:
        return value == target
    if op == Operator.NOT_EQUAL:
        return value != target
    if op == Operator.GREATER_THAN:
        return value > target
    if op == Operator.GREATER_THAN_OR_EQUAL:
        return value >= target
    if op == Operator.LESS_THAN:
        return value < target
    if op == Operator.LESS_THAN_OR_EQUAL:
        return value <= target
    return False


def _between(value: float, node: ConditionNode) -> bool:
    if node.min_value is None or node.max_value is None:
        return False
    return node.min_value <= value <= node.max_value


def compare_int(value: int, node: ConditionNode) -> bool:
    """Numeric comparison for integer fields; a non-numeric target never matches"""
    if node.operator == Operator.BETWEEN:
        return _between(value, node)
    target = _parse_number(node.value, integer=True)
    if target is None:
        return False
    return _compare_number(value, target, node)


def compare_float(value: float, node: ConditionNode) -> bool:
    if node.operator == Operator.BETWEEN:
        return _between(value, node)
    target = _parse_number(node.value, integer=False)
    if target is None:
        return False
    return _compare_number(value, target, node)


def compare_percent(count: int, total: int, node: ConditionNode) -> bool:
    """
    Compare count/total as a percentage (0-100)

    Examples:
        3 of 4 is 75%, so GREATER_THAN_OR_EQUAL_PERCENT 75 matches.
        A total of 0 never matches.
    """
    if total == 0:
        return False
    try:
        target = float(node.value)
    except (TypeError, ValueError):
        return False

    actual = count / total * 100
    op = node.operator
    if op == Operator.GREATER_THAN_PERCENT:
        return actual > target
    if op == Operator.GREATER_THAN_OR_EQUAL_PERCENT:
        return actual >= target
    if op == Operator.LESS_THAN_PERCENT:
        return actual < target
    if op == Operator.LESS_THAN_OR_EQUAL_PERCENT:
        return actual <= target
    return False


def compare_bool(value: bool, node: ConditionNode) -> bool:
    target = (node.value or '').lower() == 'true' or node.value == '1'
    if node.operator == Operator.EQUAL:
        return value == target
    if node.operator == Operator.NOT_EQUAL:
        return value != target
    return False


def compare_hardlink_scope(scope: str, node: ConditionNode) -> bool:
    if node.operator == Operator.EQUAL:
        return scope.lower() == (node.value or '').lower()
    if node.operator == Operator.NOT_EQUAL:
        return scope.lower() != (node.value or '').lower()
    return False


def compare_age(timestamp: int, node: ConditionNode, now: Optional[float] = None) -> bool:
    """Compare seconds elapsed since a timestamp, clamped at 0"""
    if now is None:
        now = time.time()
    age = max(int(now) - int(timestamp), 0)
    return compare_int(age, node)


# ----------------------------------------------------------------------
# Tree inspection
# ----------------------------------------------------------------------

def condition_uses_field(node: Optional[ConditionNode], field: str) -> bool:
    """Check whether a condition tree references a field"""
    if node is None:
        return False
    if node.field == field:
        return True
    return any(condition_uses_field(child, field) for child in node.children)


def condition_uses_include_cross_seeds(node: Optional[ConditionNode]) -> bool:
    """Check whether any leaf in a condition tree sets include_cross_seeds"""
    if node is None:
        return False
    if node.include_cross_seeds:
        return True
    return any(condition_uses_include_cross_seeds(child) for child in node.children)


def collect_group_ids(nodes: List[Optional[ConditionNode]]) -> Tuple[List[str], bool]:
    """
    Collect the group ids GROUP_SIZE/IS_GROUPED leaves reference

    Returns:
        (unique lowercase group ids in first-seen order, whether any grouping
        leaf has no group id of its own)
    """
    group_ids: List[str] = []
    unscoped = False
    stack = [n for n in reversed(nodes) if n is not None]
    while stack:
        node = stack.pop()
        if node.field in (Field.GROUP_SIZE, Field.IS_GROUPED):
            group_id = (node.group_id or '').strip().lower()
            if not group_id:
                unscoped = True
            elif group_id not in group_ids:
                group_ids.append(group_id)
        stack.extend(reversed(node.children))
    return group_ids, unscoped
