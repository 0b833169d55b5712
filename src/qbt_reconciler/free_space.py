"""
Free-space projector

A rule with a FREE_SPACE condition deletes torrents until the target is
met. Each deletion that actually frees bytes is projected onto a running
total for (source, rule), so FREE_SPACE reads "reported free space plus
what this run has already scheduled for deletion". Content shared by
cross-seeds or hardlinks is counted once.
"""

import os
import shutil
from typing import Callable, Dict, List, Optional

from qbt_reconciler.context import EvaluationContext, FreeSpaceState
from qbt_reconciler.errors import FatalRunError
from qbt_reconciler.evaluator import ConditionEvaluator, condition_uses_field
from qbt_reconciler.logging import get_logger
from qbt_reconciler.models import DeleteMode, Field, FreeSpaceSource, FreeSpaceSourceType, Rule, TorrentSnapshot
from qbt_reconciler.utils import normalize_path

logger = get_logger(__name__)

QBT_SOURCE_KEY = 'qbt'

VIEW_NEEDED = 'needed'
VIEW_ELIGIBLE = 'eligible'


def resolve_source(source: Optional[FreeSpaceSource]) -> FreeSpaceSource:
    """A missing source or empty type means the client's own reading"""
    if source is None or not (source.type or '').strip():
        return FreeSpaceSource(type=FreeSpaceSourceType.QBITTORRENT)
    return source


def source_key(source: Optional[FreeSpaceSource]) -> str:
    """
    Identity of a free-space source

    Examples:
        >>> source_key(None)
        'qbt'
        >>> source_key(FreeSpaceSource(type='path', path='/data/'))
        'path:/data'
    """
    source = resolve_source(source)
    if source.type == FreeSpaceSourceType.PATH:
        path = (source.path or '').strip()
        if path:
            return f"path:{os.path.normpath(path)}"
    return QBT_SOURCE_KEY


def rule_key(rule: Rule) -> str:
    """Projector state key: one running total per (source, rule)"""
    return f"{source_key(rule.free_space_source)}|rule:{rule.id}"


def rule_uses_free_space(rule: Rule) -> bool:
    delete = rule.actions.delete
    return delete is not None and delete.enabled and condition_uses_field(delete.condition, Field.FREE_SPACE)


def read_free_space(api, source: Optional[FreeSpaceSource], has_local_access: bool) -> int:
    """
    Read free bytes for a source

    Raises:
        ValueError: If the source type is unsupported or a path source is
                    used without local filesystem access
        OSError: If the path cannot be read
    """
    source = resolve_source(source)
    if source.type == FreeSpaceSourceType.QBITTORRENT:
        return int(api.get_free_space())
    if source.type == FreeSpaceSourceType.PATH:
        if not has_local_access:
            raise ValueError("path free-space source requires local filesystem access")
        path = (source.path or '').strip()
        if not path:
            return int(api.get_free_space())
        return shutil.disk_usage(path).free
    raise ValueError(f"unsupported free-space source type '{source.type}'")


def collect_free_space_readings(api, rules: List[Rule], instance: str, has_local_access: bool) -> Dict[str, int]:
    """
    Read every source referenced by a free-space delete rule, once each

    Raises:
        FatalRunError: If any reading fails
    """
    readings: Dict[str, int] = {}
    for rule in rules:
        if not rule_uses_free_space(rule):
            continue
        key = source_key(rule.free_space_source)
        if key in readings:
            continue
        try:
            readings[key] = read_free_space(api, rule.free_space_source, has_local_access)
        except Exception as e:
            raise FatalRunError(instance, f"cannot read free space ({key}): {e}") from e
        logger.debug(f"Free space on '{instance}' ({key}): {readings[key]} bytes")
    return readings


def has_cross_seed(torrent: TorrentSnapshot, all_torrents: List[TorrentSnapshot]) -> bool:
    """Check whether another torrent points at the same content path"""
    content = normalize_path(torrent.content_path)
    if not content:
        return False
    return any(
        other.hash != torrent.hash and normalize_path(other.content_path) == content
        for other in all_torrents
    )


def delete_frees_space(mode: str, torrent: TorrentSnapshot, all_torrents: List[TorrentSnapshot]) -> bool:
    """
    Check whether deleting a torrent with a mode releases disk space

    Keeping files frees nothing; preserving cross-seeds frees nothing
    while another torrent still uses the data.
    """
    if mode == DeleteMode.WITH_FILES:
        return True
    if mode == DeleteMode.WITH_FILES_PRESERVE_CROSS_SEEDS:
        return not has_cross_seed(torrent, all_torrents)
    if mode == DeleteMode.WITH_FILES_INCLUDE_CROSS_SEEDS:
        return True
    return False


def project(state: FreeSpaceState, torrent: TorrentSnapshot, signature: str = '') -> bool:
    """
    Add a torrent's size to the running total unless its data was already counted

    Args:
        state: Projector state of the rule
        torrent: Torrent being deleted
        signature: Hardlink signature of the torrent, if any

    Returns:
        True if the size was added
    """
    if signature:
        identity = f"sig:{signature}"
    else:
        identity = (
            f"path:{normalize_path(torrent.content_path)}|{normalize_path(torrent.save_path)}"
            if torrent.content_path else f"hash:{torrent.hash}"
        )
    if identity in state.counted_keys:
        return False
    state.counted_keys.add(identity)
    state.space_to_clear += max(torrent.size, 0)
    return True


def activate(ctx: EvaluationContext, rule: Rule) -> FreeSpaceState:
    """Make a rule's projector state the active one, creating it on first use"""
    key = rule_key(rule)
    ctx.active_free_space_key = key
    state = ctx.free_space_states.get(key)
    if state is None:
        state = FreeSpaceState()
        ctx.free_space_states[key] = state
    return state


def deactivate(ctx: EvaluationContext):
    ctx.active_free_space_key = ''


def sort_for_free_space(torrents: List[TorrentSnapshot]) -> List[TorrentSnapshot]:
    """Oldest first, ties broken by hash"""
    return sorted(torrents, key=lambda t: (t.added_on, t.hash))


def select_for_free_space(rule: Rule, torrents: List[TorrentSnapshot], ctx: EvaluationContext,
                          view: str = VIEW_NEEDED,
                          matcher: Optional[Callable[[TorrentSnapshot], bool]] = None) -> List[TorrentSnapshot]:
    """
    Select the torrents a free-space delete rule would remove

    In the "needed" view each match is projected, so FREE_SPACE rises and
    matching stops once the target is met. The "eligible" view never
    projects and reports every torrent that matches against the current
    reading.

    Args:
        rule: Rule with a delete action
        torrents: Selector-matched torrents
        ctx: Evaluation context holding the readings
        view: "needed" or "eligible"
        matcher: Predicate replacing the plain condition check

    Returns:
        Matching torrents in deletion order
    """
    delete = rule.actions.delete
    if delete is None or not delete.enabled:
        return []

    evaluator = ConditionEvaluator(ctx)
    if matcher is None:
        def matcher(t):
            return evaluator.evaluate(delete.condition, t) if delete.condition is not None else True

    state = activate(ctx, rule)
    selected = []
    try:
        for torrent in sort_for_free_space(torrents):
            if not torrent.is_complete or not matcher(torrent):
                continue
            selected.append(torrent)
            if view == VIEW_NEEDED and delete_frees_space(delete.mode, torrent, ctx.torrents):
                project(state, torrent, ctx.hardlink_signatures.get(torrent.hash, ''))
    finally:
        deactivate(ctx)

    logger.debug(
        f"Free-space selection for rule '{rule.name}' ({view}): {len(selected)} torrents, "
        f"{state.space_to_clear} bytes projected"
    )
    return selected
