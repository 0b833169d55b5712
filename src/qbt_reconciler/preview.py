"""
Preview and dry-run simulation

Shows what a delete rule would remove, or what a whole rule would do,
without touching the client. Both paths reuse the live run's context
building, group checks, overlap verification and free-space projection.
"""

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

from qbt_reconciler.desired_state import GroupGate
from qbt_reconciler.evaluator import ConditionEvaluator
from qbt_reconciler.free_space import VIEW_ELIGIBLE, VIEW_NEEDED, rule_uses_free_space, select_for_free_space
from qbt_reconciler.grouping import activate_rule_grouping
from qbt_reconciler.logging import get_logger
from qbt_reconciler.models import ActionName, Rule, TorrentSnapshot

logger = get_logger(__name__)

DEFAULT_PREVIEW_LIMIT = 25

__all__ = [
    'DEFAULT_PREVIEW_LIMIT', 'VIEW_NEEDED', 'VIEW_ELIGIBLE',
    'PreviewRow', 'PreviewResult', 'preview_delete_rule', 'dry_run_rule',
]


@dataclass
class PreviewRow:
    name: str
    hash: str
    size: int
    ratio: float
    seeding_time: int
    tracker: str
    category: str
    tags: str
    state: str
    added_on: int
    uploaded: int
    downloaded: int
    is_unregistered: bool = False

    @classmethod
    def from_torrent(cls, torrent: TorrentSnapshot, tracker: str, is_unregistered: bool) -> 'PreviewRow':
        return cls(
            name=torrent.name,
            hash=torrent.hash,
            size=torrent.size,
            ratio=torrent.ratio,
            seeding_time=torrent.seeding_time,
            tracker=tracker,
            category=torrent.category,
            tags=torrent.tags,
            state=torrent.state,
            added_on=torrent.added_on,
            uploaded=torrent.uploaded,
            downloaded=torrent.downloaded,
            is_unregistered=is_unregistered,
        )


@dataclass
class PreviewResult:
    total_matches: int = 0
    examples: List[PreviewRow] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_matches': self.total_matches,
            'examples': [asdict(row) for row in self.examples],
        }


def preview_delete_rule(engine, instance: str, rule: Rule, limit: int = DEFAULT_PREVIEW_LIMIT,
                        offset: int = 0, view: str = VIEW_NEEDED) -> PreviewResult:
    """
    List the torrents a rule's delete action would remove

    Free-space rules honour the view: "needed" stops once the projected
    free space meets the target, "eligible" lists every torrent matching
    the current reading. During the free-space cooldown they list nothing,
    as a live run would delete nothing.

    Args:
        engine: RulesEngine providing clients and context building
        instance: Instance name
        rule: Rule to preview (need not be saved or enabled)
        limit: Page size (<= 0 means 25)
        offset: Number of matches to skip
        view: "needed" or "eligible"

    Returns:
        PreviewResult with the total match count and one page of rows

    Raises:
        FatalRunError: If torrents or free space cannot be read
    """
    if limit <= 0:
        limit = DEFAULT_PREVIEW_LIMIT
    offset = max(offset, 0)
    if view not in (VIEW_NEEDED, VIEW_ELIGIBLE):
        raise ValueError(f"Unknown preview view: {view}")

    delete = rule.actions.delete
    if delete is None or not delete.enabled:
        return PreviewResult()

    api = engine.client(instance)
    torrents = engine.load_torrents(instance, api)
    if not torrents:
        return PreviewResult()

    if rule_uses_free_space(rule) and engine.in_cooldown(instance, time.time()):
        logger.info(f"Preview of rule '{rule.name}' on '{instance}': free-space deletes are cooling down")
        return PreviewResult()

    ctx = engine.build_context(instance, api, torrents, [rule])
    selector = engine.selector(ctx)
    candidates = [t for t in torrents if selector(rule, t)]

    activate_rule_grouping(ctx, rule)
    evaluator = ConditionEvaluator(ctx)
    gate = GroupGate(ctx, selector)

    def would_delete(torrent: TorrentSnapshot) -> bool:
        if delete.condition is not None and not evaluator.evaluate(delete.condition, torrent):
            return False
        return gate.allows(rule, ActionName.DELETE, delete, torrent)

    if rule_uses_free_space(rule):
        matches = select_for_free_space(rule, candidates, ctx, view=view, matcher=would_delete)
    else:
        matches = [t for t in candidates if t.is_complete and would_delete(t)]

    page = matches[offset:offset + limit]
    unregistered = ctx.unregistered
    if unregistered is None and page:
        # Health for display only; matching above used what the live run reads
        _, unregistered, _ = engine.load_tracker_health(instance, api, [t.hash for t in page])

    result = PreviewResult(total_matches=len(matches))
    for torrent in page:
        result.examples.append(PreviewRow.from_torrent(
            torrent, ctx.primary_domain(torrent.hash), bool(unregistered) and torrent.hash in unregistered
        ))

    logger.info(
        f"Preview of rule '{rule.name}' on '{instance}' ({view}): {result.total_matches} torrents would be removed"
    )
    return result


def dry_run_rule(engine, instance: str, rule: Rule, force: bool = True):
    """
    Run one rule through the live pipeline with dry-run execution

    The skip window is never set. A forced run that matches nothing leaves
    a single dry_run_no_match record.

    Returns:
        RuleStats of the run
    """
    logger.info(f"[DRY RUN] Simulating rule '{rule.name}' on '{instance}'")
    return engine.run_instance(instance, force=force, dry_run=True, rules=[rule])
