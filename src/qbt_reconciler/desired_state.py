"""
Desired state of a torrent and the per-rule fold that builds it

Every selector-matched rule is folded into the torrent's DesiredState in
priority order. Fields are last-wins; a delete ends the fold.
"""

import dataclasses
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from qbt_reconciler import free_space
from qbt_reconciler.context import EvaluationContext, cross_seed_key
from qbt_reconciler.evaluator import ConditionEvaluator, condition_uses_field
from qbt_reconciler.grouping import get_or_build_group_index, resolve_group_members
from qbt_reconciler.logging import get_logger
from qbt_reconciler.models import (
    ActionConfig, ActionName, DeleteMode, Field, Rule, TagAction, TagMode, TorrentSnapshot,
)
from qbt_reconciler.trackers import resolve_display_name
from qbt_reconciler.utils import contains_fold, parse_tags

logger = get_logger(__name__)

TAG_ADD = 'add'
TAG_REMOVE = 'remove'

DELETE_REASON = 'condition matched'


@dataclass
class DesiredState:
    """Accumulated intent for one torrent in one run"""
    hash: str
    name: str = ''
    tracker_domain: str = ''
    current_tags: Set[str] = field(default_factory=set)

    upload_kib: Optional[int] = None
    download_kib: Optional[int] = None
    ratio_limit: Optional[float] = None
    seeding_minutes: Optional[int] = None

    pause: bool = False
    resume: bool = False
    recheck: bool = False
    reannounce: bool = False

    # tag -> 'add' | 'remove'
    tag_actions: Dict[str, str] = field(default_factory=dict)

    category: Optional[str] = None
    category_include_cross_seeds: bool = False
    category_group_id: str = ''
    category_rule_id: Optional[int] = None

    move_path: Optional[str] = None
    move_include_cross_seeds: bool = False
    move_group_id: str = ''
    move_rule_id: Optional[int] = None

    delete: bool = False
    delete_mode: str = ''
    delete_include_hardlinks: bool = False
    delete_group_id: str = ''
    delete_rule_id: Optional[int] = None
    delete_rule_name: str = ''
    delete_reason: str = ''
    delete_for_free_space: bool = False

    program_id: str = ''
    program_rule_id: Optional[int] = None
    program_rule_name: str = ''

    # Rules that contributed at least one field: rule id -> name
    contributing_rules: Dict[int, str] = field(default_factory=dict)

    @classmethod
    def for_torrent(cls, torrent: TorrentSnapshot, ctx: Optional[EvaluationContext] = None) -> 'DesiredState':
        return cls(
            hash=torrent.hash,
            name=torrent.name,
            tracker_domain=ctx.primary_domain(torrent.hash) if ctx else '',
            current_tags=set(parse_tags(torrent.tags)),
        )

    def copy(self) -> 'DesiredState':
        return dataclasses.replace(
            self,
            current_tags=set(self.current_tags),
            tag_actions=dict(self.tag_actions),
            contributing_rules=dict(self.contributing_rules),
        )

    def has_actions(self) -> bool:
        return (
            self.upload_kib is not None
            or self.download_kib is not None
            or self.ratio_limit is not None
            or self.seeding_minutes is not None
            or self.pause
            or self.resume
            or self.recheck
            or self.reannounce
            or bool(self.tag_actions)
            or self.category is not None
            or self.move_path is not None
            or self.delete
            or bool(self.program_id)
        )


class GroupGate:
    """
    All-or-none check for group-scoped delete, category and move actions

    Every member of the torrent's group must be selector-matched and satisfy
    the action's condition on its own; ambiguous groups must also resolve.
    Results are cached per (rule, group key, action) for the run.
    """

    def __init__(self, ctx: EvaluationContext, selector: Callable[[Rule, TorrentSnapshot], bool]):
        self.ctx = ctx
        self.selector = selector
        self.evaluator = ConditionEvaluator(ctx)
        self._cache: Dict[Tuple[int, str, str, str], bool] = {}

    def allows(self, rule: Rule, action_name: str, action: ActionConfig, torrent: TorrentSnapshot) -> bool:
        group_id = getattr(action, 'group_id', '')
        if not group_id:
            return True

        index = get_or_build_group_index(self.ctx, rule, group_id)
        if index is None:
            return False
        key = index.key_for(torrent.hash)
        if not key:
            # Not groupable under this definition; the torrent stands alone
            return True

        cache_key = (rule.id, group_id.lower(), key, action_name)
        if cache_key in self._cache:
            return self._cache[cache_key]

        allowed = self._check(rule, action_name, action, torrent, index)
        self._cache[cache_key] = allowed
        return allowed

    def _check(self, rule, action_name, action, torrent, index) -> bool:
        members = resolve_group_members(self.ctx, index, torrent.hash)
        if members is None:
            return False

        for member_hash in members:
            member = self.ctx.torrents_by_hash.get(member_hash)
            if member is None or not self.selector(rule, member):
                logger.debug(f"Group '{index.group_id}' of {torrent.hash}: member {member_hash} is not selected")
                return False
            if action_name == ActionName.DELETE and not member.is_complete:
                return False
            if action.condition is not None and not self.evaluator.evaluate(action.condition, member):
                logger.debug(
                    f"Group '{index.group_id}' of {torrent.hash}: member {member_hash} "
                    f"does not match {action_name} condition of rule '{rule.name}'"
                )
                return False
        return True


def should_block_category_for_cross_seeds(
    torrent: TorrentSnapshot,
    protected_categories: List[str],
    cross_seed_index: Optional[Dict[Tuple[str, str], List[TorrentSnapshot]]],
) -> bool:
    """Check whether another torrent on the same data sits in a protected category"""
    if not protected_categories or not cross_seed_index:
        return False
    key = cross_seed_key(torrent)
    if key is None:
        return False
    return any(
        other.hash != torrent.hash and contains_fold(protected_categories, other.category)
        for other in cross_seed_index.get(key, [])
    )


class RuleReducer:
    """
    Folds rules into desired states

    Args:
        ctx: Evaluation context of the run
        cross_seed_index: (content path, save path) -> torrents
        gate: All-or-none checker for group-scoped actions
        free_space_deletes_blocked: Skip deletes whose condition uses FREE_SPACE (cooldown)
    """

    def __init__(self, ctx: EvaluationContext,
                 cross_seed_index: Optional[Dict[Tuple[str, str], List[TorrentSnapshot]]] = None,
                 gate: Optional[GroupGate] = None,
                 free_space_deletes_blocked: bool = False):
        self.ctx = ctx
        self.cross_seed_index = cross_seed_index or {}
        self.gate = gate
        self.free_space_deletes_blocked = free_space_deletes_blocked
        self.evaluator = ConditionEvaluator(ctx)

    def _matches(self, action: ActionConfig, torrent: TorrentSnapshot) -> bool:
        return action.condition is None or self.evaluator.evaluate(action.condition, torrent)

    def _gated(self, rule: Rule, name: str, action: ActionConfig, torrent: TorrentSnapshot) -> bool:
        return self.gate is None or self.gate.allows(rule, name, action, torrent)

    def reduce(self, state: DesiredState, rule: Rule, torrent: TorrentSnapshot) -> DesiredState:
        """
        Fold one rule into a torrent's desired state

        Args:
            state: State accumulated from earlier rules (left untouched)
            rule: Selector-matched rule
            torrent: Torrent snapshot

        Returns:
            New desired state
        """
        if state.delete:
            return state

        new = state.copy()
        actions = rule.actions

        def contributed():
            new.contributing_rules[rule.id] = rule.name

        speed = actions.speed_limits
        if speed is not None and speed.enabled and self._matches(speed, torrent):
            if speed.upload_kib is not None:
                new.upload_kib = speed.upload_kib
            if speed.download_kib is not None:
                new.download_kib = speed.download_kib
            contributed()

        share = actions.share_limits
        if share is not None and share.enabled and self._matches(share, torrent):
            if share.ratio_limit is not None:
                new.ratio_limit = share.ratio_limit
            if share.seeding_time_minutes is not None:
                new.seeding_minutes = share.seeding_time_minutes
            contributed()

        pause = actions.pause
        if pause is not None and pause.enabled and self._matches(pause, torrent) and not torrent.is_paused:
            new.pause = True
            new.resume = False
            contributed()

        resume = actions.resume
        if resume is not None and resume.enabled and self._matches(resume, torrent) and torrent.is_paused:
            new.resume = True
            new.pause = False
            contributed()

        for name in (ActionName.RECHECK, ActionName.REANNOUNCE):
            action = getattr(actions, name)
            if action is not None and action.enabled and self._matches(action, torrent):
                setattr(new, name, True)
                contributed()

        tag = actions.tag
        if tag is not None and tag.enabled:
            if condition_uses_field(tag.condition, Field.IS_UNREGISTERED) and self.ctx.unregistered is None:
                logger.debug(f"Rule '{rule.name}': tag action skipped, tracker health unknown")
            elif self._reduce_tags(new, tag, torrent):
                contributed()

        category = actions.category
        if category is not None and category.enabled and self._matches(category, torrent):
            if should_block_category_for_cross_seeds(
                torrent, category.block_if_cross_seed_in_categories, self.cross_seed_index
            ):
                logger.debug(f"Rule '{rule.name}': category change of {torrent.hash} blocked by cross-seed")
            elif self._gated(rule, ActionName.CATEGORY, category, torrent):
                new.category = category.category
                new.category_include_cross_seeds = category.include_cross_seeds
                new.category_group_id = category.group_id
                new.category_rule_id = rule.id
                contributed()

        move = actions.move
        if move is not None and move.enabled and self._matches(move, torrent):
            if self._gated(rule, ActionName.MOVE, move, torrent):
                new.move_path = move.path
                new.move_include_cross_seeds = move.include_cross_seeds
                new.move_group_id = move.group_id
                new.move_rule_id = rule.id
                contributed()

        program = actions.external_program
        if program is not None and program.enabled and self._matches(program, torrent):
            new.program_id = program.program_id
            new.program_rule_id = rule.id
            new.program_rule_name = rule.name
            contributed()

        delete = actions.delete
        if delete is not None and delete.enabled and torrent.is_complete:
            if self._reduce_delete(new, rule, torrent):
                contributed()

        return new

    def _reduce_tags(self, state: DesiredState, action: TagAction, torrent: TorrentSnapshot) -> bool:
        mode = action.mode or TagMode.FULL
        matches = self._matches(action, torrent)

        managed = list(action.tags)
        if action.use_tracker_as_tag and state.tracker_domain:
            tracker_tag = state.tracker_domain
            if action.use_display_name:
                tracker_tag = resolve_display_name(state.tracker_domain, self.ctx.display_names)
            managed.append(tracker_tag)

        changed = False
        for tag in managed:
            has_tag = tag in state.current_tags
            pending = state.tag_actions.get(tag)
            if pending is not None:
                has_tag = pending == TAG_ADD

            if not has_tag and matches and mode in (TagMode.FULL, TagMode.ADD):
                state.tag_actions[tag] = TAG_ADD
                changed = True
            elif has_tag and not matches and mode in (TagMode.FULL, TagMode.REMOVE):
                state.tag_actions[tag] = TAG_REMOVE
                changed = True
        return changed

    def _reduce_delete(self, state: DesiredState, rule: Rule, torrent: TorrentSnapshot) -> bool:
        delete = rule.actions.delete
        uses_free_space = condition_uses_field(delete.condition, Field.FREE_SPACE)
        if uses_free_space and self.free_space_deletes_blocked:
            logger.debug(f"Rule '{rule.name}': free-space delete skipped during cooldown")
            return False

        projector = free_space.activate(self.ctx, rule) if uses_free_space else None
        try:
            if not self._matches(delete, torrent):
                return False
            if not self._gated(rule, ActionName.DELETE, delete, torrent):
                return False

            state.delete = True
            state.delete_mode = delete.mode or DeleteMode.KEEP_FILES
            state.delete_include_hardlinks = delete.include_hardlinks
            state.delete_group_id = delete.group_id
            state.delete_rule_id = rule.id
            state.delete_rule_name = rule.name
            state.delete_reason = DELETE_REASON
            state.delete_for_free_space = uses_free_space

            if projector is not None and free_space.delete_frees_space(state.delete_mode, torrent, self.ctx.torrents):
                free_space.project(projector, torrent, self.ctx.hardlink_signatures.get(torrent.hash, ''))
            return True
        finally:
            if projector is not None:
                free_space.deactivate(self.ctx)


def reduce_rule(state: DesiredState, rule: Rule, torrent: TorrentSnapshot, ctx: EvaluationContext,
                cross_seed_index: Optional[Dict[Tuple[str, str], List[TorrentSnapshot]]] = None) -> DesiredState:
    """Fold one rule into a desired state without group gating"""
    return RuleReducer(ctx, cross_seed_index).reduce(state, rule, torrent)
