"""
Batch planning and execution

Turns the desired states of a run into ordered, size-limited batches of
client calls, skipping values that are already current, and executes them
with per-batch failure isolation and a run deadline. Every batch leaves an
activity record behind.
"""

import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

import qbittorrentapi

from qbt_reconciler.activity import ActivityAction, ActivityRecord, ActivityRunStore, ActivityStore, Outcome
from qbt_reconciler.context import EvaluationContext
from qbt_reconciler.desired_state import TAG_ADD, TAG_REMOVE, DesiredState
from qbt_reconciler.errors import ReconcilerError, TransientIOError
from qbt_reconciler.free_space import has_cross_seed
from qbt_reconciler.grouping import get_or_build_group_index, resolve_group_members
from qbt_reconciler.logging import get_logger
from qbt_reconciler.models import DeleteMode, GroupId, Rule, TorrentSnapshot
from qbt_reconciler.utils import limit_batch, normalize_path

logger = get_logger(__name__)

DEFAULT_MAX_BATCH_HASHES = 50
DEFAULT_RUN_TIMEOUT = 25

SET_TAGS_UNSUPPORTED_MARKER = 'requires qBittorrent'


class BatchKind:
    UPLOAD_LIMIT = 'upload_limit'
    DOWNLOAD_LIMIT = 'download_limit'
    SHARE_LIMITS = 'share_limits'
    PAUSE = 'pause'
    RESUME = 'resume'
    RECHECK = 'recheck'
    REANNOUNCE = 'reannounce'
    TAGS = 'tags'
    CATEGORY = 'category'
    MOVE = 'move'
    DELETE = 'delete'
    EXTERNAL_PROGRAM = 'external_program'

    ORDER = (
        UPLOAD_LIMIT, DOWNLOAD_LIMIT, SHARE_LIMITS, PAUSE, RESUME, RECHECK, REANNOUNCE,
        TAGS, CATEGORY, MOVE, DELETE, EXTERNAL_PROGRAM,
    )


# Activity action recorded for each batch kind
BATCH_ACTIVITY = {
    BatchKind.UPLOAD_LIMIT: ActivityAction.SPEED_LIMITS_CHANGED,
    BatchKind.DOWNLOAD_LIMIT: ActivityAction.SPEED_LIMITS_CHANGED,
    BatchKind.SHARE_LIMITS: ActivityAction.SHARE_LIMITS_CHANGED,
    BatchKind.PAUSE: ActivityAction.PAUSED,
    BatchKind.RESUME: ActivityAction.RESUMED,
    BatchKind.RECHECK: ActivityAction.RECHECKED,
    BatchKind.REANNOUNCE: ActivityAction.REANNOUNCED,
    BatchKind.TAGS: ActivityAction.TAGS_CHANGED,
    BatchKind.CATEGORY: ActivityAction.CATEGORY_CHANGED,
    BatchKind.MOVE: ActivityAction.MOVED,
    BatchKind.DELETE: ActivityAction.DELETED_CONDITION,
    BatchKind.EXTERNAL_PROGRAM: ActivityAction.EXTERNAL_PROGRAM,
}


@dataclass
class Batch:
    """
    One client call

    value depends on kind: limit in KiB, (ratio, minutes), desired tag set,
    category name, save path, delete_files flag or (program id, rule id).
    """
    kind: str
    hashes: List[str]
    value: Any = None


@dataclass
class TagChange:
    to_add: List[str]
    to_remove: List[str]
    desired: Tuple[str, ...]


@dataclass
class PendingDeletion:
    hash: str
    torrent_name: str
    tracker_domain: str
    rule_id: Optional[int]
    rule_name: str
    reason: str
    details: Dict[str, Any]
    for_free_space: bool = False


@dataclass
class ExecutionPlan:
    batches: List[Batch] = field(default_factory=list)
    tag_changes: Dict[str, TagChange] = field(default_factory=dict)
    pending_deletes: Dict[str, PendingDeletion] = field(default_factory=dict)
    torrents: Dict[str, TorrentSnapshot] = field(default_factory=dict)
    rules: Dict[int, Rule] = field(default_factory=dict)
    domains: Dict[str, str] = field(default_factory=dict)

    @property
    def hashes(self) -> Set[str]:
        """Every torrent touched by at least one batch"""
        return {h for batch in self.batches for h in batch.hashes}

    def is_empty(self) -> bool:
        return not self.batches


@dataclass
class ExecutionResult:
    applied: int = 0
    failed: int = 0
    dry_run: int = 0
    aborted: int = 0
    deleted: List[str] = field(default_factory=list)
    freed_space: bool = False
    activity_ids: List[int] = field(default_factory=list)

    def to_summary(self) -> Dict[str, Any]:
        return {
            'applied': self.applied,
            'failed': self.failed,
            'dry_run': self.dry_run,
            'aborted': self.aborted,
            'deleted': len(self.deleted),
        }


class ActionExecutor:
    """
    Plans and executes batches against the client

    Args:
        api: QBittorrentAPI instance
        activity_store: Audit store receiving one record per batch (optional)
        run_store: In-memory store for per-torrent rows of a record (optional)
        program_runner: ProgramRunner for external program batches (optional)
        max_batch_hashes: Maximum hashes per client call
        run_timeout: Seconds after which the remaining batches are abandoned
        dry_run: Record what would happen without calling the client
    """

    def __init__(self, api, activity_store: Optional[ActivityStore] = None,
                 run_store: Optional[ActivityRunStore] = None, program_runner=None,
                 max_batch_hashes: int = DEFAULT_MAX_BATCH_HASHES, run_timeout: float = DEFAULT_RUN_TIMEOUT,
                 dry_run: bool = False):
        self.api = api
        self.activity_store = activity_store
        self.run_store = run_store
        self.program_runner = program_runner
        self.max_batch_hashes = max_batch_hashes
        self.run_timeout = run_timeout
        self.dry_run = dry_run

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(self, states: List[DesiredState], ctx: EvaluationContext,
             rules: Optional[Dict[int, Rule]] = None) -> ExecutionPlan:
        """
        Diff desired states against the snapshots and build ordered batches

        A torrent scheduled for deletion appears in no other batch.

        Args:
            states: Desired states of the run
            ctx: Evaluation context (snapshots, grouping, hardlinks)
            rules: Rules by id, for group expansion and program attribution

        Returns:
            ExecutionPlan
        """
        plan = ExecutionPlan(torrents=dict(ctx.torrents_by_hash), rules=dict(rules or {}))
        by_hash = {state.hash: state for state in states if state.hash in ctx.torrents_by_hash}
        for torrent_hash, state in by_hash.items():
            plan.domains[torrent_hash] = state.tracker_domain

        deletes = self._plan_deletes(plan, by_hash, ctx)
        skip = set(deletes)
        batches: Dict[str, Dict[Any, List[str]]] = {kind: defaultdict(list) for kind in BatchKind.ORDER}

        for torrent_hash in sorted(by_hash):
            if torrent_hash in skip:
                continue
            state = by_hash[torrent_hash]
            torrent = ctx.torrents_by_hash[torrent_hash]

            if state.upload_kib is not None and torrent.up_limit != state.upload_kib * 1024:
                batches[BatchKind.UPLOAD_LIMIT][state.upload_kib].append(torrent_hash)
            if state.download_kib is not None and torrent.dl_limit != state.download_kib * 1024:
                batches[BatchKind.DOWNLOAD_LIMIT][state.download_kib].append(torrent_hash)

            if state.ratio_limit is not None or state.seeding_minutes is not None:
                ratio = state.ratio_limit if state.ratio_limit is not None else torrent.ratio_limit
                minutes = state.seeding_minutes if state.seeding_minutes is not None else torrent.seeding_time_limit
                if ((state.ratio_limit is not None and torrent.ratio_limit != ratio)
                        or (state.seeding_minutes is not None and torrent.seeding_time_limit != minutes)):
                    batches[BatchKind.SHARE_LIMITS][(ratio, minutes)].append(torrent_hash)

            for kind, wanted in ((BatchKind.PAUSE, state.pause), (BatchKind.RESUME, state.resume),
                                 (BatchKind.RECHECK, state.recheck), (BatchKind.REANNOUNCE, state.reannounce)):
                if wanted:
                    batches[kind][None].append(torrent_hash)

            change = self._tag_change(state)
            if change is not None:
                plan.tag_changes[torrent_hash] = change
                batches[BatchKind.TAGS][change.desired].append(torrent_hash)

            if state.program_id:
                batches[BatchKind.EXTERNAL_PROGRAM][(state.program_id, state.program_rule_id)].append(torrent_hash)

        for torrent_hash, category in self._plan_expanded(
                by_hash, ctx, plan.rules, skip, 'category', 'category_include_cross_seeds',
                'category_group_id', 'category_rule_id',
                lambda t, value: t.category == value).items():
            batches[BatchKind.CATEGORY][category].append(torrent_hash)

        for torrent_hash, path in self._plan_expanded(
                by_hash, ctx, plan.rules, skip, 'move_path', 'move_include_cross_seeds',
                'move_group_id', 'move_rule_id',
                lambda t, value: normalize_path(t.save_path) == normalize_path(value)).items():
            batches[BatchKind.MOVE][path].append(torrent_hash)

        for torrent_hash, delete_files in sorted(deletes.items()):
            batches[BatchKind.DELETE][delete_files].append(torrent_hash)

        for kind in BatchKind.ORDER:
            for value in sorted(batches[kind], key=repr):
                hashes = sorted(batches[kind][value])
                for chunk in limit_batch(hashes, self.max_batch_hashes):
                    plan.batches.append(Batch(kind=kind, hashes=chunk, value=value))

        logger.debug(
            f"Planned {len(plan.batches)} batches for {len(plan.hashes)} torrents "
            f"({len(deletes)} deletions)"
        )
        return plan

    @staticmethod
    def _tag_change(state: DesiredState) -> Optional[TagChange]:
        to_add = sorted(t for t, a in state.tag_actions.items() if a == TAG_ADD and t not in state.current_tags)
        to_remove = sorted(t for t, a in state.tag_actions.items() if a == TAG_REMOVE and t in state.current_tags)
        if not to_add and not to_remove:
            return None
        desired = (set(state.current_tags) | set(to_add)) - set(to_remove)
        return TagChange(to_add=to_add, to_remove=to_remove, desired=tuple(sorted(desired)))

    def _siblings(self, ctx: EvaluationContext, rule: Optional[Rule], torrent_hash: str,
                  group_id: str = '') -> Optional[List[str]]:
        """
        Other members of a torrent's cross-seed group

        Returns:
            Sibling hashes, or None when the group is ambiguous and did not resolve
        """
        if rule is None:
            return []
        index = get_or_build_group_index(ctx, rule, group_id or GroupId.CROSS_SEED_CONTENT_PATH)
        if index is None or len(index.members_for(torrent_hash)) < 2:
            return []
        members = resolve_group_members(ctx, index, torrent_hash)
        if members is None:
            return None
        return [h for h in members if h != torrent_hash]

    def _plan_expanded(self, by_hash, ctx, rules, skip, value_attr, include_attr, group_attr, rule_attr,
                       is_current) -> Dict[str, Any]:
        """Targets of category or move intents, widened to cross-seeds when asked"""
        targets: Dict[str, Any] = {}
        for torrent_hash in sorted(by_hash):
            state = by_hash[torrent_hash]
            value = getattr(state, value_attr)
            if value is None or torrent_hash in skip:
                continue

            hashes = [torrent_hash]
            if getattr(state, include_attr):
                rule = rules.get(getattr(state, rule_attr))
                siblings = self._siblings(ctx, rule, torrent_hash, getattr(state, group_attr))
                hashes.extend(siblings or [])

            for h in hashes:
                if h in skip or h in targets and h != torrent_hash:
                    continue
                own = by_hash.get(h)
                if h != torrent_hash and own is not None and getattr(own, value_attr) is not None:
                    # The sibling's own intent wins
                    continue
                torrent = ctx.torrents_by_hash.get(h)
                if torrent is None or is_current(torrent, value):
                    continue
                targets[h] = value
        return targets

    def _plan_deletes(self, plan: ExecutionPlan, by_hash: Dict[str, DesiredState],
                      ctx: EvaluationContext) -> Dict[str, bool]:
        """
        Resolve delete intents to hash -> delete_files, including expansions

        A hash reached with both modes deletes its files.
        """
        deletes: Dict[str, bool] = {}

        for torrent_hash in sorted(by_hash):
            state = by_hash[torrent_hash]
            if not state.delete:
                continue
            torrent = ctx.torrents_by_hash[torrent_hash]
            rule = plan.rules.get(state.delete_rule_id)
            mode = state.delete_mode or DeleteMode.KEEP_FILES

            extra: List[Tuple[str, str]] = []
            if mode == DeleteMode.WITH_FILES:
                delete_files = True
            elif mode == DeleteMode.WITH_FILES_PRESERVE_CROSS_SEEDS:
                delete_files = not has_cross_seed(torrent, ctx.torrents)
                if not delete_files:
                    logger.info(f"Removing {torrent.name} (cross-seed detected - keeping files)")
            elif mode == DeleteMode.WITH_FILES_INCLUDE_CROSS_SEEDS:
                siblings = self._siblings(ctx, rule, torrent_hash, state.delete_group_id)
                if siblings is None:
                    logger.info(f"Removing {torrent.name} (unresolved cross-seed group - keeping files)")
                    delete_files = False
                else:
                    delete_files = True
                    extra.extend((h, f"cross-seed of {torrent_hash}") for h in siblings)
            else:
                delete_files = False

            if state.delete_include_hardlinks:
                extra.extend(
                    (h, f"hardlink copy of {torrent_hash}")
                    for h in ctx.hardlink_groups.get(torrent_hash, []) if h != torrent_hash
                )

            details = {'filesKept': not delete_files, 'deleteMode': mode}
            deletes[torrent_hash] = deletes.get(torrent_hash, False) or delete_files
            plan.pending_deletes[torrent_hash] = PendingDeletion(
                hash=torrent_hash,
                torrent_name=torrent.name,
                tracker_domain=state.tracker_domain,
                rule_id=state.delete_rule_id,
                rule_name=state.delete_rule_name,
                reason=state.delete_reason,
                details=details,
                for_free_space=state.delete_for_free_space,
            )

            for other_hash, reason in extra:
                other = ctx.torrents_by_hash.get(other_hash)
                if other is None:
                    continue
                deletes[other_hash] = deletes.get(other_hash, False) or delete_files
                if other_hash not in plan.pending_deletes:
                    plan.pending_deletes[other_hash] = PendingDeletion(
                        hash=other_hash,
                        torrent_name=other.name,
                        tracker_domain=ctx.primary_domain(other_hash),
                        rule_id=state.delete_rule_id,
                        rule_name=state.delete_rule_name,
                        reason=reason,
                        details=dict(details, expandedFrom=torrent_hash),
                        for_free_space=state.delete_for_free_space,
                    )

        for torrent_hash, delete_files in deletes.items():
            plan.pending_deletes[torrent_hash].details['filesKept'] = not delete_files
        return deletes

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, plan: ExecutionPlan, instance: str, dry_run: Optional[bool] = None) -> ExecutionResult:
        """
        Run the batches of a plan in order

        A failing batch is recorded and the next one runs; once the run
        deadline passes the remaining batches are abandoned.

        Args:
            plan: Output of plan()
            instance: Instance name for activity records
            dry_run: Override the executor's dry-run mode for this call

        Returns:
            ExecutionResult
        """
        dry_run = self.dry_run if dry_run is None else dry_run
        result = ExecutionResult()
        tags_applied: List[str] = []
        use_set_tags = True
        deadline = time.monotonic() + self.run_timeout

        for position, batch in enumerate(plan.batches):
            if time.monotonic() > deadline:
                result.aborted = len(plan.batches) - position
                logger.warning(
                    f"Run on '{instance}' exceeded {self.run_timeout}s, "
                    f"abandoning {result.aborted} remaining batches"
                )
                break

            if dry_run:
                self._record_dry_run(plan, batch, instance, result)
                if batch.kind == BatchKind.TAGS:
                    tags_applied.extend(batch.hashes)
                continue

            try:
                if batch.kind == BatchKind.TAGS:
                    use_set_tags = self._apply_tags(plan, batch, use_set_tags)
                else:
                    self._apply(plan, batch, instance)
            except TransientIOError as e:
                result.failed += 1
                logger.warning(f"Batch {batch.kind} on '{instance}' failed ({len(batch.hashes)} torrents): {e.reason}")
                self._record_failure(plan, batch, instance, e, result)
                continue

            result.applied += 1
            if batch.kind == BatchKind.TAGS:
                tags_applied.extend(batch.hashes)
            else:
                self._record_success(plan, batch, instance, result)

        if tags_applied:
            self._record_tag_summary(plan, tags_applied, instance,
                                     Outcome.DRY_RUN if dry_run else Outcome.SUCCESS, result)

        logger.info(
            f"Executed {len(plan.batches)} batches on '{instance}': {result.applied} applied, "
            f"{result.failed} failed, {result.dry_run} dry-run, {result.aborted} aborted"
        )
        return result

    def _call(self, kind: str, hashes: List[str], func, *args, **kwargs):
        try:
            return func(hashes, *args, **kwargs)
        except (qbittorrentapi.APIError, ReconcilerError) as e:
            raise TransientIOError(kind, len(hashes), str(e)) from e

    def _apply(self, plan: ExecutionPlan, batch: Batch, instance: str):
        kind, hashes, value = batch.kind, batch.hashes, batch.value

        if kind == BatchKind.UPLOAD_LIMIT:
            self._call(kind, hashes, self.api.set_upload_limit, value * 1024)
        elif kind == BatchKind.DOWNLOAD_LIMIT:
            self._call(kind, hashes, self.api.set_download_limit, value * 1024)
        elif kind == BatchKind.SHARE_LIMITS:
            ratio, minutes = value
            self._call(kind, hashes, self.api.set_share_limits,
                       ratio_limit=ratio, seeding_time_limit=minutes, inactive_seeding_time_limit=-1)
        elif kind == BatchKind.PAUSE:
            self._call(kind, hashes, self.api.stop_torrents)
        elif kind == BatchKind.RESUME:
            self._call(kind, hashes, self.api.start_torrents)
        elif kind == BatchKind.RECHECK:
            self._call(kind, hashes, self.api.recheck_torrents)
        elif kind == BatchKind.REANNOUNCE:
            self._call(kind, hashes, self.api.reannounce_torrents)
        elif kind == BatchKind.CATEGORY:
            self._call(kind, hashes, self.api.set_category, value)
        elif kind == BatchKind.MOVE:
            self._call(kind, hashes, self.api.set_location, value)
        elif kind == BatchKind.DELETE:
            self._call(kind, hashes, self.api.delete_torrents, value)
            if value:
                logger.info(f"Removed {len(hashes)} torrents with files on '{instance}'")
            else:
                logger.info(f"Removed {len(hashes)} torrents (files kept) on '{instance}'")
        elif kind == BatchKind.EXTERNAL_PROGRAM:
            self._run_programs(plan, batch, instance)
        else:
            raise ValueError(f"Unknown batch kind: {kind}")

    def _apply_tags(self, plan: ExecutionPlan, batch: Batch, use_set_tags: bool) -> bool:
        """
        Apply a tag batch, via setTags while the client supports it

        Returns:
            Whether setTags should still be used for later batches
        """
        if use_set_tags:
            try:
                self._call(BatchKind.TAGS, batch.hashes, self.api.set_tags, list(batch.value))
                return True
            except TransientIOError as e:
                if SET_TAGS_UNSUPPORTED_MARKER not in e.reason:
                    raise
                logger.debug("Falling back to add/remove tags (older qBittorrent)")

        adds: Dict[str, List[str]] = defaultdict(list)
        removes: Dict[str, List[str]] = defaultdict(list)
        for torrent_hash in batch.hashes:
            change = plan.tag_changes[torrent_hash]
            for tag in change.to_add:
                adds[tag].append(torrent_hash)
            for tag in change.to_remove:
                removes[tag].append(torrent_hash)

        for tag in sorted(adds):
            self._call(BatchKind.TAGS, adds[tag], self.api.add_tags, [tag])
        for tag in sorted(removes):
            self._call(BatchKind.TAGS, removes[tag], self.api.remove_tags, [tag])
        return False

    def _run_programs(self, plan: ExecutionPlan, batch: Batch, instance: str):
        program_id, rule_id = batch.value
        if self.program_runner is None:
            raise TransientIOError(BatchKind.EXTERNAL_PROGRAM, len(batch.hashes), "no program runner configured")
        rule = plan.rules.get(rule_id)
        for torrent_hash in batch.hashes:
            self.program_runner.submit(program_id, plan.torrents[torrent_hash], rule=rule, instance=instance)

    # ------------------------------------------------------------------
    # Activity recording
    # ------------------------------------------------------------------

    def _store(self, record: ActivityRecord, rows: Optional[List[Dict[str, Any]]],
               result: ExecutionResult) -> Optional[int]:
        if self.activity_store is None:
            return None
        try:
            activity_id = self.activity_store.create(record)
        except Exception as e:
            logger.warning(f"Failed to record activity {record.action} on '{record.instance}': {e}")
            return None
        result.activity_ids.append(activity_id)
        if rows and self.run_store is not None:
            self.run_store.put(activity_id, record.instance, rows)
        return activity_id

    @staticmethod
    def _rows(plan: ExecutionPlan, hashes: List[str]) -> List[Dict[str, Any]]:
        rows = []
        for torrent_hash in hashes:
            torrent = plan.torrents.get(torrent_hash)
            rows.append({
                'hash': torrent_hash,
                'name': torrent.name if torrent else '',
                'trackerDomain': plan.domains.get(torrent_hash, ''),
            })
        return rows

    @staticmethod
    def _batch_details(batch: Batch) -> Dict[str, Any]:
        details: Dict[str, Any] = {'count': len(batch.hashes)}
        if batch.kind in (BatchKind.UPLOAD_LIMIT, BatchKind.DOWNLOAD_LIMIT):
            details['limitKiB'] = batch.value
            details['type'] = 'upload' if batch.kind == BatchKind.UPLOAD_LIMIT else 'download'
        elif batch.kind == BatchKind.SHARE_LIMITS:
            details['ratio'], details['seedMinutes'] = batch.value
            details['type'] = 'share'
        elif batch.kind == BatchKind.TAGS:
            details['tags'] = list(batch.value)
        elif batch.kind == BatchKind.CATEGORY:
            details['category'] = batch.value
        elif batch.kind == BatchKind.MOVE:
            details['path'] = batch.value
        elif batch.kind == BatchKind.EXTERNAL_PROGRAM:
            details['programId'] = batch.value[0]
        return details

    def _record_success(self, plan: ExecutionPlan, batch: Batch, instance: str, result: ExecutionResult):
        if batch.kind == BatchKind.DELETE:
            for torrent_hash in batch.hashes:
                pending = plan.pending_deletes[torrent_hash]
                result.deleted.append(torrent_hash)
                if pending.for_free_space:
                    result.freed_space = True
                self._store(self._deletion_record(pending, instance, ActivityAction.DELETED_CONDITION,
                                                  Outcome.SUCCESS, pending.reason), None, result)
            return
        if batch.kind == BatchKind.EXTERNAL_PROGRAM:
            # The program runner records each finished program itself
            return

        self._store(ActivityRecord(
            instance=instance,
            action=BATCH_ACTIVITY[batch.kind],
            outcome=Outcome.SUCCESS,
            hash=batch.hashes[0] if len(batch.hashes) == 1 else '',
            details=self._batch_details(batch),
        ), self._rows(plan, batch.hashes), result)

    def _record_failure(self, plan: ExecutionPlan, batch: Batch, instance: str, error: TransientIOError,
                        result: ExecutionResult):
        if batch.kind == BatchKind.DELETE:
            for torrent_hash in batch.hashes:
                pending = plan.pending_deletes[torrent_hash]
                self._store(self._deletion_record(pending, instance, ActivityAction.DELETE_FAILED,
                                                  Outcome.FAILED, error.reason), None, result)
            return

        if batch.kind in (BatchKind.UPLOAD_LIMIT, BatchKind.DOWNLOAD_LIMIT, BatchKind.SHARE_LIMITS):
            action = ActivityAction.LIMIT_FAILED
            limit_type = self._batch_details(batch)['type']
            reason = f"{limit_type} limit failed: {error.reason}"
        else:
            action = BATCH_ACTIVITY[batch.kind]
            reason = error.reason

        self._store(ActivityRecord(
            instance=instance,
            action=action,
            outcome=Outcome.FAILED,
            hash=','.join(batch.hashes),
            reason=reason,
            details=self._batch_details(batch),
        ), self._rows(plan, batch.hashes), result)

    def _record_dry_run(self, plan: ExecutionPlan, batch: Batch, instance: str, result: ExecutionResult):
        result.dry_run += 1
        if batch.kind == BatchKind.DELETE:
            for torrent_hash in batch.hashes:
                pending = plan.pending_deletes[torrent_hash]
                logger.info(f"[DRY RUN] Would remove {pending.torrent_name} ({pending.reason})")
                self._store(self._deletion_record(pending, instance, ActivityAction.DELETED_CONDITION,
                                                  Outcome.DRY_RUN, pending.reason), None, result)
            return
        if batch.kind == BatchKind.TAGS:
            return

        logger.info(f"[DRY RUN] Would apply {batch.kind} to {len(batch.hashes)} torrents")
        self._store(ActivityRecord(
            instance=instance,
            action=BATCH_ACTIVITY[batch.kind],
            outcome=Outcome.DRY_RUN,
            hash=batch.hashes[0] if len(batch.hashes) == 1 else '',
            details=self._batch_details(batch),
        ), self._rows(plan, batch.hashes), result)

    def _record_tag_summary(self, plan: ExecutionPlan, hashes: List[str], instance: str, outcome: str,
                            result: ExecutionResult):
        added: Dict[str, int] = defaultdict(int)
        removed: Dict[str, int] = defaultdict(int)
        for torrent_hash in hashes:
            change = plan.tag_changes[torrent_hash]
            for tag in change.to_add:
                added[tag] += 1
            for tag in change.to_remove:
                removed[tag] += 1
        if not added and not removed:
            return

        if outcome == Outcome.DRY_RUN:
            logger.info(f"[DRY RUN] Would change tags on {len(hashes)} torrents")
        self._store(ActivityRecord(
            instance=instance,
            action=ActivityAction.TAGS_CHANGED,
            outcome=outcome,
            details={'added': dict(added), 'removed': dict(removed)},
        ), self._rows(plan, sorted(hashes)), result)

    @staticmethod
    def _deletion_record(pending: PendingDeletion, instance: str, action: str, outcome: str,
                         reason: str) -> ActivityRecord:
        return ActivityRecord(
            instance=instance,
            action=action,
            outcome=outcome,
            hash=pending.hash,
            torrent_name=pending.torrent_name,
            tracker_domain=pending.tracker_domain,
            rule_id=pending.rule_id,
            rule_name=pending.rule_name,
            reason=reason,
            details=dict(pending.details),
        )
