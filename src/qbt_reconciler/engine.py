"""
Reconciliation engine

Each run of an instance loads the enabled rules and a torrent snapshot,
builds the evaluation context, folds every selector-matched rule into a
desired state per torrent, and hands the result to the ActionExecutor.
Bookkeeping (skip window, rule cadence, free-space cooldown) lives here and
is shared across runs.
"""

import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

import qbittorrentapi

from qbt_reconciler import preview
from qbt_reconciler.activity import ActivityAction, ActivityRecord, ActivityRunStore, ActivityStore, Outcome
from qbt_reconciler.activity_backends import create_activity_store
from qbt_reconciler.api import QBittorrentAPI
from qbt_reconciler.config import Config, EngineSettings, InstanceConfig
from qbt_reconciler.context import (
    EvaluationContext, build_basename_group_index, build_category_index, build_content_group_index,
    build_cross_seed_index,
)
from qbt_reconciler.desired_state import DesiredState, GroupGate, RuleReducer
from qbt_reconciler.errors import FatalRunError, ReconcilerError
from qbt_reconciler.evaluator import collect_group_ids, condition_uses_field
from qbt_reconciler.executor import ActionExecutor, ExecutionResult
from qbt_reconciler.free_space import collect_free_space_readings
from qbt_reconciler.grouping import GroupKey, activate_rule_grouping, find_group_definition
from qbt_reconciler.hardlinks import HardlinkIndexCache
from qbt_reconciler.logging import get_logger
from qbt_reconciler.models import Field, Rule, TorrentSnapshot
from qbt_reconciler.notifier import WebhookNotifier
from qbt_reconciler.programs import ProgramRunner
from qbt_reconciler.rules import RuleStore
from qbt_reconciler.trackers import build_health_sets, collect_tracker_domains, matches_tracker

logger = get_logger(__name__)

PRUNE_INTERVAL = 3600
LAST_PROCESSED_RETENTION = 10 * 60
RULE_RUN_RETENTION = 24 * 3600
COOLDOWN_RETENTION = 24 * 3600

HEALTH_FIELDS = (Field.IS_UNREGISTERED, Field.UNREGISTERED_SAME_CONTENT_COUNT, Field.REGISTERED_SAME_CONTENT_COUNT)


@dataclass
class RuleStats:
    """Counters of one run"""
    instance: str = ''
    total_torrents: int = 0
    processed: int = 0
    skipped: int = 0
    rules_matched: int = 0
    actions_executed: int = 0
    actions_failed: int = 0
    actions_dry_run: int = 0
    batches_aborted: int = 0
    deleted: int = 0
    errors: int = 0
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        # Notification summary keys
        data['applied'] = self.actions_executed
        data['failed'] = self.actions_failed
        data['dry_run'] = self.actions_dry_run
        return data


def rule_needs_tracker_health(rule: Rule) -> bool:
    """Check whether a rule reads tracker health

    STATE counts too: its unregistered and tracker_down buckets come from health.
    """
    return any(
        condition_uses_field(node, f)
        for _, node in rule.condition_trees()
        for f in HEALTH_FIELDS + (Field.STATE,)
    )


def rule_needs_hardlinks(rule: Rule) -> bool:
    """Check whether a rule reads hardlink scopes, signatures or hardlink groups"""
    trees = rule.condition_trees()
    if any(condition_uses_field(node, Field.HARDLINK_SCOPE) for _, node in trees):
        return True

    delete = rule.actions.delete
    if delete is not None and delete.enabled and delete.include_hardlinks:
        return True

    group_ids, _ = collect_group_ids([node for _, node in trees])
    group_ids = set(group_ids)
    for _, action in rule.actions.enabled():
        if getattr(action, 'group_id', ''):
            group_ids.add(action.group_id)
    if rule.grouping is not None and rule.grouping.default_group_id:
        group_ids.add(rule.grouping.default_group_id)

    for group_id in group_ids:
        definition = find_group_definition(rule, group_id)
        if definition is not None and GroupKey.HARDLINK_SIGNATURE in definition.keys:
            return True
    return False


class RulesEngine:
    """
    Drives reconciliation runs for every configured instance

    Args:
        config: Loaded configuration
        clients: Instance name -> QBittorrentAPI
        rule_store: Validated rules (defaults to the rules in config)
        activity_store: Audit store (optional)
        run_store: Per-torrent rows of audit records (optional)
        notifier: Webhook notifier (optional)
        program_runner: External program runner (optional)
        dry_run: Override the configured dry-run mode
    """

    def __init__(self, config: Config, clients: Dict[str, QBittorrentAPI],
                 rule_store: Optional[RuleStore] = None,
                 activity_store: Optional[ActivityStore] = None,
                 run_store: Optional[ActivityRunStore] = None,
                 notifier: Optional[WebhookNotifier] = None,
                 program_runner: Optional[ProgramRunner] = None,
                 dry_run: Optional[bool] = None):
        self.config = config
        self.clients = clients
        self.settings: EngineSettings = config.get_engine_settings()
        self.dry_run = self.settings.dry_run if dry_run is None else dry_run
        self.rule_store = rule_store or RuleStore.from_config(config)
        self.activity_store = activity_store
        self.run_store = run_store if run_store is not None else ActivityRunStore()
        self.notifier = notifier or WebhookNotifier()
        self.program_runner = program_runner
        self.display_names = config.get_tracker_display_names()
        self.instances: Dict[str, InstanceConfig] = {i.name: i for i in config.get_instances()}
        self.hardlink_cache = HardlinkIndexCache()

        # Bookkeeping, guarded by _lock
        self._lock = threading.Lock()
        self._instance_locks: Dict[str, threading.Lock] = {}
        self.last_processed: Dict[str, Dict[str, float]] = {}
        self.last_rule_run: Dict[Tuple[str, int], float] = {}
        self.free_space_cooldown: Dict[str, float] = {}
        self._last_prune = 0.0

    @classmethod
    def from_config(cls, config: Config, dry_run: Optional[bool] = None) -> 'RulesEngine':
        """Build an engine with clients, audit store, notifier and program runner from config"""
        # A hung request must not outlive the run budget
        timeout = config.get_engine_settings().run_timeout
        clients = {
            instance.name: QBittorrentAPI(
                instance.host, instance.username, instance.password,
                connect_now=False, request_timeout=timeout,
            )
            for instance in config.get_instances()
            if instance.enabled
        }
        activity_store = create_activity_store(**config.get_activity_config())
        programs = config.get_program_config()
        engine = cls(
            config,
            clients,
            activity_store=activity_store,
            notifier=WebhookNotifier.from_config(config),
            dry_run=dry_run,
        )
        engine.program_runner = ProgramRunner(
            programs['definitions'], max_workers=programs['max_workers'], recorder=engine.record_activity
        )
        return engine

    def executor_for(self, api) -> ActionExecutor:
        """Executor bound to one instance client"""
        return ActionExecutor(
            api=api,
            activity_store=self.activity_store,
            run_store=self.run_store,
            program_runner=self.program_runner,
            max_batch_hashes=self.settings.max_batch_hashes,
            run_timeout=self.settings.run_timeout,
            dry_run=self.dry_run,
        )

    def _instance_lock(self, instance: str) -> threading.Lock:
        with self._lock:
            return self._instance_locks.setdefault(instance, threading.Lock())

    def client(self, instance: str) -> QBittorrentAPI:
        client = self.clients.get(instance)
        if client is None:
            raise FatalRunError(instance, "unknown or disabled instance")
        return client

    def has_local_access(self, instance: str) -> bool:
        settings = self.instances.get(instance)
        return bool(settings and settings.local_filesystem_access)

    def record_activity(self, record: ActivityRecord) -> Optional[int]:
        """Store an audit record; failures are logged, never raised"""
        if self.activity_store is None:
            return None
        try:
            return self.activity_store.create(record)
        except Exception as e:
            logger.warning(f"Failed to record activity {record.action} on '{record.instance}': {e}")
            return None

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def run(self, force: bool = False) -> List[RuleStats]:
        """
        Run every active instance once, sequentially

        A failing instance is logged and does not stop the others.
        """
        results = []
        for instance in self.clients:
            try:
                results.append(self.run_instance(instance, force=force))
            except ReconcilerError as e:
                logger.error(f"Run on '{instance}' failed:\n{e}")
        self.prune()
        return results

    def run_instance(self, instance: str, force: bool = False, dry_run: bool = False,
                     rules: Optional[List[Rule]] = None) -> RuleStats:
        """
        Run one instance

        Args:
            instance: Instance name
            force: Ignore the skip window and rule cadence
            dry_run: Record what would happen instead of acting
            rules: Run only these rules instead of the enabled rules of the instance

        Returns:
            RuleStats of the run

        Raises:
            FatalRunError: If torrents or free space cannot be read
        """
        with self._instance_lock(instance):
            stats = RuleStats(instance=instance)
            started = time.time()
            try:
                self._run_locked(instance, stats, force, dry_run or self.dry_run, rules)
            except FatalRunError as e:
                stats.errors += 1
                logger.error(f"Run on '{instance}' aborted: {e.reason}")
                self.notifier.notify_failure(instance, e)
                raise
            finally:
                stats.duration = round(time.time() - started, 3)
                logger.info(
                    f"Summary for '{instance}': {stats.total_torrents} torrents, {stats.processed} processed, "
                    f"{stats.skipped} skipped, {stats.rules_matched} rule matches, "
                    f"{stats.actions_executed} batches applied, {stats.actions_failed} failed, "
                    f"{stats.actions_dry_run} dry-run, {stats.deleted} deleted ({stats.duration}s)"
                )
            return stats

    def load_torrents(self, instance: str, api) -> List[TorrentSnapshot]:
        try:
            raw = api.get_torrents()
        except (qbittorrentapi.APIError, ReconcilerError) as e:
            raise FatalRunError(instance, f"cannot list torrents: {e}") from e
        torrents = [TorrentSnapshot.from_dict(t) for t in raw]
        return sorted(torrents, key=lambda t: (t.added_on, t.hash))

    def load_tracker_health(self, instance: str, api, hashes: List[str]
                            ) -> Tuple[Optional[Dict], Optional[Set[str]], Optional[Set[str]]]:
        """
        Read trackers and derive the unregistered and tracker-down sets

        Returns:
            (trackers by hash, unregistered, tracker_down), all None when unavailable
        """
        try:
            trackers_by_hash = api.get_torrent_trackers(hashes)
        except (qbittorrentapi.APIError, ReconcilerError) as e:
            logger.warning(f"Tracker health unavailable on '{instance}': {e}")
            return None, None, None
        unregistered, tracker_down = build_health_sets(trackers_by_hash)
        return trackers_by_hash, unregistered, tracker_down

    def build_context(self, instance: str, api, torrents: List[TorrentSnapshot],
                      rules: List[Rule]) -> EvaluationContext:
        """
        Build the evaluation context of a run

        Tracker health is read only when a rule needs it.

        Raises:
            FatalRunError: If a free-space reading fails
        """
        local_access = self.has_local_access(instance)
        ctx = EvaluationContext(
            instance=instance,
            has_local_access=local_access,
            torrents=torrents,
            torrents_by_hash={t.hash: t for t in torrents},
            display_names=self.display_names,
            files_fetcher=api.get_files_batch,
        )

        trackers_by_hash: Dict[str, List[Dict]] = {}
        if any(rule_needs_tracker_health(rule) for rule in rules):
            loaded, ctx.unregistered, ctx.tracker_down = self.load_tracker_health(
                instance, api, [t.hash for t in torrents]
            )
            trackers_by_hash = loaded or {}

        for torrent in torrents:
            urls = [t.get('url', '') for t in trackers_by_hash.get(torrent.hash, [])] or list(torrent.trackers)
            ctx.tracker_domains[torrent.hash] = collect_tracker_domains(torrent.tracker, urls)

        ctx.category_index, ctx.category_names = build_category_index(torrents)
        ctx.content_groups = build_content_group_index(torrents)
        ctx.basename_groups = build_basename_group_index(torrents)

        if any(rule_needs_hardlinks(rule) for rule in rules):
            if not local_access:
                logger.debug(f"Hardlink data needed on '{instance}' but local filesystem access is off")
            else:
                index = self.hardlink_cache.get(instance, torrents, api.get_files_batch)
                if index is not None:
                    ctx.hardlink_scopes = dict(index.scope_by_hash)
                    ctx.hardlink_signatures = dict(index.signature_by_hash)
                    ctx.hardlink_groups = index.groups_by_hash()

        ctx.free_space_readings = collect_free_space_readings(api, rules, instance, local_access)
        return ctx

    def selector(self, ctx: EvaluationContext):
        """Selector predicate (rule, torrent) -> bool for a context"""
        def matches(rule: Rule, torrent: TorrentSnapshot) -> bool:
            return rule.applies_to(ctx.instance) and matches_tracker(
                rule.tracker_pattern, ctx.tracker_domains.get(torrent.hash, [])
            )
        return matches

    def _due_rules(self, instance: str, rules: List[Rule], now: float, force: bool) -> List[Rule]:
        if force:
            return list(rules)
        due = []
        with self._lock:
            for rule in rules:
                last = self.last_rule_run.get((instance, rule.id))
                if rule.interval_seconds and last is not None and now - last < rule.interval_seconds:
                    logger.debug(f"Rule '{rule.name}' not due on '{instance}'")
                    continue
                due.append(rule)
        return due

    def in_cooldown(self, instance: str, now: float) -> bool:
        with self._lock:
            started = self.free_space_cooldown.get(instance)
        return started is not None and now - started < self.settings.free_space_cooldown

    def fold(self, ctx: EvaluationContext, rules: List[Rule], torrents: List[TorrentSnapshot],
             free_space_deletes_blocked: bool = False) -> Tuple[Dict[str, DesiredState], Dict[int, int]]:
        """
        Fold rules into desired states, rule by rule in priority order

        Returns:
            (hash -> desired state, rule id -> number of torrents it contributed to)
        """
        selector = self.selector(ctx)
        reducer = RuleReducer(
            ctx,
            cross_seed_index=build_cross_seed_index(ctx.torrents),
            gate=GroupGate(ctx, selector),
            free_space_deletes_blocked=free_space_deletes_blocked,
        )
        states = {t.hash: DesiredState.for_torrent(t, ctx) for t in torrents}
        matched: Dict[int, int] = {}

        for rule in rules:
            activate_rule_grouping(ctx, rule)
            for torrent in torrents:
                if not selector(rule, torrent):
                    continue
                before = states[torrent.hash]
                after = reducer.reduce(before, rule, torrent)
                states[torrent.hash] = after
                if rule.id in after.contributing_rules and rule.id not in before.contributing_rules:
                    matched[rule.id] = matched.get(rule.id, 0) + 1
        return states, matched

    def _run_locked(self, instance: str, stats: RuleStats, force: bool, dry_run: bool,
                    only_rules: Optional[List[Rule]]):
        rules = list(only_rules) if only_rules is not None else self.rule_store.list_enabled(instance)
        if not rules:
            logger.debug(f"No rules for '{instance}'")
            return

        api = self.client(instance)
        torrents = self.load_torrents(instance, api)
        stats.total_torrents = len(torrents)
        if not torrents:
            if dry_run and force and only_rules is not None:
                self._record_no_match(instance, only_rules)
            return

        now = time.time()
        ctx = self.build_context(instance, api, torrents, rules)
        ctx.now_unix = now

        # Forced and dry runs neither honour nor set the skip window
        use_skip_window = not force and not dry_run
        candidates = []
        with self._lock:
            processed = self.last_processed.setdefault(instance, {})
            for torrent in torrents:
                last = processed.get(torrent.hash)
                if use_skip_window and last is not None and now - last < self.settings.skip_within:
                    stats.skipped += 1
                    continue
                candidates.append(torrent)
        stats.processed = len(candidates)

        due = self._due_rules(instance, rules, now, force)
        live_rules = [r for r in due if not r.dry_run]
        dry_rules = [r for r in due if r.dry_run]
        # Dry runs honour the cooldown too
        blocked = self.in_cooldown(instance, now)
        if blocked:
            logger.debug(f"Free-space deletes on '{instance}' are cooling down")

        executor = self.executor_for(api)
        rules_by_id = {r.id: r for r in rules}

        for group_rules, group_dry_run in ((live_rules, dry_run), (dry_rules, True)):
            if not group_rules:
                continue
            states, matched = self.fold(ctx, group_rules, candidates, blocked)
            stats.rules_matched += sum(matched.values())

            plan = executor.plan([s for s in states.values() if s.has_actions()], ctx, rules_by_id)
            if not plan.is_empty():
                result = executor.execute(plan, instance, dry_run=group_dry_run)
                self._apply_result(stats, result)
                if result.freed_space and not group_dry_run:
                    with self._lock:
                        self.free_space_cooldown[instance] = time.time()
                if result.deleted:
                    self.hardlink_cache.invalidate(instance)

            # Forced dry runs leave the cadence of live rules alone
            if not (force and group_dry_run):
                with self._lock:
                    for rule_id in matched:
                        self.last_rule_run[(instance, rule_id)] = now

        if use_skip_window:
            selector = self.selector(ctx)
            with self._lock:
                processed = self.last_processed.setdefault(instance, {})
                for torrent in candidates:
                    if any(selector(rule, torrent) for rule in due):
                        processed[torrent.hash] = now

        if dry_run and force and only_rules is not None and stats.rules_matched == 0:
            self._record_no_match(instance, only_rules)

        self.notifier.notify_run(stats.to_dict())

    def _record_no_match(self, instance: str, rules: List[Rule]):
        for rule in rules:
            self.record_activity(ActivityRecord(
                instance=instance,
                action=ActivityAction.DRY_RUN_NO_MATCH,
                outcome=Outcome.DRY_RUN,
                rule_id=rule.id,
                rule_name=rule.name,
                reason='no torrents matched',
                details={'affected': 0},
            ))
        logger.info(f"[DRY RUN] No torrents matched on '{instance}'")

    @staticmethod
    def _apply_result(stats: RuleStats, result: ExecutionResult):
        stats.actions_executed += result.applied
        stats.actions_failed += result.failed
        stats.actions_dry_run += result.dry_run
        stats.batches_aborted += result.aborted
        stats.deleted += len(result.deleted)

    # ------------------------------------------------------------------
    # Preview and dry run
    # ------------------------------------------------------------------

    def preview_delete_rule(self, instance: str, rule: Rule, limit: int = preview.DEFAULT_PREVIEW_LIMIT,
                            offset: int = 0, view: str = preview.VIEW_NEEDED) -> preview.PreviewResult:
        """See preview.preview_delete_rule"""
        return preview.preview_delete_rule(self, instance, rule, limit=limit, offset=offset, view=view)

    def dry_run_rule(self, instance: str, rule: Rule, force: bool = True) -> RuleStats:
        """See preview.dry_run_rule"""
        return preview.dry_run_rule(self, instance, rule, force=force)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def prune(self, force: bool = False) -> bool:
        """
        Drop stale bookkeeping and expired audit data, at most once an hour

        Returns:
            True if pruning ran
        """
        now = time.time()
        with self._lock:
            if not force and now - self._last_prune < PRUNE_INTERVAL:
                return False
            self._last_prune = now

            for processed in self.last_processed.values():
                for torrent_hash in [h for h, ts in processed.items() if now - ts > LAST_PROCESSED_RETENTION]:
                    del processed[torrent_hash]
            for key in [k for k, ts in self.last_rule_run.items() if now - ts > RULE_RUN_RETENTION]:
                del self.last_rule_run[key]
            for instance in [i for i, ts in self.free_space_cooldown.items() if now - ts > COOLDOWN_RETENTION]:
                del self.free_space_cooldown[instance]

        if self.activity_store is not None:
            try:
                self.activity_store.prune(self.settings.activity_retention_days)
            except Exception as e:
                logger.warning(f"Failed to prune activity store: {e}")
        self.run_store.prune()
        logger.debug("Pruned engine bookkeeping")
        return True

    def close(self):
        if self.program_runner is not None:
            self.program_runner.shutdown(wait=False)
        if self.activity_store is not None:
            self.activity_store.close()
