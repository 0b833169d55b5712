"""
Tests for executor.py - batch planning and execution

Test coverage for:
- Batch ordering, diffing and chunking
- Delete modes and cross-seed / hardlink expansion
- Category and move expansion
- Per-batch failure isolation and activity records
- setTags fallback, dry-run and the run deadline
"""

import pytest
import qbittorrentapi

from qbt_reconciler.activity import ActivityAction, ActivityRunStore, Outcome
from qbt_reconciler.desired_state import TAG_ADD, TAG_REMOVE, DesiredState
from qbt_reconciler.executor import ActionExecutor, BatchKind
from qbt_reconciler.models import DeleteMode


def desired(torrent, **fields):
    state = DesiredState(hash=torrent.hash, name=torrent.name, tracker_domain='tracker.example.org',
                         current_tags=set(t.strip() for t in torrent.tags.split(',') if t.strip()))
    for key, value in fields.items():
        setattr(state, key, value)
    return state


@pytest.fixture
def executor(mock_api, activity_store):
    return ActionExecutor(mock_api, activity_store=activity_store, run_store=ActivityRunStore())


def kinds(plan):
    return [batch.kind for batch in plan.batches]


# ============================================================================
# Planning
# ============================================================================

class TestPlanning:
    """Test diffing desired states into batches"""

    def test_batches_follow_fixed_order(self, snapshot, make_context, executor):
        a = snapshot('a')
        ctx = make_context([a])
        state = desired(a, upload_kib=100, download_kib=50, pause=True, reannounce=True,
                        tag_actions={'x': TAG_ADD}, category='done', move_path='/archive',
                        program_id='notify', program_rule_id=1)

        plan = executor.plan([state], ctx)

        assert kinds(plan) == [
            BatchKind.UPLOAD_LIMIT, BatchKind.DOWNLOAD_LIMIT, BatchKind.PAUSE, BatchKind.REANNOUNCE,
            BatchKind.TAGS, BatchKind.CATEGORY, BatchKind.MOVE, BatchKind.EXTERNAL_PROGRAM,
        ]

    def test_current_values_are_skipped(self, snapshot, make_context, executor):
        """Nothing is planned for values the torrent already has"""
        a = snapshot('a', up_limit=100 * 1024, category='done', save_path='/Archive/', tags='x')
        ctx = make_context([a])
        state = desired(a, upload_kib=100, category='done', move_path='/archive', tag_actions={'x': TAG_ADD})

        assert executor.plan([state], ctx).is_empty()

    def test_share_limits_keep_unset_half(self, snapshot, make_context, executor):
        a = snapshot('a', ratio_limit=-2, seeding_time_limit=600)
        ctx = make_context([a])

        plan = executor.plan([desired(a, ratio_limit=2.0)], ctx)

        assert plan.batches[0].kind == BatchKind.SHARE_LIMITS
        assert plan.batches[0].value == (2.0, 600)

    def test_same_value_grouped_and_chunked(self, snapshot, make_context, mock_api):
        torrents = [snapshot(h) for h in 'abcde']
        ctx = make_context(torrents)
        executor = ActionExecutor(mock_api, max_batch_hashes=2)

        plan = executor.plan([desired(t, pause=True) for t in torrents], ctx)

        assert [b.hashes for b in plan.batches] == [['a', 'b'], ['c', 'd'], ['e']]

    def test_different_values_split(self, snapshot, make_context, executor):
        a, b = snapshot('a'), snapshot('b')
        ctx = make_context([a, b])

        plan = executor.plan([desired(a, category='tv'), desired(b, category='movies')], ctx)

        assert sorted((batch.value, tuple(batch.hashes)) for batch in plan.batches) == [
            ('movies', ('b',)), ('tv', ('a',)),
        ]

    def test_tag_change_desired_set(self, snapshot, make_context, executor):
        a = snapshot('a', tags='keep, old')
        ctx = make_context([a])

        plan = executor.plan([desired(a, tag_actions={'new': TAG_ADD, 'old': TAG_REMOVE, 'gone': TAG_REMOVE})], ctx)

        change = plan.tag_changes['a']
        assert change.to_add == ['new']
        assert change.to_remove == ['old']
        assert change.desired == ('keep', 'new')
        assert plan.batches[0].value == ('keep', 'new')

    def test_deleted_torrent_appears_only_in_delete(self, snapshot, make_context, executor):
        a = snapshot('a')
        ctx = make_context([a])
        state = desired(a, tag_actions={'x': TAG_ADD}, pause=True, delete=True, delete_mode=DeleteMode.WITH_FILES)

        plan = executor.plan([state], ctx)

        assert kinds(plan) == [BatchKind.DELETE]
        assert plan.batches[0].value is True

    def test_unknown_torrent_ignored(self, snapshot, make_context, executor):
        ctx = make_context([snapshot('a')])

        assert executor.plan([desired(snapshot('zzz'), pause=True)], ctx).is_empty()


# ============================================================================
# Delete expansion
# ============================================================================

class TestDeletePlanning:
    """Test delete modes and expansions"""

    def test_keep_files(self, snapshot, make_context, executor):
        a = snapshot('a')
        plan = executor.plan([desired(a, delete=True, delete_mode=DeleteMode.KEEP_FILES)], make_context([a]))

        assert plan.batches[0].value is False
        assert plan.pending_deletes['a'].details['filesKept'] is True

    def test_preserve_cross_seeds(self, snapshot, make_context, executor):
        """Files are kept while another torrent uses the same content"""
        a = snapshot('a', name='Shared')
        b = snapshot('b', name='Shared')
        solo = snapshot('c', name='Solo')
        ctx = make_context([a, b, solo])
        mode = DeleteMode.WITH_FILES_PRESERVE_CROSS_SEEDS

        plan = executor.plan([desired(a, delete=True, delete_mode=mode),
                              desired(solo, delete=True, delete_mode=mode)], ctx)

        assert {(b.value, tuple(b.hashes)) for b in plan.batches} == {(False, ('a',)), (True, ('c',))}

    def test_include_cross_seeds_expands(self, snapshot, make_context, make_rule, executor):
        """The whole cross-seed group is deleted with files"""
        rule = make_rule({'id': 3, 'name': 'unregistered', 'actions': {'delete': {
            'mode': DeleteMode.WITH_FILES_INCLUDE_CROSS_SEEDS,
        }}})
        a = snapshot('a', name='Shared')
        b = snapshot('b', name='Shared')
        ctx = make_context([a, b])
        state = desired(a, delete=True, delete_mode=DeleteMode.WITH_FILES_INCLUDE_CROSS_SEEDS,
                        delete_rule_id=3, delete_rule_name='unregistered', delete_reason='condition matched')

        plan = executor.plan([state], ctx, {3: rule})

        assert plan.batches[0].hashes == ['a', 'b']
        assert plan.batches[0].value is True
        assert plan.pending_deletes['b'].reason == 'cross-seed of a'
        assert plan.pending_deletes['b'].details['expandedFrom'] == 'a'
        assert plan.pending_deletes['b'].rule_id == 3

    def test_include_cross_seeds_unresolved_keeps_files(self, snapshot, make_context, make_rule, executor):
        """An ambiguous group that cannot be verified downgrades to keeping files"""
        rule = make_rule({'id': 3, 'name': 'r', 'actions': {'delete': {'mode': DeleteMode.WITH_FILES_INCLUDE_CROSS_SEEDS}}})
        a = snapshot('a', save_path='/downloads', content_path='/downloads')
        b = snapshot('b', save_path='/downloads', content_path='/downloads')
        ctx = make_context([a, b])
        state = desired(a, delete=True, delete_mode=DeleteMode.WITH_FILES_INCLUDE_CROSS_SEEDS, delete_rule_id=3)

        plan = executor.plan([state], ctx, {3: rule})

        assert [(batch.value, batch.hashes) for batch in plan.batches] == [(False, ['a'])]

    def test_include_hardlinks(self, snapshot, make_context, executor):
        a = snapshot('a')
        c = snapshot('c', save_path='/seeds')
        ctx = make_context([a, c], hardlink_groups={'a': ['a', 'c'], 'c': ['a', 'c']})

        plan = executor.plan([desired(a, delete=True, delete_mode=DeleteMode.WITH_FILES,
                                      delete_include_hardlinks=True)], ctx)

        assert plan.batches[0].hashes == ['a', 'c']
        assert plan.pending_deletes['c'].reason == 'hardlink copy of a'

    def test_files_win_when_reached_twice(self, snapshot, make_context, executor):
        """A hash reached with and without files deletes its files"""
        a = snapshot('a')
        c = snapshot('c', save_path='/seeds')
        ctx = make_context([a, c], hardlink_groups={'a': ['a', 'c']})

        plan = executor.plan([
            desired(a, delete=True, delete_mode=DeleteMode.KEEP_FILES, delete_include_hardlinks=True),
            desired(c, delete=True, delete_mode=DeleteMode.WITH_FILES),
        ], ctx)

        assert {(b.value, tuple(b.hashes)) for b in plan.batches} == {(False, ('a',)), (True, ('c',))}
        assert plan.pending_deletes['c'].details['filesKept'] is False


# ============================================================================
# Category and move expansion
# ============================================================================

class TestCategoryExpansion:
    def test_include_cross_seeds(self, snapshot, make_context, make_rule, executor):
        rule = make_rule({'id': 2, 'name': 'c', 'actions': {'category': {'category': 'done', 'include_cross_seeds': True}}})
        a = snapshot('a', name='Shared')
        b = snapshot('b', name='Shared')
        ctx = make_context([a, b])

        plan = executor.plan([desired(a, category='done', category_include_cross_seeds=True, category_rule_id=2)],
                             ctx, {2: rule})

        assert plan.batches[0].hashes == ['a', 'b']

    def test_sibling_own_intent_wins(self, snapshot, make_context, make_rule, executor):
        rule = make_rule({'id': 2, 'name': 'c', 'actions': {'category': {'category': 'done', 'include_cross_seeds': True}}})
        a = snapshot('a', name='Shared')
        b = snapshot('b', name='Shared')
        ctx = make_context([a, b])

        plan = executor.plan([
            desired(a, category='done', category_include_cross_seeds=True, category_rule_id=2),
            desired(b, category='keep'),
        ], ctx, {2: rule})

        assert sorted((batch.value, tuple(batch.hashes)) for batch in plan.batches) == [
            ('done', ('a',)), ('keep', ('b',)),
        ]

    def test_deleted_sibling_not_moved(self, snapshot, make_context, make_rule, executor):
        rule = make_rule({'id': 2, 'name': 'm', 'actions': {'move': {'path': '/archive', 'include_cross_seeds': True}}})
        a = snapshot('a', name='Shared')
        b = snapshot('b', name='Shared')
        ctx = make_context([a, b])

        plan = executor.plan([
            desired(a, move_path='/archive', move_include_cross_seeds=True, move_rule_id=2),
            desired(b, delete=True, delete_mode=DeleteMode.KEEP_FILES),
        ], ctx, {2: rule})

        assert [(batch.kind, batch.hashes) for batch in plan.batches] == [
            (BatchKind.MOVE, ['a']), (BatchKind.DELETE, ['b']),
        ]


# ============================================================================
# Execution
# ============================================================================

class TestExecution:
    """Test live execution against the client"""

    def test_applies_batches(self, snapshot, make_context, executor, mock_api, activity_store):
        a = snapshot('a')
        ctx = make_context([a])
        plan = executor.plan([desired(a, upload_kib=100, category='done')], ctx)

        result = executor.execute(plan, 'default')

        assert result.applied == 2
        assert mock_api.calls['set_upload_limit'] == [{'hashes': ['a'], 'limit': 102400}]
        assert mock_api.calls['set_category'] == [{'hashes': ['a'], 'category': 'done'}]
        assert activity_store.actions(Outcome.SUCCESS) == [
            ActivityAction.SPEED_LIMITS_CHANGED, ActivityAction.CATEGORY_CHANGED,
        ]
        assert activity_store.records[0].details == {'count': 1, 'limitKiB': 100, 'type': 'upload'}

    def test_rows_kept_in_run_store(self, snapshot, make_context, executor):
        torrents = [snapshot(h) for h in 'ab']
        ctx = make_context(torrents)
        plan = executor.plan([desired(t, recheck=True) for t in torrents], ctx)

        result = executor.execute(plan, 'default')

        total, rows = executor.run_store.get('default', result.activity_ids[0])
        assert total == 2
        assert rows[0] == {'hash': 'a', 'name': 'Torrent.a.1080p', 'trackerDomain': 'tracker.example.org'}

    def test_failed_batch_does_not_stop_the_run(self, snapshot, make_context, executor, mock_api, activity_store):
        a = snapshot('a')
        ctx = make_context([a])
        mock_api.fail['stop_torrents'] = qbittorrentapi.APIConnectionError('refused')
        plan = executor.plan([desired(a, pause=True, reannounce=True)], ctx)

        result = executor.execute(plan, 'default')

        assert result.failed == 1
        assert result.applied == 1
        assert mock_api.calls['reannounce_torrents'] == [{'hashes': ['a']}]
        failed = [r for r in activity_store.records if r.outcome == Outcome.FAILED]
        assert failed[0].action == ActivityAction.PAUSED
        assert 'refused' in failed[0].reason

    def test_limit_failure_record(self, snapshot, make_context, executor, mock_api, activity_store):
        a = snapshot('a')
        mock_api.fail['set_upload_limit'] = qbittorrentapi.APIConnectionError('refused')

        executor.execute(executor.plan([desired(a, upload_kib=10)], make_context([a])), 'default')

        record = activity_store.records[0]
        assert record.action == ActivityAction.LIMIT_FAILED
        assert record.reason.startswith('upload limit failed:')

    def test_delete_records_each_torrent(self, snapshot, make_context, executor, mock_api, activity_store):
        torrents = [snapshot('a'), snapshot('b')]
        ctx = make_context(torrents)
        states = [desired(t, delete=True, delete_mode=DeleteMode.WITH_FILES, delete_rule_id=9,
                          delete_rule_name='cleanup', delete_reason='condition matched', delete_for_free_space=True)
                  for t in torrents]

        result = executor.execute(executor.plan(states, ctx), 'default')

        assert mock_api.calls['delete_torrents'] == [{'hashes': ['a', 'b'], 'delete_files': True}]
        assert result.deleted == ['a', 'b']
        assert result.freed_space is True
        assert [r.hash for r in activity_store.records] == ['a', 'b']
        assert all(r.action == ActivityAction.DELETED_CONDITION and r.rule_name == 'cleanup'
                   for r in activity_store.records)

    def test_delete_failure_records(self, snapshot, make_context, executor, mock_api, activity_store):
        a = snapshot('a')
        mock_api.fail['delete_torrents'] = qbittorrentapi.APIConnectionError('refused')

        result = executor.execute(executor.plan([desired(a, delete=True, delete_mode='delete')],
                                                make_context([a])), 'default')

        assert result.deleted == []
        assert activity_store.actions(Outcome.FAILED) == [ActivityAction.DELETE_FAILED]

    def test_activity_store_failure_is_not_fatal(self, snapshot, make_context, mock_api, mocker):
        store = mocker.Mock()
        store.create.side_effect = RuntimeError('disk full')
        executor = ActionExecutor(mock_api, activity_store=store)
        a = snapshot('a')

        result = executor.execute(executor.plan([desired(a, pause=True)], make_context([a])), 'default')

        assert result.applied == 1


class TestTags:
    """Test tag batches"""

    def test_set_tags(self, snapshot, make_context, executor, mock_api, activity_store):
        a = snapshot('a', tags='old')
        plan = executor.plan([desired(a, tag_actions={'new': TAG_ADD, 'old': TAG_REMOVE})], make_context([a]))

        executor.execute(plan, 'default')

        assert mock_api.calls['set_tags'] == [{'hashes': ['a'], 'tags': ['new']}]
        assert activity_store.records[-1].action == ActivityAction.TAGS_CHANGED
        assert activity_store.records[-1].details == {'added': {'new': 1}, 'removed': {'old': 1}}

    def test_fallback_to_add_remove(self, snapshot, make_context, executor, mock_api, mocker):
        """Older clients get add/remove calls, and setTags is not retried"""
        mock_api.web_api = (2, 9, 0)
        spy = mocker.spy(mock_api, 'set_tags')
        a = snapshot('a', tags='old')
        b = snapshot('b')
        plan = executor.plan([
            desired(a, tag_actions={'new': TAG_ADD, 'old': TAG_REMOVE}),
            desired(b, tag_actions={'other': TAG_ADD}),
        ], make_context([a, b]))

        result = executor.execute(plan, 'default')

        assert result.applied == 2
        assert spy.call_count == 1
        assert mock_api.calls['add_tags'] == [{'hashes': ['a'], 'tags': ['new']}, {'hashes': ['b'], 'tags': ['other']}]
        assert mock_api.calls['remove_tags'] == [{'hashes': ['a'], 'tags': ['old']}]

    def test_other_tag_errors_fail_the_batch(self, snapshot, make_context, executor, mock_api):
        mock_api.fail['set_tags'] = qbittorrentapi.APIConnectionError('refused')
        a = snapshot('a')

        result = executor.execute(executor.plan([desired(a, tag_actions={'x': TAG_ADD})], make_context([a])), 'default')

        assert result.failed == 1
        assert mock_api.calls['add_tags'] == []


class TestDryRunAndDeadline:
    def test_dry_run_calls_nothing(self, snapshot, make_context, mock_api, activity_store):
        executor = ActionExecutor(mock_api, activity_store=activity_store, dry_run=True)
        a, b = snapshot('a'), snapshot('b')
        plan = executor.plan([
            desired(a, pause=True, tag_actions={'x': TAG_ADD}),
            desired(b, delete=True, delete_mode=DeleteMode.WITH_FILES),
        ], make_context([a, b]))

        result = executor.execute(plan, 'default')

        assert mock_api.call_count() == 0
        assert result.dry_run == 3
        assert result.deleted == []
        assert set(activity_store.actions(Outcome.DRY_RUN)) == {
            ActivityAction.PAUSED, ActivityAction.DELETED_CONDITION, ActivityAction.TAGS_CHANGED,
        }

    def test_dry_run_override(self, snapshot, make_context, executor, mock_api):
        a = snapshot('a')
        plan = executor.plan([desired(a, pause=True)], make_context([a]))

        executor.execute(plan, 'default', dry_run=True)

        assert mock_api.call_count() == 0

    def test_deadline_abandons_remaining(self, snapshot, make_context, mock_api):
        executor = ActionExecutor(mock_api, run_timeout=-1)
        a = snapshot('a')
        plan = executor.plan([desired(a, pause=True, recheck=True)], make_context([a]))

        result = executor.execute(plan, 'default')

        assert result.aborted == 2
        assert mock_api.call_count() == 0


class TestPrograms:
    def test_programs_submitted_per_torrent(self, snapshot, make_context, make_rule, mock_api, mocker):
        runner = mocker.Mock()
        executor = ActionExecutor(mock_api, program_runner=runner)
        rule = make_rule({'id': 4, 'name': 'notify', 'actions': {'external_program': {'program_id': 'hook'}}})
        torrents = [snapshot('a'), snapshot('b')]
        plan = executor.plan([desired(t, program_id='hook', program_rule_id=4) for t in torrents],
                             make_context(torrents), {4: rule})

        result = executor.execute(plan, 'default')

        assert result.applied == 1
        assert runner.submit.call_count == 2
        runner.submit.assert_any_call('hook', torrents[0], rule=rule, instance='default')

    def test_no_runner_fails_batch(self, snapshot, make_context, mock_api):
        executor = ActionExecutor(mock_api)
        a = snapshot('a')

        result = executor.execute(executor.plan([desired(a, program_id='hook')], make_context([a])), 'default')

        assert result.failed == 1
