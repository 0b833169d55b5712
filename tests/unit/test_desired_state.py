"""
Tests for desired_state.py - the per-rule fold and group gating
"""

import pytest

from qbt_reconciler.context import build_cross_seed_index
from qbt_reconciler.desired_state import (
    TAG_ADD, TAG_REMOVE, DesiredState, GroupGate, RuleReducer, should_block_category_for_cross_seeds,
)
from qbt_reconciler.models import DeleteMode


@pytest.fixture
def fold(make_context):
    """Fold rules over one torrent (or over every torrent of a list)"""
    def factory(rules, torrent, torrents=None, selector=None, **reducer_kwargs):
        torrents = torrents or [torrent]
        ctx = reducer_kwargs.pop('ctx', None) or make_context(torrents)
        gate = GroupGate(ctx, selector or (lambda rule, t: True))
        reducer = RuleReducer(ctx, build_cross_seed_index(torrents), gate, **reducer_kwargs)
        state = DesiredState.for_torrent(torrent, ctx)
        for rule in rules:
            state = reducer.reduce(state, rule, torrent)
        return state
    return factory


# ============================================================================
# Last-wins fold
# ============================================================================

class TestFold:
    """Test priority ordering of rules"""

    def test_later_rule_wins_per_field(self, snapshot, make_rule, fold):
        """Fields set by a later rule replace earlier values; others survive"""
        first = make_rule({'id': 1, 'name': 'first', 'actions': {
            'speed_limits': {'upload_kib': 100, 'download_kib': 50},
        }})
        second = make_rule({'id': 2, 'name': 'second', 'actions': {'speed_limits': {'upload_kib': 200}}})

        state = fold([first, second], snapshot('a'))

        assert state.upload_kib == 200
        assert state.download_kib == 50
        assert state.contributing_rules == {1: 'first', 2: 'second'}

    def test_delete_ends_the_fold(self, snapshot, make_rule, fold):
        """Rules after a delete contribute nothing"""
        delete = make_rule({'id': 1, 'name': 'delete', 'actions': {'delete': {'mode': 'deleteWithFiles'}}})
        tag = make_rule({'id': 2, 'name': 'tag', 'actions': {'tag': {'tags': ['late']}}})

        state = fold([delete, tag], snapshot('a'))

        assert state.delete is True
        assert state.delete_mode == DeleteMode.WITH_FILES
        assert state.delete_rule_id == 1
        assert state.tag_actions == {}
        assert state.contributing_rules == {1: 'delete'}

    def test_reduce_does_not_mutate_input(self, snapshot, make_rule, make_context):
        torrent = snapshot('a')
        ctx = make_context([torrent])
        state = DesiredState.for_torrent(torrent, ctx)
        rule = make_rule({'name': 'tag', 'actions': {'tag': {'tags': ['x']}}})

        new = RuleReducer(ctx).reduce(state, rule, torrent)

        assert new.tag_actions == {'x': TAG_ADD}
        assert state.tag_actions == {}

    def test_conditions_gate_each_action(self, snapshot, make_rule, fold):
        rule = make_rule({'name': 'r', 'actions': {
            'pause': {'condition': {'field': 'RATIO', 'operator': '>', 'value': 5}},
            'reannounce': {'condition': {'field': 'RATIO', 'operator': '<', 'value': 5}},
        }})

        state = fold([rule], snapshot('a', ratio=1.0))

        assert state.pause is False
        assert state.reannounce is True

    def test_no_actions(self, snapshot, make_rule, fold):
        state = fold([make_rule({'name': 'nothing'})], snapshot('a'))

        assert state.has_actions() is False


# ============================================================================
# Pause / resume
# ============================================================================

class TestPauseResume:
    def test_pause_only_running(self, snapshot, make_rule, fold):
        rule = make_rule({'name': 'p', 'actions': {'pause': True}})

        assert fold([rule], snapshot('a', state='uploading')).pause is True
        assert fold([rule], snapshot('b', state='stoppedUP')).pause is False

    def test_resume_only_paused(self, snapshot, make_rule, fold):
        rule = make_rule({'name': 'r', 'actions': {'resume': True}})

        assert fold([rule], snapshot('a', state='pausedUP')).resume is True
        assert fold([rule], snapshot('b', state='uploading')).resume is False

    def test_later_rule_flips_pause(self, snapshot, make_rule, fold):
        """pause and resume are mutually exclusive; the last rule wins"""
        pause = make_rule({'id': 1, 'name': 'p', 'actions': {'pause': True}})
        resume = make_rule({'id': 2, 'name': 'r', 'actions': {'resume': True}})

        state = fold([resume, pause], snapshot('a', state='uploading'))
        assert state.pause is True
        assert state.resume is False

        state = fold([pause, resume], snapshot('b', state='stoppedUP'))
        assert state.pause is False
        assert state.resume is True


# ============================================================================
# Tags
# ============================================================================

class TestTags:
    """Test tag modes"""

    def test_full_mode_adds_and_removes(self, snapshot, make_rule, fold):
        rule = make_rule({'name': 't', 'actions': {'tag': {
            'tags': ['big'],
            'condition': {'field': 'SIZE', 'operator': '>', 'value': 1000},
        }}})

        assert fold([rule], snapshot('a', size=5000)).tag_actions == {'big': TAG_ADD}
        assert fold([rule], snapshot('b', size=10, tags='big')).tag_actions == {'big': TAG_REMOVE}
        assert fold([rule], snapshot('c', size=5000, tags='big')).tag_actions == {}

    def test_add_mode_never_removes(self, snapshot, make_rule, fold):
        rule = make_rule({'name': 't', 'actions': {'tag': {
            'tags': ['big'], 'mode': 'add',
            'condition': {'field': 'SIZE', 'operator': '>', 'value': 1000},
        }}})

        assert fold([rule], snapshot('a', size=10, tags='big')).tag_actions == {}

    def test_remove_mode_never_adds(self, snapshot, make_rule, fold):
        rule = make_rule({'name': 't', 'actions': {'tag': {
            'tags': ['new'], 'mode': 'remove',
            'condition': {'field': 'RATIO', 'operator': '<', 'value': 0.5},
        }}})

        assert fold([rule], snapshot('a', ratio=0.1)).tag_actions == {}
        assert fold([rule], snapshot('b', ratio=2.0, tags='new')).tag_actions == {'new': TAG_REMOVE}

    def test_pending_action_seen_by_later_rule(self, snapshot, make_rule, fold):
        """A later rule sees tags added earlier in the same fold"""
        add = make_rule({'id': 1, 'name': 'add', 'actions': {'tag': {'tags': ['x'], 'mode': 'add'}}})
        remove = make_rule({'id': 2, 'name': 'remove', 'actions': {'tag': {
            'tags': ['x'], 'mode': 'remove',
            'condition': {'field': 'RATIO', 'operator': '>', 'value': 100},
        }}})

        assert fold([add, remove], snapshot('a')).tag_actions == {'x': TAG_REMOVE}

    def test_tracker_display_name_tag(self, snapshot, make_rule, make_context, fold):
        torrent = snapshot('a', tracker='https://tracker.example.org/announce')
        ctx = make_context([torrent], display_names={'tracker.example.org': 'EX'})
        rule = make_rule({'name': 't', 'actions': {'tag': {'use_tracker_as_tag': True, 'use_display_name': True}}})

        assert fold([rule], torrent, ctx=ctx).tag_actions == {'EX': TAG_ADD}

    def test_unknown_health_skips_tag(self, snapshot, make_rule, make_context, fold):
        """Tags keyed on IS_UNREGISTERED wait for tracker health"""
        torrent = snapshot('a', tags='unregistered')
        rule = make_rule({'name': 't', 'actions': {'tag': {
            'tags': ['unregistered'],
            'condition': {'field': 'IS_UNREGISTERED', 'operator': '==', 'value': True},
        }}})

        assert fold([rule], torrent).tag_actions == {}

        ctx = make_context([torrent], unregistered=set())
        assert fold([rule], torrent, ctx=ctx).tag_actions == {'unregistered': TAG_REMOVE}


# ============================================================================
# Category, move and delete
# ============================================================================

class TestCategoryMoveDelete:
    def test_category_blocked_by_protected_cross_seed(self, snapshot, make_rule, fold):
        """A cross-seed in a protected category blocks only the category change"""
        torrent = snapshot('a', name='Shared', category='tv')
        keeper = snapshot('b', name='Shared', category='Keep')
        rule = make_rule({'name': 'c', 'actions': {
            'category': {'category': 'archive', 'block_if_cross_seed_in_categories': ['keep']},
            'reannounce': True,
        }})

        state = fold([rule], torrent, torrents=[torrent, keeper])

        assert state.category is None
        assert state.reannounce is True

    def test_should_block_ignores_self(self, snapshot):
        torrent = snapshot('a', name='Shared', category='keep')
        index = build_cross_seed_index([torrent])

        assert should_block_category_for_cross_seeds(torrent, ['keep'], index) is False
        assert should_block_category_for_cross_seeds(torrent, [], index) is False

    def test_move_records_rule(self, snapshot, make_rule, fold):
        rule = make_rule({'id': 6, 'name': 'm', 'actions': {'move': {'path': '/archive', 'include_cross_seeds': True}}})

        state = fold([rule], snapshot('a'))

        assert state.move_path == '/archive'
        assert state.move_include_cross_seeds is True
        assert state.move_rule_id == 6

    def test_delete_requires_complete_torrent(self, snapshot, make_rule, fold):
        rule = make_rule({'name': 'd', 'actions': {'delete': True}})

        assert fold([rule], snapshot('a', progress=0.9)).delete is False
        state = fold([rule], snapshot('b'))
        assert state.delete is True
        assert state.delete_mode == DeleteMode.KEEP_FILES

    def test_free_space_delete_blocked_in_cooldown(self, snapshot, make_rule, make_context, fold):
        torrent = snapshot('a')
        ctx = make_context([torrent], free_space_readings={'qbt': 0})
        rule = make_rule({'id': 1, 'name': 'free', 'actions': {'delete': {
            'mode': 'deleteWithFiles',
            'condition': {'field': 'FREE_SPACE', 'operator': '<', 'value': 100},
        }}})

        assert fold([rule], torrent, ctx=ctx, free_space_deletes_blocked=True).delete is False

        state = fold([rule], torrent, ctx=ctx)
        assert state.delete is True
        assert state.delete_for_free_space is True
        assert ctx.free_space_states['qbt|rule:1'].space_to_clear == torrent.size


# ============================================================================
# Group gate
# ============================================================================

class TestGroupGate:
    """Test all-or-none group-scoped actions"""

    @pytest.fixture
    def group_rule(self, make_rule):
        return make_rule({'id': 5, 'name': 'grouped delete', 'actions': {'delete': {
            'mode': DeleteMode.WITH_FILES_INCLUDE_CROSS_SEEDS,
            'group_id': 'cross_seed_content_save_path',
            'condition': {'field': 'RATIO', 'operator': '>=', 'value': 1},
        }}})

    def test_every_member_matches(self, snapshot, fold, group_rule):
        a = snapshot('a', name='Shared', ratio=2.0)
        b = snapshot('b', name='Shared', ratio=1.5)

        assert fold([group_rule], a, torrents=[a, b]).delete is True

    def test_one_member_fails_condition(self, snapshot, fold, group_rule):
        """A member failing the condition blocks the whole group"""
        a = snapshot('a', name='Shared', ratio=2.0)
        b = snapshot('b', name='Shared', ratio=0.2)

        assert fold([group_rule], a, torrents=[a, b]).delete is False

    def test_member_not_selected(self, snapshot, fold, group_rule):
        a = snapshot('a', name='Shared', ratio=2.0)
        b = snapshot('b', name='Shared', ratio=2.0)

        state = fold([group_rule], a, torrents=[a, b], selector=lambda rule, t: t.hash != 'b')

        assert state.delete is False

    def test_incomplete_member_blocks_delete(self, snapshot, fold, group_rule):
        a = snapshot('a', name='Shared', ratio=2.0)
        b = snapshot('b', name='Shared', ratio=2.0, progress=0.5)

        assert fold([group_rule], a, torrents=[a, b]).delete is False

    def test_ungroupable_torrent_stands_alone(self, snapshot, fold, group_rule):
        """A torrent without a group key is judged on its own"""
        a = snapshot('a', ratio=2.0, content_path='')

        assert fold([group_rule], a).delete is True

    def test_results_cached_per_group(self, snapshot, make_context, group_rule, mocker):
        a = snapshot('a', name='Shared', ratio=2.0)
        b = snapshot('b', name='Shared', ratio=2.0)
        ctx = make_context([a, b])
        selector = mocker.Mock(return_value=True)
        gate = GroupGate(ctx, selector)
        delete = group_rule.actions.delete

        assert gate.allows(group_rule, 'delete', delete, a) is True
        assert gate.allows(group_rule, 'delete', delete, b) is True
        assert selector.call_count == 2
