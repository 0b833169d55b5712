"""
Tests for evaluator.py - condition tree interpreter

Test coverage for:
- Group semantics, depth bound and negation
- String, tag, numeric, percent, age and boolean comparisons
- State buckets
- Cross-category lookups (EXISTS_IN / CONTAINS_IN)
- Cross-seed counts and free space
"""

import pytest

from qbt_reconciler.context import FreeSpaceState
from qbt_reconciler.evaluator import (
    ConditionEvaluator, collect_group_ids, compare_percent, condition_uses_field, evaluate,
)
from qbt_reconciler.models import ConditionNode, Field, Operator

GiB = 1024 ** 3
NOW = 1_700_000_000


def leaf(field, operator, value='', **kwargs):
    return ConditionNode.leaf(field, operator, value, **kwargs)


def group(operator, children, negate=False):
    return ConditionNode.group(operator, children, negate=negate)


# ============================================================================
# Groups, depth and negation
# ============================================================================

class TestGroups:
    """Test AND/OR groups, the depth bound and negation"""

    def test_and_requires_every_child(self, snapshot):
        """AND matches only when all children match"""
        torrent = snapshot('a', category='movies', ratio=2.0)
        node = group(Operator.AND, [
            leaf(Field.CATEGORY, Operator.EQUAL, 'movies'),
            leaf(Field.RATIO, Operator.GREATER_THAN_OR_EQUAL, 2),
        ])
        assert evaluate(node, torrent) is True

        node.children.append(leaf(Field.RATIO, Operator.GREATER_THAN, 5))
        assert evaluate(node, torrent) is False

    def test_or_requires_any_child(self, snapshot):
        """OR matches when one child matches"""
        torrent = snapshot('a', category='tv')
        node = group(Operator.OR, [
            leaf(Field.CATEGORY, Operator.EQUAL, 'movies'),
            leaf(Field.CATEGORY, Operator.EQUAL, 'tv'),
        ])
        assert evaluate(node, torrent) is True

    def test_empty_group_is_false(self, snapshot):
        """An empty group never matches"""
        torrent = snapshot('a')
        assert evaluate(group(Operator.AND, []), torrent) is False
        assert evaluate(group(Operator.OR, []), torrent) is False

    def test_negate_applies_after_group_result(self, snapshot):
        """Negation is applied last, even to an empty group"""
        torrent = snapshot('a')
        assert evaluate(group(Operator.AND, [], negate=True), torrent) is True

    def test_double_negation_is_identity(self, snapshot):
        """A negated group around a negated leaf equals the plain leaf"""
        torrent = snapshot('a', category='movies')
        plain = leaf(Field.CATEGORY, Operator.EQUAL, 'movies')
        wrapped = group(Operator.AND, [leaf(Field.CATEGORY, Operator.EQUAL, 'movies', negate=True)], negate=True)

        assert evaluate(wrapped, torrent) == evaluate(plain, torrent) is True

    def test_depth_bound(self, snapshot):
        """Trees nested deeper than 20 levels evaluate false"""
        torrent = snapshot('a', category='movies')

        shallow = leaf(Field.CATEGORY, Operator.EQUAL, 'movies')
        for _ in range(10):
            shallow = group(Operator.AND, [shallow])
        assert evaluate(shallow, torrent) is True

        deep = leaf(Field.CATEGORY, Operator.EQUAL, 'movies')
        for _ in range(25):
            deep = group(Operator.AND, [deep])
        assert evaluate(deep, torrent) is False

    def test_none_node_is_false(self, snapshot):
        """A missing node never matches"""
        assert evaluate(None, snapshot('a')) is False


# ============================================================================
# String and tag comparisons
# ============================================================================

class TestStrings:
    """Test case-insensitive string comparisons and regex"""

    @pytest.mark.parametrize('operator,value,expected', [
        (Operator.EQUAL, 'MOVIES', True),
        (Operator.NOT_EQUAL, 'Movies', False),
        (Operator.CONTAINS, 'OVI', True),
        (Operator.NOT_CONTAINS, 'tv', True),
        (Operator.STARTS_WITH, 'MOV', True),
        (Operator.ENDS_WITH, 'IES', True),
    ])
    def test_case_insensitive_operators(self, snapshot, operator, value, expected):
        """String operators ignore case"""
        torrent = snapshot('a', category='movies')
        assert evaluate(leaf(Field.CATEGORY, operator, value), torrent) is expected

    def test_regex_is_case_insensitive(self, snapshot):
        """MATCHES searches with IGNORECASE"""
        torrent = snapshot('a', name='SOME.Movie.2024.1080p')
        assert evaluate(leaf(Field.NAME, Operator.MATCHES, r'^some\.movie'), torrent) is True

    def test_regex_flag_on_contains(self, snapshot):
        """regex: true turns any string operator into a search"""
        torrent = snapshot('a', name='Show.S01E02.720p')
        assert evaluate(leaf(Field.NAME, Operator.CONTAINS, r's\d+e\d+', regex=True), torrent) is True

    def test_invalid_regex_fails_closed(self, snapshot):
        """An invalid pattern is false, and stays false when negated"""
        torrent = snapshot('a')
        assert evaluate(leaf(Field.NAME, Operator.MATCHES, '(unclosed'), torrent) is False
        assert evaluate(leaf(Field.NAME, Operator.MATCHES, '(unclosed', negate=True), torrent) is False

    def test_tags_compare_element_wise(self, snapshot):
        """Tag operators look at individual tags"""
        torrent = snapshot('a', tags='keep, archive-2024')
        assert evaluate(leaf(Field.TAGS, Operator.EQUAL, 'KEEP'), torrent) is True
        assert evaluate(leaf(Field.TAGS, Operator.EQUAL, 'archive'), torrent) is False
        assert evaluate(leaf(Field.TAGS, Operator.CONTAINS, 'archive'), torrent) is True
        assert evaluate(leaf(Field.TAGS, Operator.NOT_CONTAINS, 'seed'), torrent) is True

    def test_tags_on_untagged_torrent(self, snapshot):
        """No tags means NOT_EQUAL always matches"""
        torrent = snapshot('a', tags='')
        assert evaluate(leaf(Field.TAGS, Operator.NOT_EQUAL, 'keep'), torrent) is True
        assert evaluate(leaf(Field.TAGS, Operator.CONTAINS, 'keep'), torrent) is False


# ============================================================================
# Numeric comparisons
# ============================================================================

class TestNumbers:
    """Test numeric, BETWEEN, percent and age comparisons"""

    @pytest.mark.parametrize('ratio,expected', [(1.0, True), (1.5, True), (2.0, True), (2.01, False), (0.99, False)])
    def test_between_is_inclusive(self, snapshot, ratio, expected):
        """BETWEEN includes both bounds"""
        node = leaf(Field.RATIO, Operator.BETWEEN, min_value=1.0, max_value=2.0)
        assert evaluate(node, snapshot('a', ratio=ratio)) is expected

    def test_integer_field_accepts_float_target(self, snapshot):
        """Integer fields compare against decimal targets"""
        torrent = snapshot('a', size=GiB)
        assert evaluate(leaf(Field.SIZE, Operator.GREATER_THAN, '1073741823.5'), torrent) is True

    def test_non_numeric_target_never_matches(self, snapshot):
        """A value that is not a number evaluates false"""
        torrent = snapshot('a', ratio=3.0)
        assert evaluate(leaf(Field.RATIO, Operator.GREATER_THAN, 'lots'), torrent) is False

    def test_percent_three_of_four(self):
        """3 of 4 is 75%, so >= 75% matches and > 75% does not"""
        assert compare_percent(3, 4, leaf(Field.UNREGISTERED_SAME_CONTENT_COUNT,
                                          Operator.GREATER_THAN_OR_EQUAL_PERCENT, 75)) is True
        assert compare_percent(3, 4, leaf(Field.UNREGISTERED_SAME_CONTENT_COUNT,
                                          Operator.GREATER_THAN_PERCENT, 75)) is False

    def test_percent_zero_total(self):
        """A total of zero never matches, whatever the operator"""
        for operator in (Operator.GREATER_THAN_OR_EQUAL_PERCENT, Operator.LESS_THAN_OR_EQUAL_PERCENT):
            assert compare_percent(0, 0, leaf(Field.UNREGISTERED_SAME_CONTENT_COUNT, operator, 0)) is False

    def test_age_clamps_future_timestamps(self, snapshot, make_context):
        """A timestamp in the future has age 0"""
        torrent = snapshot('a', added_on=NOW + 500)
        ctx = make_context([torrent])
        assert evaluate(leaf(Field.ADDED_ON_AGE, Operator.EQUAL, 0), torrent, ctx) is True

    def test_age_of_unset_timestamp_never_matches(self, snapshot, make_context):
        """Timestamps <= 0 never match an age comparison"""
        torrent = snapshot('a', completion_on=-1)
        ctx = make_context([torrent])
        assert evaluate(leaf(Field.COMPLETION_ON_AGE, Operator.GREATER_THAN_OR_EQUAL, 0), torrent, ctx) is False

    def test_age_in_seconds(self, snapshot, make_context):
        """Age is now minus the timestamp"""
        torrent = snapshot('a', added_on=NOW - 7200)
        ctx = make_context([torrent])
        assert evaluate(leaf(Field.ADDED_ON_AGE, Operator.GREATER_THAN_OR_EQUAL, 7200), torrent, ctx) is True
        assert evaluate(leaf(Field.ADDED_ON_AGE, Operator.GREATER_THAN, 7200), torrent, ctx) is False


# ============================================================================
# States and booleans
# ============================================================================

class TestStates:
    """Test state buckets and boolean fields"""

    @pytest.mark.parametrize('state,bucket,expected', [
        ('stoppedUP', 'paused', True),
        ('pausedDL', 'stopped', True),
        ('uploading', 'paused', False),
        ('stalledUP', 'seeding', True),
        ('stalledDL', 'downloading', True),
        ('stalledUP', 'stalled', True),
        ('missingFiles', 'errored', True),
        ('uploading', 'running', True),
    ])
    def test_state_buckets(self, snapshot, state, bucket, expected):
        """STATE EQUAL matches friendly buckets"""
        torrent = snapshot('a', state=state)
        assert evaluate(leaf(Field.STATE, Operator.EQUAL, bucket), torrent) is expected

    def test_completed_bucket_uses_progress(self, snapshot):
        """The completed bucket reads progress, not state"""
        assert evaluate(leaf(Field.STATE, Operator.EQUAL, 'completed'), snapshot('a', progress=1.0)) is True
        assert evaluate(leaf(Field.STATE, Operator.EQUAL, 'completed'), snapshot('b', progress=0.5)) is False

    def test_unregistered_requires_health(self, snapshot, make_context):
        """IS_UNREGISTERED reads the context's health set"""
        torrent = snapshot('a')
        assert evaluate(leaf(Field.IS_UNREGISTERED, Operator.EQUAL, True), torrent, make_context([torrent])) is False

        ctx = make_context([torrent], unregistered={'a'})
        assert evaluate(leaf(Field.IS_UNREGISTERED, Operator.EQUAL, True), torrent, ctx) is True
        assert evaluate(leaf(Field.STATE, Operator.EQUAL, 'unregistered'), torrent, ctx) is True

    def test_private_flag(self, snapshot):
        """PRIVATE compares against true/false"""
        assert evaluate(leaf(Field.PRIVATE, Operator.EQUAL, True), snapshot('a', private=True)) is True
        assert evaluate(leaf(Field.PRIVATE, Operator.EQUAL, False), snapshot('b')) is True

    def test_hardlink_scope_needs_local_access(self, snapshot, make_context):
        """HARDLINK_SCOPE is false without local filesystem access"""
        torrent = snapshot('a')
        node = leaf(Field.HARDLINK_SCOPE, Operator.EQUAL, 'none')

        ctx = make_context([torrent], hardlink_scopes={'a': 'none'})
        assert evaluate(node, torrent, ctx) is False

        ctx.has_local_access = True
        assert evaluate(node, torrent, ctx) is True


# ============================================================================
# Cross-category lookups
# ============================================================================

class TestCategoryLookups:
    """Test EXISTS_IN and CONTAINS_IN"""

    def test_exists_in_excludes_self(self, snapshot, make_context):
        """A torrent never matches itself"""
        movie = snapshot('a', name='Some.Movie.2024', category='movies')
        ctx = make_context([movie])
        assert evaluate(leaf(Field.NAME, Operator.EXISTS_IN, 'movies'), movie, ctx) is False

    def test_exists_in_other_category(self, snapshot, make_context):
        """Same name (case-insensitive) in the target category matches"""
        movie = snapshot('a', name='Some.Movie.2024', category='cross-seed')
        other = snapshot('b', name='some.movie.2024', category='Movies')
        ctx = make_context([movie, other])
        assert evaluate(leaf(Field.NAME, Operator.EXISTS_IN, 'MOVIES'), movie, ctx) is True
        assert evaluate(leaf(Field.NAME, Operator.EXISTS_IN, 'tv'), movie, ctx) is False

    def test_exists_in_uncategorized(self, snapshot, make_context):
        """An empty target means uncategorized torrents"""
        movie = snapshot('a', name='Some.Movie.2024', category='movies')
        other = snapshot('b', name='Some.Movie.2024', category='')
        ctx = make_context([movie, other])
        assert evaluate(leaf(Field.NAME, Operator.EXISTS_IN, ''), movie, ctx) is True
        assert evaluate(leaf(Field.NAME, Operator.EXISTS_IN, '   '), movie, ctx) is False

    def test_contains_in_normalizes_names(self, snapshot, make_context):
        """Names are compared with separators folded to spaces"""
        episode = snapshot('a', name='Great.Show.S01E01.1080p', category='tv')
        pack = snapshot('b', name='Great Show S01E01 1080p WEB-DL', category='archive')
        ctx = make_context([episode, pack])
        assert evaluate(leaf(Field.NAME, Operator.CONTAINS_IN, 'archive'), episode, ctx) is True

    def test_contains_in_length_guard(self, snapshot, make_context):
        """Names shorter than 10 normalized characters never match"""
        short = snapshot('a', name='Show.S01', category='tv')
        longer = snapshot('b', name='Show.S01.Complete.1080p', category='archive')
        ctx = make_context([short, longer])
        assert evaluate(leaf(Field.NAME, Operator.CONTAINS_IN, 'archive'), short, ctx) is False

    def test_lookups_without_context(self, snapshot):
        """Without a context the lookups are false"""
        movie = snapshot('a', name='Some.Movie.2024')
        assert evaluate(leaf(Field.NAME, Operator.EXISTS_IN, 'movies'), movie) is False


# ============================================================================
# Cross-seed counts and free space
# ============================================================================

class TestContextFields:
    """Test fields computed from the evaluation context"""

    def test_same_content_count_alone(self, snapshot, make_context):
        """A torrent on its own counts as 1"""
        torrent = snapshot('a')
        ctx = make_context([torrent])
        assert evaluate(leaf(Field.SAME_CONTENT_COUNT, Operator.EQUAL, 1), torrent, ctx) is True

    def test_unregistered_percent_three_of_four(self, snapshot, make_context):
        """Three unregistered siblings of four copies is 75%"""
        torrents = [snapshot(h, name='Shared.Content', save_path='/data') for h in 'abcd']
        ctx = make_context(torrents, unregistered={'b', 'c', 'd'})
        node = leaf(Field.UNREGISTERED_SAME_CONTENT_COUNT, Operator.GREATER_THAN_OR_EQUAL_PERCENT, 75)
        assert evaluate(node, torrents[0], ctx) is True
        assert evaluate(leaf(Field.SAME_CONTENT_COUNT, Operator.EQUAL, 4), torrents[0], ctx) is True
        assert evaluate(leaf(Field.REGISTERED_SAME_CONTENT_COUNT, Operator.EQUAL, 0), torrents[0], ctx) is True

    def test_include_cross_seeds_matches_basename(self, snapshot, make_context):
        """include_cross_seeds groups copies under different roots"""
        a = snapshot('a', name='Shared.Content', save_path='/data')
        b = snapshot('b', name='Shared.Content', save_path='/mnt/other')
        ctx = make_context([a, b])
        assert evaluate(leaf(Field.SAME_CONTENT_COUNT, Operator.EQUAL, 1), a, ctx) is True
        assert evaluate(leaf(Field.SAME_CONTENT_COUNT, Operator.EQUAL, 2, include_cross_seeds=True), a, ctx) is True

    def test_free_space_includes_projection(self, snapshot, make_context):
        """FREE_SPACE is the reading plus bytes projected this run"""
        torrent = snapshot('a')
        ctx = make_context([torrent])
        node = leaf(Field.FREE_SPACE, Operator.EQUAL, 150)

        assert evaluate(node, torrent, ctx) is False

        ctx.free_space_readings['qbt'] = 100
        ctx.free_space_states['qbt|rule:1'] = FreeSpaceState(space_to_clear=50)
        ctx.active_free_space_key = 'qbt|rule:1'
        assert evaluate(node, torrent, ctx) is True


# ============================================================================
# Tree inspection
# ============================================================================

class TestTreeInspection:
    """Test helpers that walk condition trees"""

    def test_condition_uses_field(self):
        """Nested leaves are found"""
        node = group(Operator.OR, [group(Operator.AND, [leaf(Field.FREE_SPACE, Operator.LESS_THAN, 1)])])
        assert condition_uses_field(node, Field.FREE_SPACE) is True
        assert condition_uses_field(node, Field.RATIO) is False

    def test_collect_group_ids(self):
        """Group ids are lowercased and unscoped leaves are reported"""
        nodes = [
            group(Operator.AND, [
                leaf(Field.GROUP_SIZE, Operator.GREATER_THAN, 1, group_id='Release_Item'),
                leaf(Field.IS_GROUPED, Operator.EQUAL, True),
            ]),
            leaf(Field.GROUP_SIZE, Operator.EQUAL, 2, group_id='release_item'),
        ]
        assert collect_group_ids(nodes) == (['release_item'], True)

    def test_evaluator_never_raises_without_context(self, snapshot):
        """Context-bound fields evaluate false with no context"""
        evaluator = ConditionEvaluator()
        torrent = snapshot('a')
        for field in (Field.FREE_SPACE, Field.GROUP_SIZE, Field.HARDLINK_SCOPE, Field.IS_UNREGISTERED):
            assert evaluator.evaluate(leaf(field, Operator.EQUAL, 1), torrent) is False
