"""
Domain model: rules, condition trees, action configs and torrent snapshots
"""

import dataclasses
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern, Tuple


class Field:
    """Condition field names"""
    # String fields
    NAME = 'NAME'
    HASH = 'HASH'
    CATEGORY = 'CATEGORY'
    TAGS = 'TAGS'
    SAVE_PATH = 'SAVE_PATH'
    CONTENT_PATH = 'CONTENT_PATH'
    STATE = 'STATE'
    TRACKER = 'TRACKER'
    COMMENT = 'COMMENT'

    # Bytes
    SIZE = 'SIZE'
    TOTAL_SIZE = 'TOTAL_SIZE'
    DOWNLOADED = 'DOWNLOADED'
    UPLOADED = 'UPLOADED'
    AMOUNT_LEFT = 'AMOUNT_LEFT'
    FREE_SPACE = 'FREE_SPACE'

    # Timestamps and durations (seconds)
    ADDED_ON = 'ADDED_ON'
    COMPLETION_ON = 'COMPLETION_ON'
    LAST_ACTIVITY = 'LAST_ACTIVITY'
    SEEDING_TIME = 'SEEDING_TIME'
    TIME_ACTIVE = 'TIME_ACTIVE'

    # Time since timestamp
    ADDED_ON_AGE = 'ADDED_ON_AGE'
    COMPLETION_ON_AGE = 'COMPLETION_ON_AGE'
    LAST_ACTIVITY_AGE = 'LAST_ACTIVITY_AGE'

    # Floats
    RATIO = 'RATIO'
    PROGRESS = 'PROGRESS'
    AVAILABILITY = 'AVAILABILITY'

    # Speeds
    DL_SPEED = 'DL_SPEED'
    UP_SPEED = 'UP_SPEED'

    # Counts
    NUM_SEEDS = 'NUM_SEEDS'
    NUM_LEECHS = 'NUM_LEECHS'
    NUM_COMPLETE = 'NUM_COMPLETE'
    NUM_INCOMPLETE = 'NUM_INCOMPLETE'
    TRACKERS_COUNT = 'TRACKERS_COUNT'

    # Cross-seed and grouping
    SAME_CONTENT_COUNT = 'SAME_CONTENT_COUNT'
    UNREGISTERED_SAME_CONTENT_COUNT = 'UNREGISTERED_SAME_CONTENT_COUNT'
    REGISTERED_SAME_CONTENT_COUNT = 'REGISTERED_SAME_CONTENT_COUNT'
    GROUP_SIZE = 'GROUP_SIZE'
    IS_GROUPED = 'IS_GROUPED'

    # Booleans
    PRIVATE = 'PRIVATE'
    IS_UNREGISTERED = 'IS_UNREGISTERED'

    # Filesystem
    HARDLINK_SCOPE = 'HARDLINK_SCOPE'


STRING_FIELDS = frozenset({
    Field.NAME, Field.HASH, Field.CATEGORY, Field.TAGS, Field.SAVE_PATH,
    Field.CONTENT_PATH, Field.STATE, Field.TRACKER, Field.COMMENT,
})
INT_FIELDS = frozenset({
    Field.SIZE, Field.TOTAL_SIZE, Field.DOWNLOADED, Field.UPLOADED, Field.AMOUNT_LEFT,
    Field.FREE_SPACE, Field.ADDED_ON, Field.COMPLETION_ON, Field.LAST_ACTIVITY,
    Field.SEEDING_TIME, Field.TIME_ACTIVE, Field.DL_SPEED, Field.UP_SPEED,
    Field.NUM_SEEDS, Field.NUM_LEECHS, Field.NUM_COMPLETE, Field.NUM_INCOMPLETE,
    Field.TRACKERS_COUNT, Field.SAME_CONTENT_COUNT, Field.UNREGISTERED_SAME_CONTENT_COUNT,
    Field.REGISTERED_SAME_CONTENT_COUNT, Field.GROUP_SIZE,
})
AGE_FIELDS = frozenset({Field.ADDED_ON_AGE, Field.COMPLETION_ON_AGE, Field.LAST_ACTIVITY_AGE})
FLOAT_FIELDS = frozenset({Field.RATIO, Field.PROGRESS, Field.AVAILABILITY})
BOOL_FIELDS = frozenset({Field.PRIVATE, Field.IS_UNREGISTERED, Field.IS_GROUPED})
ALL_FIELDS = STRING_FIELDS | INT_FIELDS | AGE_FIELDS | FLOAT_FIELDS | BOOL_FIELDS | {Field.HARDLINK_SCOPE}


class Operator:
    """Condition operators"""
    AND = 'AND'
    OR = 'OR'

    EQUAL = 'EQUAL'
    NOT_EQUAL = 'NOT_EQUAL'
    CONTAINS = 'CONTAINS'
    NOT_CONTAINS = 'NOT_CONTAINS'
    STARTS_WITH = 'STARTS_WITH'
    ENDS_WITH = 'ENDS_WITH'
    MATCHES = 'MATCHES'

    GREATER_THAN = 'GREATER_THAN'
    GREATER_THAN_OR_EQUAL = 'GREATER_THAN_OR_EQUAL'
    LESS_THAN = 'LESS_THAN'
    LESS_THAN_OR_EQUAL = 'LESS_THAN_OR_EQUAL'
    BETWEEN = 'BETWEEN'

    GREATER_THAN_PERCENT = 'GREATER_THAN_PERCENT'
    GREATER_THAN_OR_EQUAL_PERCENT = 'GREATER_THAN_OR_EQUAL_PERCENT'
    LESS_THAN_PERCENT = 'LESS_THAN_PERCENT'
    LESS_THAN_OR_EQUAL_PERCENT = 'LESS_THAN_OR_EQUAL_PERCENT'

    EXISTS_IN = 'EXISTS_IN'
    CONTAINS_IN = 'CONTAINS_IN'


LOGICAL_OPERATORS = frozenset({Operator.AND, Operator.OR})
PERCENT_OPERATORS = frozenset({
    Operator.GREATER_THAN_PERCENT, Operator.GREATER_THAN_OR_EQUAL_PERCENT,
    Operator.LESS_THAN_PERCENT, Operator.LESS_THAN_OR_EQUAL_PERCENT,
})
LEAF_OPERATORS = frozenset({
    Operator.EQUAL, Operator.NOT_EQUAL, Operator.CONTAINS, Operator.NOT_CONTAINS,
    Operator.STARTS_WITH, Operator.ENDS_WITH, Operator.MATCHES,
    Operator.GREATER_THAN, Operator.GREATER_THAN_OR_EQUAL, Operator.LESS_THAN,
    Operator.LESS_THAN_OR_EQUAL, Operator.BETWEEN, Operator.EXISTS_IN, Operator.CONTAINS_IN,
}) | PERCENT_OPERATORS

# Symbolic aliases accepted in rules.yml
OPERATOR_ALIASES = {
    '==': Operator.EQUAL,
    '!=': Operator.NOT_EQUAL,
    '>': Operator.GREATER_THAN,
    '>=': Operator.GREATER_THAN_OR_EQUAL,
    '<': Operator.LESS_THAN,
    '<=': Operator.LESS_THAN_OR_EQUAL,
}


class NodeKind:
    GROUP = 'group'
    LEAF = 'leaf'


class DeleteMode:
    """Delete modes (KEEP_FILES is the default)"""
    KEEP_FILES = 'delete'
    WITH_FILES = 'deleteWithFiles'
    WITH_FILES_PRESERVE_CROSS_SEEDS = 'deleteWithFilesPreserveCrossSeeds'
    WITH_FILES_INCLUDE_CROSS_SEEDS = 'deleteWithFilesIncludeCrossSeeds'

    ALL = (KEEP_FILES, WITH_FILES, WITH_FILES_PRESERVE_CROSS_SEEDS, WITH_FILES_INCLUDE_CROSS_SEEDS)


class TagMode:
    FULL = 'full'
    ADD = 'add'
    REMOVE = 'remove'

    ALL = (FULL, ADD, REMOVE)


class HardlinkScope:
    NONE = 'none'
    TORRENTS_ONLY = 'torrents_only'
    OUTSIDE_QBITTORRENT = 'outside_qbittorrent'


class AmbiguousPolicy:
    VERIFY_OVERLAP = 'verify_overlap'
    SKIP = 'skip'


class FreeSpaceSourceType:
    QBITTORRENT = 'qbittorrent'
    PATH = 'path'


class GroupId:
    """Built-in group definition ids"""
    CROSS_SEED_CONTENT_PATH = 'cross_seed_content_path'
    CROSS_SEED_CONTENT_SAVE_PATH = 'cross_seed_content_save_path'
    RELEASE_ITEM = 'release_item'
    TRACKER_RELEASE_ITEM = 'tracker_release_item'
    HARDLINK_SIGNATURE = 'hardlink_signature'


class ActionName:
    SPEED_LIMITS = 'speed_limits'
    SHARE_LIMITS = 'share_limits'
    PAUSE = 'pause'
    RESUME = 'resume'
    RECHECK = 'recheck'
    REANNOUNCE = 'reannounce'
    TAG = 'tag'
    CATEGORY = 'category'
    MOVE = 'move'
    DELETE = 'delete'
    EXTERNAL_PROGRAM = 'external_program'

    ALL = (
        SPEED_LIMITS, SHARE_LIMITS, PAUSE, RESUME, RECHECK, REANNOUNCE,
        TAG, CATEGORY, MOVE, DELETE, EXTERNAL_PROGRAM,
    )


PAUSED_STATES = frozenset({'pausedDL', 'pausedUP', 'stoppedDL', 'stoppedUP'})

DEFAULT_MIN_FILE_OVERLAP_PERCENT = 90
MAX_CONDITION_DEPTH = 20


@dataclass
class ConditionNode:
    """
    Condition tree node

    A tagged union: kind GROUP carries an AND/OR operator and ordered
    children; kind LEAF carries a field comparison.
    """
    kind: str
    operator: str
    children: List['ConditionNode'] = field(default_factory=list)
    field: str = ''
    value: str = ''
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    negate: bool = False
    regex: bool = False
    include_cross_seeds: bool = False
    group_id: str = ''
    _pattern: Optional[Pattern] = dataclasses.field(default=None, repr=False, compare=False)

    @classmethod
    def group(cls, operator: str, children: List['ConditionNode'], negate: bool = False) -> 'ConditionNode':
        return cls(kind=NodeKind.GROUP, operator=operator, children=list(children), negate=negate)

    @classmethod
    def leaf(cls, field_name: str, operator: str, value: Any = '', **kwargs) -> 'ConditionNode':
        return cls(kind=NodeKind.LEAF, operator=operator, field=field_name,
                   value='' if value is None else _value_to_str(value), **kwargs)

    @property
    def is_group(self) -> bool:
        return self.kind == NodeKind.GROUP

    @property
    def uses_regex(self) -> bool:
        return self.regex or self.operator == Operator.MATCHES

    def compiled_pattern(self) -> Pattern:
        """
        Compile the value as a case-insensitive pattern, once

        Raises:
            re.error: If the pattern is invalid
        """
        if self._pattern is None:
            self._pattern = re.compile(self.value, re.IGNORECASE)
        return self._pattern


def _value_to_str(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


@dataclass
class ActionConfig:
    """Common action settings; a missing condition matches every torrent"""
    enabled: bool = True
    condition: Optional[ConditionNode] = None


@dataclass
class SpeedLimitsAction(ActionConfig):
    upload_kib: Optional[int] = None
    download_kib: Optional[int] = None


@dataclass
class ShareLimitsAction(ActionConfig):
    ratio_limit: Optional[float] = None
    seeding_time_minutes: Optional[int] = None


@dataclass
class TagAction(ActionConfig):
    tags: List[str] = field(default_factory=list)
    mode: str = TagMode.FULL
    use_tracker_as_tag: bool = False
    use_display_name: bool = False


@dataclass
class CategoryAction(ActionConfig):
    category: str = ''
    include_cross_seeds: bool = False
    block_if_cross_seed_in_categories: List[str] = field(default_factory=list)
    group_id: str = ''


@dataclass
class MoveAction(ActionConfig):
    path: str = ''
    include_cross_seeds: bool = False
    group_id: str = ''


@dataclass
class DeleteAction(ActionConfig):
    mode: str = DeleteMode.KEEP_FILES
    include_hardlinks: bool = False
    group_id: str = ''


@dataclass
class ExternalProgramAction(ActionConfig):
    program_id: str = ''


@dataclass
class RuleActions:
    speed_limits: Optional[SpeedLimitsAction] = None
    share_limits: Optional[ShareLimitsAction] = None
    pause: Optional[ActionConfig] = None
    resume: Optional[ActionConfig] = None
    recheck: Optional[ActionConfig] = None
    reannounce: Optional[ActionConfig] = None
    tag: Optional[TagAction] = None
    category: Optional[CategoryAction] = None
    move: Optional[MoveAction] = None
    delete: Optional[DeleteAction] = None
    external_program: Optional[ExternalProgramAction] = None

    def enabled(self) -> List[Tuple[str, ActionConfig]]:
        """Enabled actions in evaluation order"""
        result = []
        for name in ActionName.ALL:
            action = getattr(self, name)
            if action is not None and action.enabled:
                result.append((name, action))
        return result


@dataclass
class FreeSpaceSource:
    type: str = FreeSpaceSourceType.QBITTORRENT
    path: str = ''


@dataclass
class GroupDefinition:
    id: str
    keys: List[str]
    ambiguous_policy: str = ''
    min_file_overlap_percent: float = DEFAULT_MIN_FILE_OVERLAP_PERCENT


@dataclass
class GroupingConfig:
    default_group_id: str = ''
    groups: List[GroupDefinition] = field(default_factory=list)


@dataclass
class Rule:
    """A named policy: selector, per-action conditions and cadence"""
    id: int
    name: str
    enabled: bool = True
    tracker_pattern: str = '*'
    instances: List[str] = field(default_factory=list)
    dry_run: bool = False
    interval_seconds: Optional[int] = None
    free_space_source: Optional[FreeSpaceSource] = None
    grouping: Optional[GroupingConfig] = None
    actions: RuleActions = field(default_factory=RuleActions)

    def applies_to(self, instance: str) -> bool:
        return not self.instances or instance in self.instances

    def condition_trees(self) -> List[Tuple[str, ConditionNode]]:
        """(action name, condition) for every enabled action with a condition"""
        return [(name, action.condition) for name, action in self.actions.enabled()
                if action.condition is not None]


@dataclass(frozen=True)
class TorrentSnapshot:
    """Immutable view of one torrent for the duration of a run"""
    hash: str
    name: str = ''
    category: str = ''
    tags: str = ''
    save_path: str = ''
    content_path: str = ''
    state: str = ''
    tracker: str = ''
    comment: str = ''
    size: int = 0
    total_size: int = 0
    downloaded: int = 0
    uploaded: int = 0
    amount_left: int = 0
    added_on: int = 0
    completion_on: int = 0
    last_activity: int = 0
    seeding_time: int = 0
    time_active: int = 0
    ratio: float = 0.0
    progress: float = 0.0
    availability: float = 0.0
    dlspeed: int = 0
    upspeed: int = 0
    num_seeds: int = 0
    num_leechs: int = 0
    num_complete: int = 0
    num_incomplete: int = 0
    trackers_count: int = 0
    private: bool = False
    up_limit: int = -1
    dl_limit: int = -1
    ratio_limit: float = -2.0
    seeding_time_limit: int = -2
    trackers: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TorrentSnapshot':
        """
        Build a snapshot from a torrents/info dictionary

        Unknown keys are ignored; missing keys fall back to defaults.
        """
        def as_int(key: str, default: int = 0) -> int:
            value = data.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except (TypeError, ValueError):
                return default

        def as_float(key: str, default: float = 0.0) -> float:
            value = data.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except (TypeError, ValueError):
                return default

        trackers = data.get('trackers') or ()
        tracker_urls = tuple(
            t.get('url', '') if isinstance(t, dict) else str(t) for t in trackers
        )

        return cls(
            hash=str(data.get('hash', '')),
            name=data.get('name') or '',
            category=data.get('category') or '',
            tags=data.get('tags') or '',
            save_path=data.get('save_path') or '',
            content_path=data.get('content_path') or '',
            state=data.get('state') or '',
            tracker=data.get('tracker') or '',
            comment=data.get('comment') or '',
            size=as_int('size'),
            total_size=as_int('total_size'),
            downloaded=as_int('downloaded'),
            uploaded=as_int('uploaded'),
            amount_left=as_int('amount_left'),
            added_on=as_int('added_on'),
            completion_on=as_int('completion_on'),
            last_activity=as_int('last_activity'),
            seeding_time=as_int('seeding_time'),
            time_active=as_int('time_active'),
            ratio=as_float('ratio'),
            progress=as_float('progress'),
            availability=as_float('availability'),
            dlspeed=as_int('dlspeed'),
            upspeed=as_int('upspeed'),
            num_seeds=as_int('num_seeds'),
            num_leechs=as_int('num_leechs'),
            num_complete=as_int('num_complete'),
            num_incomplete=as_int('num_incomplete'),
            trackers_count=as_int('trackers_count'),
            private=bool(data.get('private') or data.get('is_private') or False),
            up_limit=as_int('up_limit', -1),
            dl_limit=as_int('dl_limit', -1),
            ratio_limit=as_float('ratio_limit', -2.0),
            seeding_time_limit=as_int('seeding_time_limit', -2),
            trackers=tracker_urls,
        )

    @property
    def is_paused(self) -> bool:
        return self.state in PAUSED_STATES

    @property
    def is_complete(self) -> bool:
        return self.progress >= 1.0
