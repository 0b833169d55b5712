"""
Rule store: parses and validates rule documents from rules.yml

Condition groups are written either as
    {all: [...]}, {any: [...]}, {none: [...]}
or explicitly as
    {operator: AND|OR, conditions: [...], negate: true}
and leaves as
    {field: RATIO, operator: '>=', value: 2}
"""

import re
from typing import Any, Dict, List, Optional, Union

from qbt_reconciler.errors import FieldError, OperatorError, RuleValidationError
from qbt_reconciler.grouping import GROUP_KEYS, find_group_definition
from qbt_reconciler.logging import get_logger
from qbt_reconciler.models import (
    ALL_FIELDS, LEAF_OPERATORS, LOGICAL_OPERATORS, MAX_CONDITION_DEPTH, OPERATOR_ALIASES, PERCENT_OPERATORS,
    ActionConfig, ActionName, AmbiguousPolicy, CategoryAction, ConditionNode, DeleteAction, DeleteMode,
    ExternalProgramAction, Field, FreeSpaceSource, FreeSpaceSourceType, GroupDefinition, GroupingConfig,
    MoveAction, Operator, Rule, RuleActions, ShareLimitsAction, SpeedLimitsAction, TagAction, TagMode,
    DEFAULT_MIN_FILE_OVERLAP_PERCENT,
)
from qbt_reconciler.utils import parse_duration

logger = get_logger(__name__)

# Shorthand group keys -> (operator, negate)
_GROUP_SHORTHANDS = {
    'all': (Operator.AND, False),
    'any': (Operator.OR, False),
    'none': (Operator.OR, True),
}

_CATEGORY_OPERATORS = (Operator.EXISTS_IN, Operator.CONTAINS_IN)
_PERCENT_FIELDS = (Field.UNREGISTERED_SAME_CONTENT_COUNT, Field.REGISTERED_SAME_CONTENT_COUNT)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('true', '1', 'yes', 'on')
    return bool(value)


def _as_optional_int(value: Any, rule_name: str, key: str) -> Optional[int]:
    if value is None or value == '':
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise RuleValidationError(rule_name, f"'{key}' must be an integer, got {value!r}")


def _as_optional_float(value: Any, rule_name: str, key: str) -> Optional[float]:
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise RuleValidationError(rule_name, f"'{key}' must be a number, got {value!r}")


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(',') if v.strip()]
    return [str(v).strip() for v in value if str(v).strip()]


# ----------------------------------------------------------------------
# Conditions
# ----------------------------------------------------------------------

def parse_condition(data: Any, rule_name: str, depth: int = 0) -> Optional[ConditionNode]:
    """
    Parse a condition document into a tree

    Args:
        data: Condition mapping (group or leaf), or None
        rule_name: Rule name for error messages
        depth: Current nesting depth

    Returns:
        ConditionNode, or None when data is None

    Raises:
        RuleValidationError: If the structure is malformed or too deep
        FieldError: If a leaf names an unknown field
        OperatorError: If an operator is unknown
    """
    if data is None:
        return None
    if depth > MAX_CONDITION_DEPTH:
        raise RuleValidationError(rule_name, f"condition nesting exceeds {MAX_CONDITION_DEPTH} levels")
    if isinstance(data, list):
        data = {'all': data}
    if not isinstance(data, dict):
        raise RuleValidationError(rule_name, f"condition must be a mapping, got {type(data).__name__}")

    for key, (operator, negate) in _GROUP_SHORTHANDS.items():
        if key in data:
            children = data[key]
            if not isinstance(children, list):
                raise RuleValidationError(rule_name, f"'{key}' must be a list of conditions")
            return ConditionNode.group(
                operator,
                [parse_condition(child, rule_name, depth + 1) for child in children],
                negate=negate != _as_bool(data.get('negate', False)),
            )

    if 'conditions' in data:
        operator = str(data.get('operator', Operator.AND)).strip().upper()
        if operator not in LOGICAL_OPERATORS:
            raise OperatorError(operator, 'group')
        children = data['conditions']
        if not isinstance(children, list):
            raise RuleValidationError(rule_name, "'conditions' must be a list")
        return ConditionNode.group(
            operator,
            [parse_condition(child, rule_name, depth + 1) for child in children],
            negate=_as_bool(data.get('negate', False)),
        )

    return _parse_leaf(data, rule_name)


def _parse_leaf(data: Dict[str, Any], rule_name: str) -> ConditionNode:
    field = str(data.get('field', '')).strip().upper()
    if not field:
        raise RuleValidationError(rule_name, "condition leaf requires 'field'")
    if field not in ALL_FIELDS:
        raise FieldError(field, f"Unknown field in rule '{rule_name}'")

    raw_operator = str(data.get('operator', '')).strip()
    operator = OPERATOR_ALIASES.get(raw_operator, raw_operator.upper())
    if operator not in LEAF_OPERATORS:
        raise OperatorError(raw_operator, field)

    if operator in _CATEGORY_OPERATORS and field != Field.NAME:
        raise RuleValidationError(rule_name, f"{operator} is only supported on NAME, not {field}")
    if operator in PERCENT_OPERATORS and field not in _PERCENT_FIELDS:
        raise RuleValidationError(rule_name, f"{operator} is only supported on same-content counts, not {field}")

    node = ConditionNode.leaf(
        field,
        operator,
        data.get('value', ''),
        min_value=_as_optional_float(data.get('min_value'), rule_name, 'min_value'),
        max_value=_as_optional_float(data.get('max_value'), rule_name, 'max_value'),
        negate=_as_bool(data.get('negate', False)),
        regex=_as_bool(data.get('regex', False)),
        include_cross_seeds=_as_bool(data.get('include_cross_seeds', False)),
        group_id=str(data.get('group_id') or '').strip(),
    )

    if operator == Operator.BETWEEN and (node.min_value is None or node.max_value is None):
        raise RuleValidationError(rule_name, f"BETWEEN on {field} requires min_value and max_value")

    if node.uses_regex and operator not in _CATEGORY_OPERATORS:
        try:
            node.compiled_pattern()
        except re.error as e:
            logger.warning(f"Rule '{rule_name}': invalid regex '{node.value}' on {field} never matches ({e})")

    return node


def _iter_leaves(node: Optional[ConditionNode]):
    if node is None:
        return
    if node.is_group:
        for child in node.children:
            yield from _iter_leaves(child)
    else:
        yield node


# ----------------------------------------------------------------------
# Actions
# ----------------------------------------------------------------------

def _parse_action(name: str, raw: Any, rule_name: str) -> Optional[ActionConfig]:
    if raw is None or raw is False:
        return None
    if raw is True:
        raw = {}
    if not isinstance(raw, dict):
        raise RuleValidationError(rule_name, f"action '{name}' must be true or a mapping")

    common = {
        'enabled': _as_bool(raw.get('enabled', True)),
        'condition': parse_condition(raw.get('condition'), rule_name),
    }

    if name == ActionName.SPEED_LIMITS:
        action = SpeedLimitsAction(
            upload_kib=_as_optional_int(raw.get('upload_kib'), rule_name, 'upload_kib'),
            download_kib=_as_optional_int(raw.get('download_kib'), rule_name, 'download_kib'),
            **common,
        )
        if action.upload_kib is None and action.download_kib is None:
            raise RuleValidationError(rule_name, "speed_limits requires upload_kib or download_kib")
        return action

    if name == ActionName.SHARE_LIMITS:
        action = ShareLimitsAction(
            ratio_limit=_as_optional_float(raw.get('ratio_limit'), rule_name, 'ratio_limit'),
            seeding_time_minutes=_as_optional_int(
                raw.get('seeding_time_minutes'), rule_name, 'seeding_time_minutes'
            ),
            **common,
        )
        if action.ratio_limit is None and action.seeding_time_minutes is None:
            raise RuleValidationError(rule_name, "share_limits requires ratio_limit or seeding_time_minutes")
        return action

    if name in (ActionName.PAUSE, ActionName.RESUME, ActionName.RECHECK, ActionName.REANNOUNCE):
        return ActionConfig(**common)

    if name == ActionName.TAG:
        mode = str(raw.get('mode', TagMode.FULL)).strip().lower()
        if mode not in TagMode.ALL:
            raise RuleValidationError(rule_name, f"tag mode must be one of {', '.join(TagMode.ALL)}")
        action = TagAction(
            tags=_as_list(raw.get('tags')),
            mode=mode,
            use_tracker_as_tag=_as_bool(raw.get('use_tracker_as_tag', False)),
            use_display_name=_as_bool(raw.get('use_display_name', False)),
            **common,
        )
        if not action.tags and not action.use_tracker_as_tag:
            raise RuleValidationError(rule_name, "tag action requires 'tags' or 'use_tracker_as_tag'")
        return action

    if name == ActionName.CATEGORY:
        if 'category' not in raw:
            raise RuleValidationError(rule_name, "category action requires 'category'")
        return CategoryAction(
            category=str(raw.get('category') or ''),
            include_cross_seeds=_as_bool(raw.get('include_cross_seeds', False)),
            block_if_cross_seed_in_categories=_as_list(raw.get('block_if_cross_seed_in_categories')),
            group_id=str(raw.get('group_id') or '').strip(),
            **common,
        )

    if name == ActionName.MOVE:
        path = str(raw.get('path') or '').strip()
        if not path:
            raise RuleValidationError(rule_name, "move action requires 'path'")
        return MoveAction(
            path=path,
            include_cross_seeds=_as_bool(raw.get('include_cross_seeds', False)),
            group_id=str(raw.get('group_id') or '').strip(),
            **common,
        )

    if name == ActionName.DELETE:
        mode = str(raw.get('mode') or DeleteMode.KEEP_FILES).strip()
        if mode not in DeleteMode.ALL:
            raise RuleValidationError(rule_name, f"delete mode must be one of {', '.join(DeleteMode.ALL)}")
        return DeleteAction(
            mode=mode,
            include_hardlinks=_as_bool(raw.get('include_hardlinks', False)),
            group_id=str(raw.get('group_id') or '').strip(),
            **common,
        )

    if name == ActionName.EXTERNAL_PROGRAM:
        program_id = str(raw.get('program_id') or '').strip()
        if not program_id:
            raise RuleValidationError(rule_name, "external_program action requires 'program_id'")
        return ExternalProgramAction(program_id=program_id, **common)

    raise RuleValidationError(rule_name, f"unknown action '{name}'")


def _parse_actions(raw: Any, rule_name: str) -> RuleActions:
    if raw is None:
        return RuleActions()
    if not isinstance(raw, dict):
        raise RuleValidationError(rule_name, "'actions' must be a mapping of action name to settings")

    actions = RuleActions()
    for name, value in raw.items():
        key = str(name).strip().lower()
        if key not in ActionName.ALL:
            raise RuleValidationError(
                rule_name, f"unknown action '{name}' (expected one of {', '.join(ActionName.ALL)})"
            )
        setattr(actions, key, _parse_action(key, value, rule_name))
    return actions


# ----------------------------------------------------------------------
# Grouping and free space
# ----------------------------------------------------------------------

def _parse_grouping(raw: Any, rule_name: str) -> Optional[GroupingConfig]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise RuleValidationError(rule_name, "'grouping' must be a mapping")

    groups = []
    for i, group in enumerate(raw.get('groups') or []):
        if not isinstance(group, dict) or not group.get('id'):
            raise RuleValidationError(rule_name, f"grouping group #{i+1} requires 'id'")
        keys = _as_list(group.get('keys'))
        if not keys:
            raise RuleValidationError(rule_name, f"group '{group['id']}' requires at least one key")
        unknown = [k for k in keys if k not in GROUP_KEYS]
        if unknown:
            raise RuleValidationError(
                rule_name, f"group '{group['id']}' has unknown keys: {', '.join(unknown)}"
            )
        policy = str(group.get('ambiguous_policy') or '').strip().lower()
        if policy and policy not in (AmbiguousPolicy.VERIFY_OVERLAP, AmbiguousPolicy.SKIP):
            raise RuleValidationError(
                rule_name, f"group '{group['id']}' ambiguous_policy must be verify_overlap or skip"
            )
        overlap = _as_optional_float(group.get('min_file_overlap_percent'), rule_name, 'min_file_overlap_percent')
        groups.append(GroupDefinition(
            id=str(group['id']).strip(),
            keys=keys,
            ambiguous_policy=policy,
            min_file_overlap_percent=overlap if overlap is not None else DEFAULT_MIN_FILE_OVERLAP_PERCENT,
        ))

    return GroupingConfig(
        default_group_id=str(raw.get('default_group_id') or '').strip(),
        groups=groups,
    )


def _parse_free_space_source(raw: Any, rule_name: str) -> Optional[FreeSpaceSource]:
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = {'type': raw}
    if not isinstance(raw, dict):
        raise RuleValidationError(rule_name, "'free_space_source' must be a mapping")

    source_type = str(raw.get('type') or FreeSpaceSourceType.QBITTORRENT).strip().lower()
    if source_type not in (FreeSpaceSourceType.QBITTORRENT, FreeSpaceSourceType.PATH):
        raise RuleValidationError(rule_name, f"unsupported free_space_source type '{source_type}'")
    path = str(raw.get('path') or '').strip()
    if source_type == FreeSpaceSourceType.PATH and not path:
        raise RuleValidationError(rule_name, "free_space_source of type 'path' requires 'path'")
    return FreeSpaceSource(type=source_type, path=path)


def _validate_group_references(rule: Rule):
    references = []
    if rule.grouping is not None and rule.grouping.default_group_id:
        references.append(rule.grouping.default_group_id)
    for _, action in rule.actions.enabled():
        if getattr(action, 'group_id', ''):
            references.append(action.group_id)
        for leaf in _iter_leaves(action.condition):
            if leaf.group_id:
                references.append(leaf.group_id)

    for group_id in references:
        if find_group_definition(rule, group_id) is None:
            raise RuleValidationError(rule.name, f"unknown group_id '{group_id}'")


def parse_rule(data: Dict[str, Any], index: int = 0) -> Rule:
    """
    Parse one rule document

    Args:
        data: Rule mapping from rules.yml
        index: Position in the rules list; id defaults to index + 1

    Returns:
        Validated Rule
    """
    if not isinstance(data, dict):
        raise RuleValidationError(f"#{index + 1}", "rule must be a mapping")

    try:
        rule_id = int(data.get('id', index + 1))
    except (TypeError, ValueError):
        raise RuleValidationError(f"#{index + 1}", f"'id' must be an integer, got {data.get('id')!r}")
    name = str(data.get('name') or f"Rule {rule_id}")

    interval = parse_duration(data.get('interval'), 0)
    instances = _as_list(data.get('instances'))

    rule = Rule(
        id=rule_id,
        name=name,
        enabled=_as_bool(data.get('enabled', True)),
        tracker_pattern=str(data.get('tracker_pattern') or '*').strip(),
        instances=instances,
        dry_run=_as_bool(data.get('dry_run', False)),
        interval_seconds=interval or None,
        free_space_source=_parse_free_space_source(data.get('free_space_source'), name),
        grouping=_parse_grouping(data.get('grouping'), name),
        actions=_parse_actions(data.get('actions'), name),
    )
    _validate_group_references(rule)
    return rule


class RuleStore:
    """Validated rules in priority order (later rules win ties)"""

    def __init__(self, rules: List[Rule]):
        seen = {}
        for rule in rules:
            if rule.id in seen:
                raise RuleValidationError(rule.name, f"duplicate rule id {rule.id} (also used by '{seen[rule.id]}')")
            seen[rule.id] = rule.name
        self._rules = list(rules)

    @classmethod
    def from_documents(cls, documents: List[Dict[str, Any]]) -> 'RuleStore':
        store = cls([parse_rule(doc, i) for i, doc in enumerate(documents or [])])
        logger.debug(f"Loaded {len(store._rules)} rules ({len(store.list_enabled())} enabled)")
        return store

    @classmethod
    def from_config(cls, config) -> 'RuleStore':
        return cls.from_documents(config.get_rules())

    def all(self) -> List[Rule]:
        return list(self._rules)

    def list_enabled(self, instance: Optional[str] = None) -> List[Rule]:
        """Enabled rules, restricted to those applying to an instance when given"""
        return [
            rule for rule in self._rules
            if rule.enabled and (instance is None or rule.applies_to(instance))
        ]

    def get(self, id_or_name: Union[int, str]) -> Optional[Rule]:
        """Look up a rule by id, or by name (case-insensitive)"""
        text = str(id_or_name).strip()
        for rule in self._rules:
            if str(rule.id) == text:
                return rule
        for rule in self._rules:
            if rule.name.lower() == text.lower():
                return rule
        return None
