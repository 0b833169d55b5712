"""
Grouping index

Builds equivalence classes of torrents (cross-seeds, releases, hardlink
copies) from configurable key components, and decides whether an ambiguous
class can safely be expanded by comparing file manifests.
"""

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from qbt_reconciler.context import EvaluationContext
from qbt_reconciler.errors import ResourceStateError
from qbt_reconciler.evaluator import collect_group_ids
from qbt_reconciler.logging import get_logger
from qbt_reconciler.models import (
    DEFAULT_MIN_FILE_OVERLAP_PERCENT, AmbiguousPolicy, GroupDefinition, GroupId, Rule, TorrentSnapshot,
)
from qbt_reconciler.release import parse_release
from qbt_reconciler.utils import normalize_path

logger = get_logger(__name__)


class GroupKey:
    CONTENT_PATH = 'contentPath'
    SAVE_PATH = 'savePath'
    EFFECTIVE_NAME = 'effectiveName'
    CONTENT_TYPE = 'contentType'
    TRACKER = 'tracker'
    RLS_SOURCE = 'rlsSource'
    RLS_RESOLUTION = 'rlsResolution'
    RLS_CODEC = 'rlsCodec'
    RLS_HDR = 'rlsHDR'
    RLS_AUDIO = 'rlsAudio'
    RLS_CHANNELS = 'rlsChannels'
    RLS_GROUP = 'rlsGroup'
    HARDLINK_SIGNATURE = 'hardlinkSignature'


GROUP_KEYS = frozenset(v for k, v in vars(GroupKey).items() if not k.startswith('_'))

# Release attribute read for each rls* key
_RELEASE_ATTRIBUTES = {
    GroupKey.EFFECTIVE_NAME: 'effective_name',
    GroupKey.CONTENT_TYPE: 'content_type',
    GroupKey.RLS_SOURCE: 'source',
    GroupKey.RLS_RESOLUTION: 'resolution',
    GroupKey.RLS_CODEC: 'codec',
    GroupKey.RLS_HDR: 'hdr',
    GroupKey.RLS_AUDIO: 'audio',
    GroupKey.RLS_CHANNELS: 'channels',
    GroupKey.RLS_GROUP: 'group',
}

BUILTIN_GROUPS = {
    GroupId.CROSS_SEED_CONTENT_PATH: GroupDefinition(
        id=GroupId.CROSS_SEED_CONTENT_PATH,
        keys=[GroupKey.CONTENT_PATH],
        ambiguous_policy=AmbiguousPolicy.VERIFY_OVERLAP,
        min_file_overlap_percent=DEFAULT_MIN_FILE_OVERLAP_PERCENT,
    ),
    GroupId.CROSS_SEED_CONTENT_SAVE_PATH: GroupDefinition(
        id=GroupId.CROSS_SEED_CONTENT_SAVE_PATH,
        keys=[GroupKey.CONTENT_PATH, GroupKey.SAVE_PATH],
        ambiguous_policy=AmbiguousPolicy.VERIFY_OVERLAP,
        min_file_overlap_percent=DEFAULT_MIN_FILE_OVERLAP_PERCENT,
    ),
    GroupId.RELEASE_ITEM: GroupDefinition(
        id=GroupId.RELEASE_ITEM,
        keys=[GroupKey.CONTENT_TYPE, GroupKey.EFFECTIVE_NAME],
    ),
    GroupId.TRACKER_RELEASE_ITEM: GroupDefinition(
        id=GroupId.TRACKER_RELEASE_ITEM,
        keys=[GroupKey.TRACKER, GroupKey.CONTENT_TYPE, GroupKey.EFFECTIVE_NAME],
    ),
    GroupId.HARDLINK_SIGNATURE: GroupDefinition(
        id=GroupId.HARDLINK_SIGNATURE,
        keys=[GroupKey.HARDLINK_SIGNATURE],
    ),
}


@dataclass
class GroupIndex:
    group_id: str
    definition: GroupDefinition
    key_by_hash: Dict[str, str] = field(default_factory=dict)
    members_by_key: Dict[str, List[str]] = field(default_factory=dict)
    size_by_hash: Dict[str, int] = field(default_factory=dict)
    ambiguous_keys: Set[str] = field(default_factory=set)

    def key_for(self, torrent_hash: str) -> str:
        return self.key_by_hash.get(torrent_hash, '')

    def members_for(self, torrent_hash: str) -> List[str]:
        key = self.key_for(torrent_hash)
        return self.members_by_key.get(key, []) if key else []

    def size_for(self, torrent_hash: str) -> int:
        return self.size_by_hash.get(torrent_hash, 0)

    def is_ambiguous_for(self, torrent_hash: str) -> bool:
        key = self.key_for(torrent_hash)
        return bool(key) and key in self.ambiguous_keys


def find_group_definition(rule: Optional[Rule], group_id: str) -> Optional[GroupDefinition]:
    """
    Look up a group definition, rule-defined first, then built-in

    Ids compare case-insensitively.
    """
    wanted = (group_id or '').strip().lower()
    if not wanted:
        return None
    if rule is not None and rule.grouping is not None:
        for definition in rule.grouping.groups:
            if definition.id.strip().lower() == wanted:
                return definition
    return BUILTIN_GROUPS.get(wanted)


def _key_part(key: str, torrent: TorrentSnapshot, ctx: EvaluationContext) -> str:
    if key == GroupKey.CONTENT_PATH:
        return normalize_path(torrent.content_path)
    if key == GroupKey.SAVE_PATH:
        return normalize_path(torrent.save_path)
    if key == GroupKey.TRACKER:
        return ctx.primary_domain(torrent.hash).lower()
    if key == GroupKey.HARDLINK_SIGNATURE:
        return (ctx.hardlink_signatures.get(torrent.hash) or '').strip()
    if key in _RELEASE_ATTRIBUTES:
        value = getattr(parse_release(torrent.name), _RELEASE_ATTRIBUTES[key])
        return value.strip().lower()
    return ''


def build_group_key(keys: List[str], torrent: TorrentSnapshot, ctx: EvaluationContext) -> Optional[str]:
    """
    Build a torrent's group key

    Returns:
        The key components joined by '|', or None when any component is empty
    """
    if not keys:
        return None
    parts = []
    for key in keys:
        part = _key_part(key, torrent, ctx)
        if not part:
            return None
        parts.append(part)
    return '|'.join(parts)


def build_group_index(definition: GroupDefinition, torrents: List[TorrentSnapshot],
                      ctx: EvaluationContext) -> GroupIndex:
    """
    Build the index for one group definition

    A key is flagged ambiguous when it includes the content path and a
    member's content path equals its save path (files dropped straight into
    a shared download directory).
    """
    index = GroupIndex(group_id=definition.id, definition=definition)
    uses_content_path = GroupKey.CONTENT_PATH in definition.keys
    members: Dict[str, List[str]] = defaultdict(list)

    for torrent in torrents:
        key = build_group_key(definition.keys, torrent, ctx)
        if not key:
            continue
        index.key_by_hash[torrent.hash] = key
        members[key].append(torrent.hash)
        if uses_content_path and normalize_path(torrent.content_path) == normalize_path(torrent.save_path):
            index.ambiguous_keys.add(key)

    for key, hashes in members.items():
        hashes.sort()
        index.members_by_key[key] = hashes
        for h in hashes:
            index.size_by_hash[h] = len(hashes)

    logger.debug(
        f"Built group index '{definition.id}': {len(index.key_by_hash)} torrents, "
        f"{len(index.members_by_key)} keys, {len(index.ambiguous_keys)} ambiguous"
    )
    return index


def get_or_build_group_index(ctx: EvaluationContext, rule: Rule, group_id: str) -> Optional[GroupIndex]:
    """Group index for (rule, group id), built once per run"""
    wanted = (group_id or '').strip().lower()
    if not wanted:
        return None
    cache_key = (rule.id, wanted)
    if cache_key in ctx.group_index_cache:
        return ctx.group_index_cache[cache_key]

    definition = find_group_definition(rule, wanted)
    if definition is None:
        logger.warning(f"Rule '{rule.name}' references unknown group '{group_id}'")
        return None

    index = build_group_index(definition, ctx.torrents, ctx)
    ctx.group_index_cache[cache_key] = index
    return index


def activate_rule_grouping(ctx: EvaluationContext, rule: Rule):
    """
    Make a rule's grouping the active one for GROUP_SIZE/IS_GROUPED leaves

    Builds every group the rule's conditions reference. Leaves without a
    group id read the rule's default group, or cross_seed_content_save_path
    when the rule has none.
    """
    ctx.active_rule_id = rule.id
    ctx.active_group_index = None

    group_ids, unscoped = collect_group_ids([node for _, node in rule.condition_trees()])

    default_group_id = ''
    if rule.grouping is not None:
        default_group_id = rule.grouping.default_group_id.strip().lower()
    if not default_group_id and unscoped:
        default_group_id = GroupId.CROSS_SEED_CONTENT_SAVE_PATH

    for group_id in group_ids:
        get_or_build_group_index(ctx, rule, group_id)

    if default_group_id:
        ctx.active_group_index = get_or_build_group_index(ctx, rule, default_group_id)


# ----------------------------------------------------------------------
# Ambiguity resolution
# ----------------------------------------------------------------------

def load_manifests(ctx: EvaluationContext, hashes: List[str]) -> Dict[str, List[tuple]]:
    """
    File manifests as (normalized name, size) lists, fetched once per run

    Raises:
        ResourceStateError: If a manifest cannot be fetched or is empty
    """
    missing = [h for h in hashes if h not in ctx.file_manifests]
    if missing:
        if ctx.files_fetcher is None:
            raise ResourceStateError(missing[0], "file manifests unavailable")
        try:
            fetched = ctx.files_fetcher(missing) or {}
        except Exception as e:
            raise ResourceStateError(missing[0], f"failed to fetch files: {e}") from e
        for torrent_hash, files in fetched.items():
            ctx.file_manifests[torrent_hash] = [
                (normalize_path(str(f.get('name', ''))), int(f.get('size', 0) or 0)) for f in files
            ]

    result = {}
    for torrent_hash in hashes:
        manifest = ctx.file_manifests.get(torrent_hash)
        if not manifest:
            raise ResourceStateError(torrent_hash, "missing file manifest")
        result[torrent_hash] = manifest
    return result


def file_overlap_percent(files_a: List[tuple], files_b: List[tuple]) -> float:
    """
    Byte-weighted overlap of two manifests

    Shared bytes are summed over files matched by (normalized name, size)
    and divided by the smaller total.

    Raises:
        ValueError: If either manifest totals zero bytes
    """
    total_a = sum(size for _, size in files_a)
    total_b = sum(size for _, size in files_b)
    if total_a <= 0 or total_b <= 0:
        raise ValueError("manifest has zero total size")

    counts_a = Counter(files_a)
    counts_b = Counter(files_b)
    shared = sum(entry[1] * min(n, counts_b[entry]) for entry, n in counts_a.items() if entry in counts_b)
    return shared / min(total_a, total_b) * 100


def resolve_group_members(ctx: EvaluationContext, index: GroupIndex, trigger_hash: str) -> Optional[List[str]]:
    """
    Members a group-scoped action may expand to

    Non-ambiguous groups expand to every member. Ambiguous groups follow
    the definition's policy: "skip" never expands; "verify_overlap" expands
    only when every other member overlaps the trigger by at least
    min_file_overlap_percent.

    Returns:
        Sorted member hashes, or None when the whole group must be skipped
    """
    members = index.members_for(trigger_hash)
    if not members:
        return None
    if not index.is_ambiguous_for(trigger_hash):
        return members

    definition = index.definition
    policy = (definition.ambiguous_policy or AmbiguousPolicy.VERIFY_OVERLAP).lower()
    if policy == AmbiguousPolicy.SKIP:
        logger.debug(f"Group '{index.group_id}' for {trigger_hash} is ambiguous; policy is skip")
        return None

    threshold = definition.min_file_overlap_percent
    if threshold is None or threshold <= 0:
        threshold = DEFAULT_MIN_FILE_OVERLAP_PERCENT

    try:
        manifests = load_manifests(ctx, members)
        for other in members:
            if other == trigger_hash:
                continue
            overlap = file_overlap_percent(manifests[trigger_hash], manifests[other])
            if overlap < threshold:
                logger.info(
                    f"Skipping ambiguous group '{index.group_id}' for {trigger_hash}: "
                    f"overlap with {other} is {overlap:.1f}% (< {threshold}%)"
                )
                return None
    except ResourceStateError as e:
        logger.info(f"Skipping ambiguous group '{index.group_id}' for {trigger_hash}: {e.reason}")
        return None
    except ValueError as e:
        logger.info(f"Skipping ambiguous group '{index.group_id}' for {trigger_hash}: {e}")
        return None

    return members
