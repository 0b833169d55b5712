"""
Per-run evaluation context

Holds the cross-torrent facts a single-torrent evaluation cannot compute on
its own. A context is built fresh for each run of one instance and passed
explicitly to every evaluation and grouping call.
"""

import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from qbt_reconciler.models import TorrentSnapshot
from qbt_reconciler.utils import content_basename, normalize_name, normalize_path


@dataclass
class CategoryEntry:
    hash: str
    name: str
    normalized_name: str


@dataclass
class FreeSpaceState:
    """Running total of bytes a rule's deletions would free during one run"""
    space_to_clear: int = 0
    counted_keys: Set[str] = field(default_factory=set)


@dataclass
class EvaluationContext:
    instance: str = ''

    # Tracker health; None means health is not known yet
    unregistered: Optional[Set[str]] = None
    tracker_down: Optional[Set[str]] = None

    # Hardlinks
    has_local_access: bool = False
    hardlink_scopes: Dict[str, str] = field(default_factory=dict)
    hardlink_signatures: Dict[str, str] = field(default_factory=dict)
    hardlink_groups: Dict[str, List[str]] = field(default_factory=dict)

    # Category lookups: category key -> lower name -> hashes, and category key -> entries
    category_index: Dict[str, Dict[str, Set[str]]] = field(default_factory=dict)
    category_names: Dict[str, List[CategoryEntry]] = field(default_factory=dict)

    # Content groups: hash -> every hash sharing the content path (or basename), 2+ only
    content_groups: Dict[str, List[str]] = field(default_factory=dict)
    basename_groups: Dict[str, List[str]] = field(default_factory=dict)

    torrents: List[TorrentSnapshot] = field(default_factory=list)
    torrents_by_hash: Dict[str, TorrentSnapshot] = field(default_factory=dict)

    # Grouping: (rule id, lower group id) -> GroupIndex
    group_index_cache: Dict[Tuple[int, str], object] = field(default_factory=dict)
    active_rule_id: Optional[int] = None
    active_group_index: Optional[object] = None

    # Free space: source key -> bytes, rule key -> projector state
    free_space_readings: Dict[str, int] = field(default_factory=dict)
    free_space_states: Dict[str, FreeSpaceState] = field(default_factory=dict)
    active_free_space_key: str = ''

    now_unix: Optional[float] = None

    tracker_domains: Dict[str, List[str]] = field(default_factory=dict)
    display_names: Dict[str, str] = field(default_factory=dict)

    # File manifests for overlap checks, fetched lazily: hashes -> {hash: [file dicts]}
    files_fetcher: Optional[Callable[[List[str]], Dict[str, List[Dict]]]] = None
    file_manifests: Dict[str, List[Tuple[str, int]]] = field(default_factory=dict)

    def now(self) -> float:
        return self.now_unix if self.now_unix else time.time()

    def is_unregistered(self, torrent_hash: str) -> bool:
        return self.unregistered is not None and torrent_hash in self.unregistered

    def primary_domain(self, torrent_hash: str) -> str:
        domains = self.tracker_domains.get(torrent_hash) or []
        return domains[0] if domains else ''

    def free_space(self) -> Optional[int]:
        """Reported free space of the active source plus bytes projected this run"""
        if not self.active_free_space_key:
            return None
        source_key = self.active_free_space_key.split('|rule:', 1)[0]
        if source_key not in self.free_space_readings:
            return None
        state = self.free_space_states.get(self.active_free_space_key)
        projected = state.space_to_clear if state else 0
        return self.free_space_readings[source_key] + projected


def build_category_index(torrents: List[TorrentSnapshot]) -> Tuple[Dict[str, Dict[str, Set[str]]], Dict[str, List[CategoryEntry]]]:
    """
    Build the EXISTS_IN and CONTAINS_IN lookup tables

    The empty category key holds uncategorized torrents.

    Returns:
        (category -> lower name -> hashes, category -> entries)
    """
    index: Dict[str, Dict[str, Set[str]]] = defaultdict(lambda: defaultdict(set))
    names: Dict[str, List[CategoryEntry]] = defaultdict(list)

    for torrent in torrents:
        key = torrent.category.strip().lower()
        name_lower = torrent.name.lower()
        index[key][name_lower].add(torrent.hash)
        names[key].append(CategoryEntry(torrent.hash, name_lower, normalize_name(torrent.name)))

    return {k: dict(v) for k, v in index.items()}, dict(names)


def _groups_by(torrents: List[TorrentSnapshot], key_func) -> Dict[str, List[str]]:
    buckets: Dict[str, List[str]] = defaultdict(list)
    for torrent in torrents:
        key = key_func(torrent)
        if key:
            buckets[key].append(torrent.hash)

    result: Dict[str, List[str]] = {}
    for hashes in buckets.values():
        if len(hashes) < 2:
            continue
        members = sorted(hashes)
        for h in members:
            result[h] = members
    return result


def build_content_group_index(torrents: List[TorrentSnapshot]) -> Dict[str, List[str]]:
    """Map each hash to all hashes sharing its normalized content path (groups of 2+)"""
    return _groups_by(torrents, lambda t: normalize_path(t.content_path))


def build_basename_group_index(torrents: List[TorrentSnapshot]) -> Dict[str, List[str]]:
    """
    Map each hash to all hashes sharing its content basename (groups of 2+)

    Groups "D:\\Movies\\Some.Movie" with "/data/Some.Movie".
    """
    return _groups_by(torrents, lambda t: content_basename(t.content_path))


def cross_seed_key(torrent: TorrentSnapshot) -> Optional[Tuple[str, str]]:
    """(content path, save path) identity of the data a torrent points at"""
    content = normalize_path(torrent.content_path)
    if not content:
        return None
    return content, normalize_path(torrent.save_path)


def build_cross_seed_index(torrents: List[TorrentSnapshot]) -> Dict[Tuple[str, str], List[TorrentSnapshot]]:
    index: Dict[Tuple[str, str], List[TorrentSnapshot]] = defaultdict(list)
    for torrent in torrents:
        key = cross_seed_key(torrent)
        if key is not None:
            index[key].append(torrent)
    return dict(index)
