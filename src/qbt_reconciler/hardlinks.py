"""
Hardlink index

Inspects the files of every torrent on the local filesystem and records,
per torrent, whether its files are hardlinked and whether links exist
outside the torrent set. Torrents whose file sets are linked to each other
share a signature and form a hardlink group.

Requires the instance's local filesystem access; the data is cached per
instance for a short TTL since stat-ing every file is expensive.
"""

import hashlib
import os
import stat
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from qbt_reconciler.logging import get_logger
from qbt_reconciler.models import HardlinkScope, TorrentSnapshot

logger = get_logger(__name__)

HARDLINK_INDEX_TTL = 120

FileId = Tuple[int, int]


@dataclass
class HardlinkIndex:
    scope_by_hash: Dict[str, str] = field(default_factory=dict)
    signature_by_hash: Dict[str, str] = field(default_factory=dict)
    group_by_signature: Dict[str, List[str]] = field(default_factory=dict)
    digest: str = ''
    built_at: float = 0.0

    def get_scope(self, torrent_hash: str) -> str:
        """Hardlink scope, or '' when unknown (files inaccessible or not inspected)"""
        return self.scope_by_hash.get(torrent_hash, '')

    def get_hardlink_copies(self, torrent_hash: str) -> List[str]:
        """Other torrents sharing the same physical files"""
        signature = self.signature_by_hash.get(torrent_hash)
        if not signature:
            return []
        return [h for h in self.group_by_signature.get(signature, []) if h != torrent_hash]

    def groups_by_hash(self) -> Dict[str, List[str]]:
        """hash -> every member of its hardlink group"""
        result = {}
        for members in self.group_by_signature.values():
            for h in members:
                result[h] = members
        return result


def is_path_inside_base(base_path: str, full_path: str) -> bool:
    """
    Check that a file path does not escape its torrent's save path

    Examples:
        >>> is_path_inside_base('/data', '/data/movie/file.mkv')
        True
        >>> is_path_inside_base('/data', '/data/../etc/passwd')
        False
    """
    clean_base = os.path.normpath(base_path)
    clean_full = os.path.normpath(full_path)
    try:
        rel = os.path.relpath(clean_full, clean_base)
    except ValueError:
        return False
    return not (rel == '..' or rel.startswith('..' + os.sep))


def compute_signature(file_ids: List[FileId]) -> str:
    """sha256 over the sorted (device, inode) pairs"""
    if not file_ids:
        return ''
    digest = hashlib.sha256()
    for dev, ino in sorted(file_ids):
        digest.update(f"{dev}:{ino}\n".encode())
    return digest.hexdigest()


def compute_torrent_set_digest(torrents: List[TorrentSnapshot]) -> str:
    """Short digest of (hash, save path) pairs; changes when torrents come or go or move"""
    digest = hashlib.sha256()
    for torrent in sorted(torrents, key=lambda t: t.hash):
        digest.update(f"{torrent.hash}\0{torrent.save_path}\0".encode())
    return digest.hexdigest()[:16]


def build_hardlink_index(torrents: List[TorrentSnapshot], files_by_hash: Dict[str, List[Dict]]) -> HardlinkIndex:
    """
    Build the index from file lists

    Args:
        torrents: Torrents of the instance
        files_by_hash: torrents/files results keyed by hash

    Returns:
        HardlinkIndex; torrents with any inaccessible file are left out
    """
    index = HardlinkIndex(digest=compute_torrent_set_digest(torrents))
    by_hash = {t.hash: t for t in torrents}

    # file id -> nlink, and the unique paths pointing at it
    nlinks: Dict[FileId, int] = {}
    paths_by_id: Dict[FileId, set] = defaultdict(set)

    file_ids_by_hash: Dict[str, List[FileId]] = {}
    has_links_by_hash: Dict[str, bool] = {}
    invalid_paths = 0
    inaccessible = 0

    for torrent_hash, files in files_by_hash.items():
        torrent = by_hash.get(torrent_hash)
        if torrent is None or not torrent.save_path:
            continue

        file_ids: List[FileId] = []
        accessible = True
        has_links = False

        for f in files or []:
            full_path = os.path.join(torrent.save_path, str(f.get('name', '')))
            if not is_path_inside_base(torrent.save_path, full_path):
                invalid_paths += 1
                accessible = False
                continue

            try:
                st = os.lstat(full_path)
            except OSError:
                accessible = False
                continue
            if not stat.S_ISREG(st.st_mode):
                continue

            file_id = (st.st_dev, st.st_ino)
            file_ids.append(file_id)
            if st.st_nlink > 1:
                has_links = True
                nlinks[file_id] = st.st_nlink
                paths_by_id[file_id].add(os.path.normpath(full_path))

        if not accessible or not file_ids:
            inaccessible += 1
            continue
        file_ids_by_hash[torrent_hash] = file_ids
        has_links_by_hash[torrent_hash] = has_links

    outside = 0
    for torrent_hash, file_ids in file_ids_by_hash.items():
        scope = HardlinkScope.NONE
        for file_id in file_ids:
            nlink = nlinks.get(file_id, 1)
            if nlink <= 1:
                continue
            if nlink > len(paths_by_id[file_id]):
                scope = HardlinkScope.OUTSIDE_QBITTORRENT
                break
            scope = HardlinkScope.TORRENTS_ONLY
        index.scope_by_hash[torrent_hash] = scope

        if not has_links_by_hash[torrent_hash]:
            continue
        if scope == HardlinkScope.OUTSIDE_QBITTORRENT:
            outside += 1
            continue

        signature = compute_signature(file_ids)
        index.signature_by_hash[torrent_hash] = signature
        index.group_by_signature.setdefault(signature, []).append(torrent_hash)

    for signature in list(index.group_by_signature):
        members = index.group_by_signature[signature]
        if len(members) < 2:
            del index.group_by_signature[signature]
            index.signature_by_hash.pop(members[0], None)
        else:
            members.sort()

    index.built_at = time.time()
    logger.debug(
        f"Hardlink index built: {len(index.scope_by_hash)} scoped, "
        f"{len(index.group_by_signature)} groups, {outside} with outside links, "
        f"{inaccessible} inaccessible, {invalid_paths} invalid paths"
    )
    return index


class HardlinkIndexCache:
    """Per-instance index cache, valid while the torrent set is unchanged and within the TTL"""

    def __init__(self, ttl: int = HARDLINK_INDEX_TTL):
        self.ttl = ttl
        self._indices: Dict[str, HardlinkIndex] = {}
        self._lock = threading.Lock()

    def get(self, instance: str, torrents: List[TorrentSnapshot],
            fetch_files: Callable[[List[str]], Dict[str, List[Dict]]]) -> Optional[HardlinkIndex]:
        """
        Return a cached index or build a new one

        Args:
            instance: Instance name
            torrents: Current torrents of the instance
            fetch_files: Callable returning file lists for a list of hashes

        Returns:
            HardlinkIndex, or None when the file lists cannot be fetched
        """
        digest = compute_torrent_set_digest(torrents)
        with self._lock:
            cached = self._indices.get(instance)
            if cached and cached.digest == digest and time.time() - cached.built_at < self.ttl:
                return cached

        try:
            files_by_hash = fetch_files([t.hash for t in torrents])
        except Exception as e:
            logger.warning(f"Failed to fetch file lists for hardlink index on '{instance}': {e}")
            return None

        index = build_hardlink_index(torrents, files_by_hash or {})
        with self._lock:
            self._indices[instance] = index
        return index

    def invalidate(self, instance: Optional[str] = None):
        with self._lock:
            if instance is None:
                self._indices.clear()
            else:
                self._indices.pop(instance, None)
