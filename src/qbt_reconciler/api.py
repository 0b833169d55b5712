"""
qBittorrent Web API client - qbittorrent-api wrapper

Wraps the qbittorrent-api package with the batch-oriented calls the
reconciliation engine needs (v4.1+ through v5.1+).
"""

import qbittorrentapi
from typing import List, Dict, Optional

from qbt_reconciler.errors import AuthenticationError, ConnectionError, APIError
from qbt_reconciler.logging import get_logger

logger = get_logger(__name__)

# torrents/setTags was added in Web API 2.11.4 (qBittorrent 5.1.0)
SET_TAGS_MIN_WEB_API = (2, 11, 4)


def _version_tuple(version: str) -> tuple:
    parts = []
    for part in str(version).lstrip('v').split('.'):
        digits = ''.join(ch for ch in part if ch.isdigit())
        parts.append(int(digits) if digits else 0)
    return tuple(parts)


class QBittorrentAPI:
    """
    qBittorrent Web API client wrapper

    Uses qbittorrent-api package for:
    - Multi-version support (v4.1+ through v5.1+)
    - Auto-managed authentication
    - Structured response types
    """

    def __init__(self, host: str, username: str, password: str, connect_now: bool = True,
                 request_timeout: Optional[float] = None):
        """
        Initialize API client and optionally authenticate

        Args:
            host: qBittorrent host URL (e.g., 'http://localhost:8080')
            username: qBittorrent username
            password: qBittorrent password
            connect_now: If True, authenticate immediately; if False, defer until first API call
            request_timeout: Seconds before a single HTTP request gives up (None waits forever)

        Raises:
            AuthenticationError: If login fails (only when connect_now=True)
            ConnectionError: If cannot reach server (only when connect_now=True)
        """
        self.host = host.rstrip('/')
        self.username = username
        self.password = password
        self._connected = False
        self._web_api_version: Optional[tuple] = None
        self.request_timeout = request_timeout

        self.client = qbittorrentapi.Client(
            host=self.host,
            username=self.username,
            password=self.password,
            REQUESTS_ARGS={'timeout': request_timeout} if request_timeout else {}
        )

        if connect_now:
            self._ensure_connected()

    def _ensure_connected(self):
        """
        Ensure we're connected to qBittorrent (lazy initialization support)

        Raises:
            AuthenticationError: If login fails
            ConnectionError: If cannot reach server
        """
        if self._connected:
            return

        try:
            self.client.auth_log_in()
            self._connected = True

            logger.info(f"Successfully authenticated with qBittorrent at {self.host}")
            logger.debug(f"qBittorrent version: {self.client.app_version()}")
            logger.debug(f"Web API version: {self.client.app_web_api_version()}")

        except qbittorrentapi.LoginFailed as e:
            raise AuthenticationError(self.host, str(e))
        except qbittorrentapi.APIConnectionError as e:
            raise ConnectionError(self.host, str(e))

    def web_api_version(self) -> tuple:
        """Web API version as an int tuple, cached after the first call"""
        if self._web_api_version is None:
            self._ensure_connected()
            self._web_api_version = _version_tuple(self.client.app_web_api_version())
        return self._web_api_version

    # Torrent Information Methods

    def get_torrents(self) -> List[Dict]:
        """
        Get every torrent of the instance

        Returns:
            List of torrent dictionaries
        """
        self._ensure_connected()
        torrents = self.client.torrents_info()
        return [dict(t) for t in torrents]

    def get_torrent_trackers(self, hashes: List[str]) -> Dict[str, List[Dict]]:
        """
        Get tracker lists for several torrents

        Torrents removed since the listing are left out.

        Returns:
            Tracker dictionaries keyed by hash
        """
        self._ensure_connected()
        result = {}
        for torrent_hash in hashes:
            try:
                trackers = self.client.torrents_trackers(torrent_hash=torrent_hash)
            except qbittorrentapi.NotFound404Error:
                logger.debug(f"Torrent {torrent_hash} disappeared before its trackers were read")
                continue
            result[torrent_hash] = [dict(t) for t in trackers]
        return result

    def get_files_batch(self, hashes: List[str]) -> Dict[str, List[Dict]]:
        """
        Get file lists for several torrents

        Returns:
            File dictionaries ('name' relative to the save path, 'size') keyed by hash
        """
        self._ensure_connected()
        result = {}
        for torrent_hash in hashes:
            try:
                files = self.client.torrents_files(torrent_hash=torrent_hash)
            except qbittorrentapi.NotFound404Error:
                logger.debug(f"Torrent {torrent_hash} disappeared before its files were read")
                continue
            result[torrent_hash] = [dict(f) for f in files]
        return result

    def get_free_space(self) -> int:
        """
        Get free disk space of the default save path

        Returns:
            Free bytes as reported in server_state.free_space_on_disk

        Raises:
            APIError: If the server state carries no reading
        """
        self._ensure_connected()
        maindata = self.client.sync_maindata()
        server_state = maindata.get('server_state') or {}
        free_space = server_state.get('free_space_on_disk')
        if free_space is None:
            raise APIError('sync/maindata', 200, 'server_state.free_space_on_disk missing')
        return int(free_space)

    # Torrent Control Methods

    def stop_torrents(self, hashes: List[str]) -> bool:
        """Stop torrents (pause before qBittorrent v5.0)"""
        self.client.torrents_pause(torrent_hashes=hashes)
        return True

    def start_torrents(self, hashes: List[str]) -> bool:
        """Start torrents (resume before qBittorrent v5.0)"""
        self.client.torrents_resume(torrent_hashes=hashes)
        return True

    def recheck_torrents(self, hashes: List[str]) -> bool:
        """Recheck torrents"""
        self.client.torrents_recheck(torrent_hashes=hashes)
        return True

    def reannounce_torrents(self, hashes: List[str]) -> bool:
        """Reannounce torrents to trackers"""
        self.client.torrents_reannounce(torrent_hashes=hashes)
        return True

    def delete_torrents(self, hashes: List[str], delete_files: bool) -> bool:
        """Delete torrents"""
        self.client.torrents_delete(delete_files=delete_files, torrent_hashes=hashes)
        return True

    # Category, Location and Tag Methods

    def set_category(self, hashes: List[str], category: str) -> bool:
        """Set category"""
        self.client.torrents_set_category(category=category, torrent_hashes=hashes)
        return True

    def set_location(self, hashes: List[str], location: str) -> bool:
        """Move torrent data to a new save path"""
        self.client.torrents_set_location(location=location, torrent_hashes=hashes)
        return True

    def set_tags(self, hashes: List[str], tags: List[str]) -> bool:
        """
        Replace the tag set of torrents

        Raises:
            APIError: If the client predates torrents/setTags (message
                      contains "requires qBittorrent")
        """
        if self.web_api_version() < SET_TAGS_MIN_WEB_API:
            raise APIError('torrents/setTags', 404, 'setTags requires qBittorrent 5.1.0 or newer')
        self.client.torrents_set_tags(tags=tags, torrent_hashes=hashes)
        return True

    def add_tags(self, hashes: List[str], tags: List[str]) -> bool:
        """Add tags"""
        self.client.torrents_add_tags(tags=tags, torrent_hashes=hashes)
        return True

    def remove_tags(self, hashes: List[str], tags: List[str]) -> bool:
        """Remove tags"""
        self.client.torrents_remove_tags(tags=tags, torrent_hashes=hashes)
        return True

    # Limit Methods

    def set_upload_limit(self, hashes: List[str], limit: int) -> bool:
        """Set upload limit (bytes/s, -1 for unlimited)"""
        self.client.torrents_set_upload_limit(limit=limit, torrent_hashes=hashes)
        return True

    def set_download_limit(self, hashes: List[str], limit: int) -> bool:
        """Set download limit (bytes/s, -1 for unlimited)"""
        self.client.torrents_set_download_limit(limit=limit, torrent_hashes=hashes)
        return True

    def set_share_limits(self, hashes: List[str], ratio_limit: float = -2,
                         seeding_time_limit: int = -2, inactive_seeding_time_limit: int = -1) -> bool:
        """
        Set share limits

        Args:
            hashes: List of torrent hashes
            ratio_limit: Max ratio (-2=global, -1=unlimited, >=0=limit)
            seeding_time_limit: Max seeding time in minutes (-2=global, -1=unlimited, >=0=limit)
            inactive_seeding_time_limit: Max inactive seeding minutes (-1=unlimited)
        """
        self.client.torrents_set_share_limits(
            ratio_limit=ratio_limit,
            seeding_time_limit=seeding_time_limit,
            inactive_seeding_time_limit=inactive_seeding_time_limit,
            torrent_hashes=hashes
        )
        return True
