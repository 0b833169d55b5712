"""Pytest configuration and shared fixtures for the qbt-reconciler test suite."""

import os
from collections import defaultdict
from typing import Any, Dict, List, Optional

import pytest
import yaml

from qbt_reconciler.activity import ActivityRecord, ActivityStore
from qbt_reconciler.config import Config
from qbt_reconciler.context import (
    EvaluationContext, build_basename_group_index, build_category_index, build_content_group_index,
)
from qbt_reconciler.errors import APIError
from qbt_reconciler.models import TorrentSnapshot
from qbt_reconciler.rules import parse_rule
from qbt_reconciler.trackers import collect_tracker_domains

GiB = 1024 ** 3
NOW = 1_700_000_000


@pytest.fixture(autouse=True)
def clean_environment_variables(monkeypatch):
    """Remove every environment variable the configuration layer reads."""
    for key in list(os.environ):
        if key.startswith('QBT_RECONCILER_'):
            monkeypatch.delenv(key, raising=False)
    for key in ('DRY_RUN', 'LOG_LEVEL', 'LOG_FILE', 'TRACE_MODE', 'CONFIG_DIR'):
        monkeypatch.delenv(key, raising=False)
    yield


# ============================================================================
# Mock QBittorrent API
# ============================================================================

class MockQBittorrentAPI:
    """Mock QBittorrentAPI client recording every mutating call."""

    def __init__(self):
        self.torrents_data: Dict[str, Dict[str, Any]] = {}
        self.trackers_data: Dict[str, List[Dict]] = {}
        self.files_data: Dict[str, List[Dict]] = {}
        self.free_space = 500 * GiB
        self.web_api = (2, 11, 4)

        # method name -> exception raised instead of running it
        self.fail: Dict[str, Exception] = {}

        # Track API calls for verification
        self.calls: Dict[str, List[Dict[str, Any]]] = defaultdict(list)

    def add_torrent(self, data: Dict[str, Any]):
        self.torrents_data[data['hash']] = dict(data)

    def _check(self, method: str):
        if method in self.fail:
            raise self.fail[method]

    def call_count(self) -> int:
        """Number of mutating calls made."""
        return sum(len(v) for k, v in self.calls.items() if not k.startswith('get_'))

    # Reads

    def get_torrents(self):
        self._check('get_torrents')
        return [dict(t) for t in self.torrents_data.values()]

    def get_torrent_trackers(self, hashes):
        self._check('get_torrent_trackers')
        return {h: list(self.trackers_data.get(h, [])) for h in hashes if h in self.torrents_data}

    def get_files_batch(self, hashes):
        self._check('get_files_batch')
        self.calls['get_files_batch'].append({'hashes': list(hashes)})
        return {h: list(self.files_data[h]) for h in hashes if h in self.files_data}

    def get_free_space(self):
        self._check('get_free_space')
        return self.free_space

    def web_api_version(self):
        return self.web_api

    # Actions

    def stop_torrents(self, hashes):
        self._check('stop_torrents')
        self.calls['stop_torrents'].append({'hashes': list(hashes)})
        for h in hashes:
            if h in self.torrents_data:
                self.torrents_data[h]['state'] = 'stoppedUP'
        return True

    def start_torrents(self, hashes):
        self._check('start_torrents')
        self.calls['start_torrents'].append({'hashes': list(hashes)})
        for h in hashes:
            if h in self.torrents_data:
                self.torrents_data[h]['state'] = 'uploading'
        return True

    def recheck_torrents(self, hashes):
        self._check('recheck_torrents')
        self.calls['recheck_torrents'].append({'hashes': list(hashes)})
        return True

    def reannounce_torrents(self, hashes):
        self._check('reannounce_torrents')
        self.calls['reannounce_torrents'].append({'hashes': list(hashes)})
        return True

    def delete_torrents(self, hashes, delete_files):
        self._check('delete_torrents')
        self.calls['delete_torrents'].append({'hashes': list(hashes), 'delete_files': delete_files})
        for h in hashes:
            self.torrents_data.pop(h, None)
        return True

    def set_category(self, hashes, category):
        self._check('set_category')
        self.calls['set_category'].append({'hashes': list(hashes), 'category': category})
        for h in hashes:
            if h in self.torrents_data:
                self.torrents_data[h]['category'] = category
        return True

    def set_location(self, hashes, location):
        self._check('set_location')
        self.calls['set_location'].append({'hashes': list(hashes), 'location': location})
        for h in hashes:
            if h in self.torrents_data:
                self.torrents_data[h]['save_path'] = location
        return True

    def set_tags(self, hashes, tags):
        self._check('set_tags')
        if self.web_api < (2, 11, 4):
            raise APIError('torrents/setTags', 404, 'setTags requires qBittorrent 5.1.0 or newer')
        self.calls['set_tags'].append({'hashes': list(hashes), 'tags': list(tags)})
        for h in hashes:
            if h in self.torrents_data:
                self.torrents_data[h]['tags'] = ', '.join(tags)
        return True

    def add_tags(self, hashes, tags):
        self._check('add_tags')
        self.calls['add_tags'].append({'hashes': list(hashes), 'tags': list(tags)})
        return True

    def remove_tags(self, hashes, tags):
        self._check('remove_tags')
        self.calls['remove_tags'].append({'hashes': list(hashes), 'tags': list(tags)})
        return True

    def set_upload_limit(self, hashes, limit):
        self._check('set_upload_limit')
        self.calls['set_upload_limit'].append({'hashes': list(hashes), 'limit': limit})
        for h in hashes:
            if h in self.torrents_data:
                self.torrents_data[h]['up_limit'] = limit
        return True

    def set_download_limit(self, hashes, limit):
        self._check('set_download_limit')
        self.calls['set_download_limit'].append({'hashes': list(hashes), 'limit': limit})
        for h in hashes:
            if h in self.torrents_data:
                self.torrents_data[h]['dl_limit'] = limit
        return True

    def set_share_limits(self, hashes, ratio_limit=-2, seeding_time_limit=-2, inactive_seeding_time_limit=-1):
        self._check('set_share_limits')
        self.calls['set_share_limits'].append({
            'hashes': list(hashes),
            'ratio_limit': ratio_limit,
            'seeding_time_limit': seeding_time_limit,
        })
        return True


@pytest.fixture
def mock_api():
    """Create a mock QBittorrentAPI instance."""
    return MockQBittorrentAPI()


# ============================================================================
# Activity store double
# ============================================================================

class RecordingActivityStore(ActivityStore):
    """In-memory activity store keeping records in creation order."""

    def __init__(self):
        self.records: List[ActivityRecord] = []
        self.pruned: List[int] = []

    def create(self, record: ActivityRecord) -> int:
        record.id = len(self.records) + 1
        self.records.append(record)
        return record.id

    def list(self, instance=None, limit=50, offset=0):
        records = [r for r in reversed(self.records) if instance is None or r.instance == instance]
        return records[offset:offset + limit]

    def get(self, activity_id):
        for record in self.records:
            if record.id == activity_id:
                return record
        return None

    def prune(self, retention_days):
        self.pruned.append(retention_days)
        return 0

    def health_check(self):
        return True

    def close(self):
        pass

    def actions(self, outcome: Optional[str] = None) -> List[str]:
        return [r.action for r in self.records if outcome is None or r.outcome == outcome]


@pytest.fixture
def activity_store():
    return RecordingActivityStore()


# ============================================================================
# Torrent Fixtures
# ============================================================================

def torrent_dict(torrent_hash: str, **overrides) -> Dict[str, Any]:
    """Torrent as returned by torrents/info: complete, seeding, 1 GiB."""
    name = overrides.pop('name', f"Torrent.{torrent_hash}.1080p")
    save_path = overrides.pop('save_path', '/downloads')
    data = {
        'hash': torrent_hash,
        'name': name,
        'size': GiB,
        'total_size': GiB,
        'progress': 1.0,
        'state': 'uploading',
        'category': '',
        'tags': '',
        'save_path': save_path,
        'content_path': f"{save_path}/{name}",
        'tracker': 'https://tracker.example.org/announce',
        'ratio': 1.0,
        'seeding_time': 3600,
        'added_on': NOW - 86400,
        'completion_on': NOW - 80000,
        'last_activity': NOW - 60,
        'downloaded': GiB,
        'uploaded': GiB,
        'up_limit': -1,
        'dl_limit': -1,
        'ratio_limit': -2,
        'seeding_time_limit': -2,
    }
    data.update(overrides)
    return data


@pytest.fixture
def make_torrent():
    """Factory for torrents/info dictionaries."""
    return torrent_dict


@pytest.fixture
def snapshot():
    """Factory for TorrentSnapshot objects."""
    def factory(torrent_hash: str, **overrides) -> TorrentSnapshot:
        return TorrentSnapshot.from_dict(torrent_dict(torrent_hash, **overrides))
    return factory


@pytest.fixture
def make_context():
    """Factory for an EvaluationContext with every per-run index built."""
    def factory(torrents: List[TorrentSnapshot], **kwargs) -> EvaluationContext:
        ctx = EvaluationContext(
            instance=kwargs.pop('instance', 'default'),
            torrents=list(torrents),
            torrents_by_hash={t.hash: t for t in torrents},
            now_unix=kwargs.pop('now_unix', NOW),
            **kwargs,
        )
        ctx.category_index, ctx.category_names = build_category_index(torrents)
        ctx.content_groups = build_content_group_index(torrents)
        ctx.basename_groups = build_basename_group_index(torrents)
        for torrent in torrents:
            if torrent.hash not in ctx.tracker_domains:
                ctx.tracker_domains[torrent.hash] = collect_tracker_domains(torrent.tracker, torrent.trackers)
        return ctx
    return factory


@pytest.fixture
def make_rule():
    """Factory parsing a rule document."""
    def factory(document: Dict[str, Any], index: int = 0):
        return parse_rule(document, index)
    return factory


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def write_config(tmp_path):
    """Write config.yml and rules.yml into a temporary config dir and load them."""
    def factory(config: Optional[Dict[str, Any]] = None, rules: Optional[List[Dict[str, Any]]] = None) -> Config:
        config_dir = tmp_path / 'config'
        config_dir.mkdir(exist_ok=True)
        data = {
            'qbittorrent': {'host': 'http://localhost:8080', 'username': 'admin', 'password': 'secret'},
            'logging': {'file': str(tmp_path / 'logs' / 'test.log')},
        }
        for key, value in (config or {}).items():
            if isinstance(value, dict) and isinstance(data.get(key), dict):
                data[key] = {**data[key], **value}
            else:
                data[key] = value
        (config_dir / 'config.yml').write_text(yaml.safe_dump(data))
        (config_dir / 'rules.yml').write_text(yaml.safe_dump({'rules': rules or []}))
        return Config(config_dir)
    return factory


@pytest.fixture
def make_engine(write_config, mock_api, activity_store, mocker):
    """Factory for a RulesEngine wired to the mock API and recording store."""
    from qbt_reconciler.engine import RulesEngine

    def factory(rules: Optional[List[Dict[str, Any]]] = None, config: Optional[Dict[str, Any]] = None,
                dry_run: Optional[bool] = None, program_runner=None):
        engine = RulesEngine(
            write_config(config, rules),
            {'default': mock_api},
            activity_store=activity_store,
            notifier=mocker.MagicMock(),
            program_runner=program_runner,
            dry_run=dry_run,
        )
        return engine
    return factory
