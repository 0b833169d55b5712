"""
External program runner

Runs configured programs for matched torrents on a bounded worker pool.
Argument templates take {hash}, {name}, {save_path}, {content_path},
{category}, {tags}, {state}, {size}, {progress} and {comment}
placeholders.

Example config.yml:
    programs:
      max_workers: 4
      definitions:
        notify-arr:
          path: /usr/local/bin/notify
          args: '--hash {hash} --path "{content_path}"'
          timeout: 120
          path_mappings:
            - from: /downloads
              to: /mnt/downloads
"""

import shlex
import subprocess
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from qbt_reconciler.activity import ActivityAction, ActivityRecord, Outcome
from qbt_reconciler.logging import get_logger
from qbt_reconciler.models import Rule, TorrentSnapshot

logger = get_logger(__name__)

DEFAULT_PROGRAM_TIMEOUT = 300
DEFAULT_MAX_WORKERS = 4


@dataclass
class ProgramDefinition:
    id: str
    path: str
    args: str = ''
    enabled: bool = True
    timeout: int = DEFAULT_PROGRAM_TIMEOUT
    path_mappings: List[Dict[str, str]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, program_id: str, data: Dict) -> 'ProgramDefinition':
        return cls(
            id=str(program_id),
            path=str(data.get('path', '')),
            args=str(data.get('args') or ''),
            enabled=bool(data.get('enabled', True)),
            timeout=int(data.get('timeout', DEFAULT_PROGRAM_TIMEOUT)),
            path_mappings=list(data.get('path_mappings') or []),
        )


def apply_path_mappings(path: str, mappings: List[Dict[str, str]]) -> str:
    """
    Translate a client-side path with the first matching prefix mapping

    Examples:
        >>> apply_path_mappings('/downloads/a', [{'from': '/downloads', 'to': '/mnt/dl'}])
        '/mnt/dl/a'
    """
    for mapping in mappings:
        source = mapping.get('from', '')
        if source and (path == source or path.startswith(source.rstrip('/') + '/')):
            return mapping.get('to', '') + path[len(source):]
    return path


def build_arguments(definition: ProgramDefinition, torrent: TorrentSnapshot) -> List[str]:
    """Split the args template and substitute torrent placeholders"""
    if not definition.args:
        return []

    data = {
        'hash': torrent.hash,
        'name': torrent.name,
        'save_path': apply_path_mappings(torrent.save_path, definition.path_mappings),
        'content_path': apply_path_mappings(torrent.content_path, definition.path_mappings),
        'category': torrent.category,
        'tags': torrent.tags,
        'state': torrent.state,
        'size': str(torrent.size),
        'progress': f"{torrent.progress:.2f}",
        'comment': torrent.comment,
    }

    args = shlex.split(definition.args)
    for i, arg in enumerate(args):
        for key, value in data.items():
            arg = arg.replace('{' + key + '}', value)
        args[i] = arg
    return args


class ProgramRunner:
    """
    Bounded pool for external programs

    Args:
        definitions: program id -> settings mapping from config.yml
        max_workers: Concurrent program limit
        recorder: Called with an ActivityRecord for every finished program
    """

    def __init__(self, definitions: Optional[Dict[str, Dict]] = None, max_workers: int = DEFAULT_MAX_WORKERS,
                 recorder: Optional[Callable[[ActivityRecord], None]] = None):
        self.definitions = {
            str(pid): ProgramDefinition.from_dict(pid, data or {})
            for pid, data in (definitions or {}).items()
        }
        self.max_workers = max(1, max_workers)
        self.recorder = recorder
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    def _pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers, thread_name_prefix='qbt-program'
                )
            return self._executor

    def has_program(self, program_id: str) -> bool:
        return program_id in self.definitions

    def submit(self, program_id: str, torrent: TorrentSnapshot, rule: Optional[Rule] = None,
               instance: str = '') -> Optional[Future]:
        """
        Queue a program run for a torrent

        Returns:
            Future resolving to the exit code, or None when the program is
            unknown or disabled
        """
        definition = self.definitions.get(program_id)
        if definition is None:
            logger.warning(f"Unknown external program '{program_id}'")
            self._record(instance, torrent, rule, program_id, Outcome.FAILED, 'program not found')
            return None
        if not definition.enabled:
            logger.debug(f"External program '{program_id}' is disabled, skipping")
            self._record(instance, torrent, rule, program_id, Outcome.FAILED, 'program is disabled')
            return None

        args = build_arguments(definition, torrent)
        logger.debug(f"Queueing external program '{program_id}' for {torrent.hash}: {definition.path} {args}")
        return self._pool().submit(self._run, definition, args, torrent, rule, instance)

    def _run(self, definition: ProgramDefinition, args: List[str], torrent: TorrentSnapshot,
             rule: Optional[Rule], instance: str) -> int:
        try:
            result = subprocess.run(
                [definition.path, *args],
                capture_output=True,
                text=True,
                timeout=definition.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"External program '{definition.id}' timed out after {definition.timeout}s")
            self._record(instance, torrent, rule, definition.id, Outcome.FAILED,
                         f"timed out after {definition.timeout}s")
            return -1
        except OSError as e:
            logger.warning(f"External program '{definition.id}' failed to start: {e}")
            self._record(instance, torrent, rule, definition.id, Outcome.FAILED, str(e))
            return -1

        if result.returncode == 0:
            logger.info(f"External program '{definition.id}' finished for {torrent.name}")
            self._record(instance, torrent, rule, definition.id, Outcome.SUCCESS, 'exit code 0')
        else:
            stderr = (result.stderr or '').strip()
            logger.warning(f"External program '{definition.id}' exited with {result.returncode}: {stderr[:200]}")
            self._record(instance, torrent, rule, definition.id, Outcome.FAILED,
                         f"exit code {result.returncode}")
        return result.returncode

    def _record(self, instance, torrent, rule, program_id, outcome, reason):
        if self.recorder is None:
            return
        self.recorder(ActivityRecord(
            instance=instance,
            action=ActivityAction.EXTERNAL_PROGRAM,
            outcome=outcome,
            hash=torrent.hash,
            torrent_name=torrent.name,
            rule_id=rule.id if rule else None,
            rule_name=rule.name if rule else '',
            reason=reason,
            details={'programId': program_id},
        ))

    def shutdown(self, wait: bool = True):
        with self._lock:
            if self._executor is not None:
                self._executor.shutdown(wait=wait)
                self._executor = None
