"""
Tracker helpers: domain extraction, selector matching, health and display names
"""

import re
from fnmatch import fnmatchcase
from typing import Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import urlparse

from qbt_reconciler.logging import get_logger

logger = get_logger(__name__)

_SELECTOR_SEPARATORS = re.compile(r'[,;|]')
_HOST_INVALID_CHARS = re.compile(r'[^a-zA-Z0-9.\-]')

# Substrings of tracker messages meaning the tracker no longer knows the torrent
UNREGISTERED_MESSAGES = (
    'unregistered',
    'not registered',
    'torrent not found',
    'torrent does not exist',
    'unknown torrent',
    'infohash not found',
    'torrent has been deleted',
    'torrent has been nuked',
    'trumped',
    'retitled',
    'dupe',
    'complete season uploaded',
    'specifically banned',
)

# Substrings meaning the tracker itself is unavailable
TRACKER_DOWN_MESSAGES = (
    'tracker is down',
    'maintenance',
    'timed out',
    'timeout',
    'connection refused',
    'bad gateway',
    'service unavailable',
    'gateway timeout',
    'internal server error',
    'could not connect',
    'host not found',
    '502',
    '503',
    '504',
)

# qBittorrent tracker status: 4 = not working
TRACKER_STATUS_NOT_WORKING = 4
TRACKER_STATUS_WORKING = 2


def extract_domain(url: str) -> str:
    """
    Resolve a tracker URL to its lowercase host name

    Args:
        url: Announce URL, e.g. "https://tracker.example.org:443/announce"

    Returns:
        Host name, or '' when the URL has no host
    """
    if not url:
        return ''
    url = url.strip()
    try:
        host = urlparse(url).hostname
    except ValueError:
        return ''
    return (host or '').lower()


def sanitize_tracker_host(url_or_host: str) -> str:
    """
    Clean a bare host string ("tracker.example.org:8080/path")

    Values containing a scheme are rejected; use extract_domain for URLs.
    """
    clean = (url_or_host or '').strip()
    if not clean or '://' in clean:
        return ''
    clean = clean.split('/')[0]
    clean = clean.split(':')[0]
    return _HOST_INVALID_CHARS.sub('', clean)


def collect_tracker_domains(tracker: str, tracker_urls: Iterable[str] = ()) -> List[str]:
    """
    Collect the sorted, de-duplicated domains a torrent announces to

    Args:
        tracker: The torrent's current tracker URL
        tracker_urls: Every tracker URL of the torrent

    Returns:
        Sorted list of domains
    """
    domains: Set[str] = set()

    for url in [tracker, *tracker_urls]:
        if not url:
            continue
        domain = extract_domain(url)
        if domain:
            domains.add(domain)

    if not domains and tracker:
        fallback = sanitize_tracker_host(tracker)
        if fallback:
            domains.add(fallback.lower())

    return sorted(domains)


def matches_tracker(pattern: str, domains: Iterable[str]) -> bool:
    """
    Check whether any domain matches a rule's tracker selector

    The selector is "*" (everything) or a list of tokens separated by
    ',', ';' or '|'. A token is a glob ("*.example.org"), an exact domain,
    or a ".suffix" matching any domain ending with it.

    Examples:
        >>> matches_tracker('*', [])
        True
        >>> matches_tracker('.example.org', ['tracker.example.org'])
        True
    """
    if pattern == '*':
        return True
    if not pattern:
        return False

    lowered = [d.lower() for d in domains]
    for token in _SELECTOR_SEPARATORS.split(pattern):
        token = token.strip().lower()
        if not token:
            continue
        is_glob = '*' in token or '?' in token
        for domain in lowered:
            if is_glob:
                if fnmatchcase(domain, token):
                    return True
            elif domain == token:
                return True
            elif token.startswith('.') and domain.endswith(token):
                return True

    return False


def classify_message(message: str) -> Optional[str]:
    """
    Classify a tracker status message

    Returns:
        'unregistered', 'tracker_down' or None
    """
    if not message:
        return None
    text = message.lower()
    if any(fragment in text for fragment in UNREGISTERED_MESSAGES):
        return 'unregistered'
    if any(fragment in text for fragment in TRACKER_DOWN_MESSAGES):
        return 'tracker_down'
    return None


def classify_trackers(trackers: List[Dict]) -> Optional[str]:
    """
    Classify a torrent from its tracker list (torrents/trackers)

    Pseudo-trackers (DHT, PeX, LSD) are listed with URLs starting with
    "**" and are ignored. A torrent is unregistered when any real tracker
    reports an unregistered message and none is working; tracker down when
    every real tracker reports a down message.

    Returns:
        'unregistered', 'tracker_down' or None
    """
    real = [t for t in trackers if not str(t.get('url', '')).startswith('**')]
    if not real:
        return None

    if any(t.get('status') == TRACKER_STATUS_WORKING for t in real):
        return None

    verdicts = [
        classify_message(t.get('msg', ''))
        for t in real
        if t.get('status') == TRACKER_STATUS_NOT_WORKING
    ]
    if 'unregistered' in verdicts:
        return 'unregistered'
    if verdicts and len(verdicts) == len(real) and all(v == 'tracker_down' for v in verdicts):
        return 'tracker_down'
    return None


def build_health_sets(trackers_by_hash: Dict[str, List[Dict]]) -> Tuple[Set[str], Set[str]]:
    """
    Build the unregistered and tracker-down hash sets

    Args:
        trackers_by_hash: Tracker lists keyed by torrent hash

    Returns:
        (unregistered, tracker_down)
    """
    unregistered: Set[str] = set()
    tracker_down: Set[str] = set()
    for torrent_hash, trackers in trackers_by_hash.items():
        verdict = classify_trackers(trackers or [])
        if verdict == 'unregistered':
            unregistered.add(torrent_hash)
        elif verdict == 'tracker_down':
            tracker_down.add(torrent_hash)

    logger.debug(f"Tracker health: {len(unregistered)} unregistered, {len(tracker_down)} tracker down")
    return unregistered, tracker_down


def resolve_display_name(domain: str, display_names: Dict[str, str]) -> str:
    """Display name configured for a domain, or the domain itself"""
    if not domain:
        return ''
    return display_names.get(domain.lower(), domain)
