"""
Release-name metadata extraction

Parses scene-style torrent names ("Show.Name.S01E02.1080p.WEB-DL.DDP5.1.H.264-GRP")
into the attributes used as grouping keys.
"""

import re
from dataclasses import dataclass
from functools import lru_cache

from qbt_reconciler.utils import normalize_name


_EPISODE = re.compile(r'\bS(\d{1,2})[ ._-]?E(\d{1,3})\b', re.IGNORECASE)
_SEASON = re.compile(r'\b(?:S(\d{1,2})|Season[ ._-]?(\d{1,2}))\b', re.IGNORECASE)
_YEAR = re.compile(r'\b(19\d{2}|20\d{2})\b')

_SOURCES = [
    ('remux', re.compile(r'\bremux\b', re.IGNORECASE)),
    ('bluray', re.compile(r'\b(?:blu[ ._-]?ray|bdrip|brrip|bd(?:25|50))\b', re.IGNORECASE)),
    ('web-dl', re.compile(r'\bweb[ ._-]?dl\b', re.IGNORECASE)),
    ('webrip', re.compile(r'\bweb[ ._-]?rip\b', re.IGNORECASE)),
    ('web', re.compile(r'\bweb\b', re.IGNORECASE)),
    ('hdtv', re.compile(r'\bhdtv\b', re.IGNORECASE)),
    ('dvd', re.compile(r'\bdvd(?:rip|5|9)?\b', re.IGNORECASE)),
    ('cd', re.compile(r'\bcd\b', re.IGNORECASE)),
]
_RESOLUTION = re.compile(r'\b(2160p|1080p|1080i|720p|576p|480p|4k)\b', re.IGNORECASE)
_CODECS = [
    ('x265', re.compile(r'\b(?:x265|h[ .]?265|hevc)\b', re.IGNORECASE)),
    ('x264', re.compile(r'\b(?:x264|h[ .]?264|avc)\b', re.IGNORECASE)),
    ('av1', re.compile(r'\bav1\b', re.IGNORECASE)),
    ('xvid', re.compile(r'\bxvid\b', re.IGNORECASE)),
]
_HDR = [
    ('dv', re.compile(r'\b(?:dv|dovi|dolby[ ._-]?vision)\b', re.IGNORECASE)),
    ('hdr10+', re.compile(r'\bhdr10(?:\+|plus)', re.IGNORECASE)),
    ('hdr10', re.compile(r'\bhdr10\b', re.IGNORECASE)),
    ('hdr', re.compile(r'\bhdr\b', re.IGNORECASE)),
]
_AUDIO = [
    ('truehd', re.compile(r'\btrue[ ._-]?hd\b', re.IGNORECASE)),
    ('atmos', re.compile(r'\batmos\b', re.IGNORECASE)),
    ('dts-hd', re.compile(r'\bdts[ ._-]?hd(?:[ ._-]?ma)?\b', re.IGNORECASE)),
    ('dts', re.compile(r'\bdts\b', re.IGNORECASE)),
    ('ddp', re.compile(r'\b(?:ddp|dd\+|e[ ._-]?ac3)', re.IGNORECASE)),
    ('dd', re.compile(r'\b(?:dd|ac3)(?=\d|\b)', re.IGNORECASE)),
    ('aac', re.compile(r'\baac', re.IGNORECASE)),
    ('flac', re.compile(r'\bflac\b', re.IGNORECASE)),
    ('mp3', re.compile(r'\bmp3\b', re.IGNORECASE)),
    ('opus', re.compile(r'\bopus\b', re.IGNORECASE)),
]
_CHANNELS = re.compile(r'(?<![\d.])([1-9])[ .]([01])(?![\d])')
_GROUP = re.compile(r'-([A-Za-z0-9]+)(?:\.[a-z0-9]{2,4})?$')
_MUSIC_HINTS = re.compile(r'\b(?:flac|mp3|320kbps|v0|24bit|16bit|discography|album)\b', re.IGNORECASE)

# Everything from the first of these on is not part of the title
_TITLE_STOP = re.compile(
    r'\b(?:S\d{1,2}(?:E\d{1,3})?|Season[ ._-]?\d{1,2}|19\d{2}|20\d{2}|2160p|1080[pi]|720p|576p|480p|4k'
    r'|remux|blu[ ._-]?ray|web[ ._-]?dl|web[ ._-]?rip|web|hdtv|dvd\w*|x26[45]|h[ .]?26[45]|hevc)\b',
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ReleaseInfo:
    title: str = ''
    year: str = ''
    season: str = ''
    episode: str = ''
    content_type: str = ''
    source: str = ''
    resolution: str = ''
    codec: str = ''
    hdr: str = ''
    audio: str = ''
    channels: str = ''
    group: str = ''

    @property
    def effective_name(self) -> str:
        """Title plus the identifying year/season/episode suffix"""
        if not self.title:
            return ''
        if self.content_type == 'episode':
            return f"{self.title} s{int(self.season):02d}e{int(self.episode):02d}"
        if self.content_type == 'season':
            return f"{self.title} s{int(self.season):02d}"
        if self.year:
            return f"{self.title} {self.year}"
        return self.title


def _first(patterns, text: str) -> str:
    for label, pattern in patterns:
        if pattern.search(text):
            return label
    return ''


@lru_cache(maxsize=4096)
def parse_release(name: str) -> ReleaseInfo:
    """
    Parse a release name

    Args:
        name: Torrent name

    Returns:
        ReleaseInfo; attributes that cannot be determined are ''
    """
    if not name or not name.strip():
        return ReleaseInfo()

    text = name.strip()
    spaced = text.replace('_', ' ')

    season = episode = ''
    episode_match = _EPISODE.search(spaced)
    if episode_match:
        season, episode = episode_match.group(1), episode_match.group(2)
    else:
        season_match = _SEASON.search(spaced)
        if season_match:
            season = season_match.group(1) or season_match.group(2)

    year_match = _YEAR.search(spaced)
    year = year_match.group(1) if year_match else ''

    stop = _TITLE_STOP.search(spaced)
    raw_title = spaced[:stop.start()] if stop and stop.start() > 0 else spaced
    title = normalize_name(raw_title.strip(' .-[]()'))

    if episode:
        content_type = 'episode'
    elif season:
        content_type = 'season'
    elif _MUSIC_HINTS.search(spaced):
        content_type = 'music'
    elif year:
        content_type = 'movie'
    else:
        content_type = 'other'

    resolution_match = _RESOLUTION.search(spaced)
    channels_match = _CHANNELS.search(spaced)
    group_match = _GROUP.search(text)

    return ReleaseInfo(
        title=title,
        year=year,
        season=season,
        episode=episode,
        content_type=content_type,
        source=_first(_SOURCES, spaced),
        resolution=(resolution_match.group(1).lower() if resolution_match else ''),
        codec=_first(_CODECS, spaced),
        hdr=_first(_HDR, spaced),
        audio=_first(_AUDIO, spaced),
        channels=(f"{channels_match.group(1)}.{channels_match.group(2)}" if channels_match else ''),
        group=(group_match.group(1) if group_match else ''),
    )
