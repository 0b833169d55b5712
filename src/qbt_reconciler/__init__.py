"""
qbt-reconciler - rule evaluation and reconciliation engine for qBittorrent
"""

from qbt_reconciler.__version__ import __version__, __description__

__all__ = ['__version__', '__description__']
