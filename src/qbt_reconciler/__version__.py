"""Version information for qbt-reconciler"""

__version__ = '0.4.0'
__description__ = 'Rule-driven reconciliation engine for qBittorrent'
