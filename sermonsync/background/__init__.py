"""Background scheduling: network monitoring and sync triggers."""

from .manager import BackgroundSyncManager, BackgroundWindow, FixedWindowProvider, SyncPreferences
from .network import HealthCheckProbe, NetworkMonitor, NetworkStatus, PathSnapshot, classify

__all__ = [
    "BackgroundSyncManager",
    "BackgroundWindow",
    "FixedWindowProvider",
    "HealthCheckProbe",
    "NetworkMonitor",
    "NetworkStatus",
    "PathSnapshot",
    "SyncPreferences",
    "classify",
]
