"""Download orchestration."""

from __future__ import annotations

from bitswarm.session.coordinator import DownloadCoordinator, PeerSource

__all__ = ["DownloadCoordinator", "PeerSource"]
