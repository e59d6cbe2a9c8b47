"""Checkpoint management for the change feed."""
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from siorg_sync import settings
from siorg_sync.logging_conf import logger


class CheckpointManager:
    """Remembers how far the change feed has been read."""

    def __init__(self, checkpoint_file: Optional[Path] = None, overlap_seconds: Optional[int] = None):
        self.checkpoint_file: Path = checkpoint_file or settings.CHECKPOINT_DIR / "siorg.json"
        self.checkpoint_file.parent.mkdir(parents=True, exist_ok=True)
        self.overlap_seconds = (
            settings.CHANGE_FEED_OVERLAP_SECONDS if overlap_seconds is None else overlap_seconds
        )

    def get_last_sync_time(self) -> datetime:
        """
        Get the last sync time from checkpoint.

        Returns:
            Last sync datetime minus the overlap window, or 30 days ago on first run
        """
        try:
            if self.checkpoint_file.exists():
                with open(self.checkpoint_file, "r") as f:
                    data = json.load(f)
                    last_sync = datetime.fromisoformat(data["last_sync"])
                    # Overlap so changes published during the last poll are not missed
                    return last_sync - timedelta(seconds=self.overlap_seconds)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Failed to read checkpoint: {e}")

        return datetime.now(timezone.utc) - timedelta(days=30)

    def save_sync_time(self, sync_time: datetime) -> None:
        """Save the sync time to checkpoint."""
        try:
            data = {
                "last_sync": sync_time.isoformat(),
                "updated_at": datetime.now(timezone.utc).isoformat()
            }
            with open(self.checkpoint_file, "w") as f:
                json.dump(data, f, indent=2)
            logger.debug(f"Saved checkpoint: {sync_time.isoformat()}")
        except OSError as e:
            logger.error(f"Failed to save checkpoint: {e}", exc_info=True)
