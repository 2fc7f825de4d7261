from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Iterable, List, Optional

from promptcron.errors import ValidationError
from promptcron.store import validate_name

logger = logging.getLogger("promptcron.retention")

LOG_SUFFIX = ".log"


class LogRetentionManager:
    def __init__(self, logs_dir: Path):
        self.logs_dir = logs_dir

    def job_dir(self, name: str) -> Path:
        return self.logs_dir / validate_name(name)

    def log_files(self, name: str) -> List[Path]:
        """Run logs for one job, oldest first."""
        directory = self.job_dir(name)
        if not directory.is_dir():
            return []
        return sorted(directory.glob(f"*{LOG_SUFFIX}"))

    def _scoped_dirs(self, name: Optional[str]) -> Iterable[Path]:
        if name is not None:
            return [self.job_dir(name)]
        if not self.logs_dir.is_dir():
            return []
        return sorted(p for p in self.logs_dir.iterdir() if p.is_dir())

    def purge(self, name: Optional[str], retention_days: int, now: Optional[float] = None) -> List[Path]:
        if isinstance(retention_days, bool) or not isinstance(retention_days, int) or retention_days < 0:
            raise ValidationError("Error: retention days must be an integer >= 0.")
        cutoff = (now if now is not None else time.time()) - retention_days * 86400
        deleted: List[Path] = []
        for directory in self._scoped_dirs(name):
            if not directory.is_dir():
                continue
            for path in sorted(directory.glob(f"*{LOG_SUFFIX}")):
                try:
                    if path.stat().st_mtime >= cutoff:
                        continue
                    path.unlink()
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    logger.warning("Could not remove old log %s: %s", path, exc)
                    continue
                deleted.append(path)
        if deleted:
            logger.info(
                "Purged %s log file(s) older than %s day(s)%s",
                len(deleted),
                retention_days,
                f" for {name}" if name else "",
            )
        return deleted
