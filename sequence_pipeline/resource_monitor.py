from __future__ import annotations

import gc
import logging
import os
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

import psutil

from .config import PipelineConfig
from .models import CRITICAL, ELEVATED, NORMAL, ResourceSnapshot

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


def classify_memory(rss_mb: float, percent: float, config: PipelineConfig) -> str:
    if rss_mb > config.max_memory_mb or percent >= config.memory_critical_percent:
        return CRITICAL
    if rss_mb > config.max_memory_mb * 0.8 or percent >= config.memory_elevated_percent:
        return ELEVATED
    return NORMAL


def classify_disk(free_mb: float, percent: float, config: PipelineConfig) -> str:
    if free_mb < config.min_free_disk_mb or percent >= config.disk_critical_percent:
        return CRITICAL
    if free_mb < config.min_free_disk_mb * 2 or percent >= config.disk_elevated_percent:
        return ELEVATED
    return NORMAL


def _existing_ancestor(path: Path) -> Path:
    current = path.resolve()
    while not current.exists() and current != current.parent:
        current = current.parent
    return current


class ResourceMonitor:
    """Samples host memory and disk headroom for admission control."""

    def __init__(self, config: PipelineConfig, temp_roots: Iterable[Path] | None = None):
        self.config = config
        self.disk_path = Path(config.sequences_dir)
        self.temp_roots = [Path(p) for p in (temp_roots if temp_roots is not None else [config.sequences_dir])]
        self._lock = threading.Lock()
        self._last: ResourceSnapshot | None = None
        self._last_sampled = 0.0
        self._process = psutil.Process(os.getpid())

    def snapshot(self, refresh: bool = False) -> ResourceSnapshot:
        with self._lock:
            fresh = (time.monotonic() - self._last_sampled) < self.config.snapshot_ttl_seconds
            if self._last is not None and fresh and not refresh:
                return self._last
            self._last = self._sample()
            self._last_sampled = time.monotonic()
            return self._last

    def memory_pressure(self) -> str:
        return self._latest().memory_pressure

    def disk_pressure(self) -> str:
        return self._latest().disk_pressure

    def _latest(self) -> ResourceSnapshot:
        with self._lock:
            last = self._last
        return last if last is not None else self.snapshot()

    def _sample(self) -> ResourceSnapshot:
        rss_mb = self._process.memory_info().rss / _MB
        memory_percent = float(psutil.virtual_memory().percent)

        usage = psutil.disk_usage(str(_existing_ancestor(self.disk_path)))
        free_mb = usage.free / _MB
        total_mb = usage.total / _MB
        disk_percent = float(usage.percent)

        snapshot = ResourceSnapshot(
            memory_rss_mb=rss_mb,
            memory_percent=memory_percent,
            disk_free_mb=free_mb,
            disk_total_mb=total_mb,
            disk_percent=disk_percent,
            memory_pressure=classify_memory(rss_mb, memory_percent, self.config),
            disk_pressure=classify_disk(free_mb, disk_percent, self.config),
            taken_at=datetime.now(timezone.utc),
        )
        logger.debug(
            "Resource snapshot: rss=%.1fMB mem=%.1f%% (%s) free=%.1fMB disk=%.1f%% (%s)",
            rss_mb,
            memory_percent,
            snapshot.memory_pressure,
            free_mb,
            disk_percent,
            snapshot.disk_pressure,
        )
        return snapshot

    def preflight_optimize(self) -> dict[str, int]:
        """Best-effort cleanup before a generation run. Never raises."""
        report = {"collected": 0, "removed_temp_files": 0}
        try:
            report["collected"] = gc.collect()
        except Exception:
            logger.exception("Garbage collection failed during preflight")

        cutoff = time.time() - self.config.temp_file_max_age_seconds
        for root in self.temp_roots:
            try:
                report["removed_temp_files"] += self._sweep_temp_files(root, cutoff)
            except Exception:
                logger.exception("Temp file sweep failed for %s", root)

        if report["removed_temp_files"]:
            logger.info("Preflight removed %d stale temp files", report["removed_temp_files"])
        return report

    @staticmethod
    def _sweep_temp_files(root: Path, cutoff: float) -> int:
        if not root.is_dir():
            return 0
        removed = 0
        for path in root.rglob(".*.tmp"):
            try:
                if path.is_file() and path.stat().st_mtime < cutoff:
                    path.unlink(missing_ok=True)
                    removed += 1
            except OSError:
                logger.warning("Could not remove stale temp file %s", path)
        return removed
