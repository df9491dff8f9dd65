import gc
import logging
import threading
from typing import Dict, Optional

import psutil
from apscheduler.schedulers.background import BackgroundScheduler

BYTES_PER_MIB = 1024 * 1024
MEMSTATS_JOB_ID = "memstats"


class MemoryWatcher:
    """Periodically log the process memory footprint.

    The watcher owns its scheduler; nothing in the request path depends on it.
    """

    def __init__(self, logger: Optional[logging.Logger] = None, interval_seconds: float = 1.0) -> None:
        self._logger = logger or logging.getLogger("uploadserver.memstats")
        self._interval_seconds = max(0.1, float(interval_seconds))
        self._process = psutil.Process()
        self._scheduler: Optional[BackgroundScheduler] = None
        self._lock = threading.Lock()

    def snapshot(self) -> Dict[str, int]:
        memory = self._process.memory_info()
        return {
            "rss_mib": memory.rss // BYTES_PER_MIB,
            "vms_mib": memory.vms // BYTES_PER_MIB,
            "threads": self._process.num_threads(),
            "gc_collections": sum(stat.get("collections", 0) for stat in gc.get_stats()),
        }

    def report(self) -> None:
        try:
            stats = self.snapshot()
        except psutil.Error:
            self._logger.exception("memstats_unavailable")
            return
        self._logger.info(
            "memstats rss_mib=%d vms_mib=%d threads=%d gc_collections=%d",
            stats["rss_mib"],
            stats["vms_mib"],
            stats["threads"],
            stats["gc_collections"],
        )

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            scheduler = BackgroundScheduler(daemon=True)
            scheduler.add_job(
                func=self.report,
                trigger="interval",
                seconds=self._interval_seconds,
                id=MEMSTATS_JOB_ID,
                name="Report memory usage",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            scheduler.start()
            self._scheduler = scheduler

    def shutdown(self, wait: bool = False) -> None:
        with self._lock:
            if self._scheduler is None:
                return
            if self._scheduler.running:
                self._scheduler.shutdown(wait=wait)
            self._scheduler = None
