from __future__ import annotations
import logging, socket
from typing import Any, Dict, List
import psutil
from clubwatch.collectors.base import BaseCollector, Sample

log = logging.getLogger(__name__)

class SystemCollector(BaseCollector):
    def __init__(self, cfg: Dict, source: Any = None):
        super().__init__(cfg, source)
        self.tags.setdefault("host", cfg.get("host_tag") or socket.gethostname())

    def collect(self) -> List[Sample]:
        cpu = psutil.cpu_percent(interval=None)
        mem = psutil.virtual_memory()
        return [self._sample("system_cpu_percent", cpu), self._sample("system_memory_percent", mem.percent)]
