from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

Sample = Tuple[str, float, Dict[str, str]]

class BaseCollector(ABC):
    def __init__(self, cfg: Dict, source: Any = None):
        self.cfg = cfg; self.source = source
        self.interval = int(cfg.get("interval", 30))
        self.tags: Dict[str, str] = {str(k): str(v) for k, v in (cfg.get("tags") or {}).items()}

    @abstractmethod
    def collect(self) -> List[Sample]: ...

    def _sample(self, name: str, value: float, **extra: str) -> Sample:
        return (name, float(value), {**self.tags, **extra})

    def _source_call(self, method: str) -> Optional[Callable]:
        fn = getattr(self.source, method, None) if self.source is not None else None
        return fn if callable(fn) else None
