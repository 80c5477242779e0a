from clubwatch.collectors.base import BaseCollector, Sample
from clubwatch.collectors.club import BasicCollector, CacheCounter, OperationalCollector, PerformanceCollector
from clubwatch.collectors.system import SystemCollector

__all__ = ["BaseCollector", "Sample", "BasicCollector", "PerformanceCollector", "OperationalCollector",
           "CacheCounter", "SystemCollector"]
