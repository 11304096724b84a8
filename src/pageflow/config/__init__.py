from .config import (
    Config,
    CrawlerConfig,
    GeneratorConfig,
    LockConfig,
    MonitoringConfig,
    RecrawlConfig,
    StageSettings,
    StagesConfig,
    StorageConfig,
    find_config_file,
)

__all__ = [
    "Config",
    "CrawlerConfig",
    "GeneratorConfig",
    "LockConfig",
    "MonitoringConfig",
    "RecrawlConfig",
    "StageSettings",
    "StagesConfig",
    "StorageConfig",
    "find_config_file",
]
