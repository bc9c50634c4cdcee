"""Configuration package.

Re-exports the config dataclasses so call sites import from one path:

	from app.services.config import GcpConfig
"""

from app.services.config.gcp_config import GcpConfig
from app.services.config.github_config import GitHubConfig
from app.services.config.store_config import SecretsConfig, StoreConfig, WorkerConfig

__all__ = ["GcpConfig", "GitHubConfig", "SecretsConfig", "StoreConfig", "WorkerConfig"]
