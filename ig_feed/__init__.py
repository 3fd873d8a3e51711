from __future__ import annotations

from .config import load_config, resolve_runtime_secrets
from .config_schema import AppConfig
from .errors import ConfigError, GraphAPIError, StorageError
from .service import MediaService, RequestContext, ServiceResponse

__all__ = [
    "AppConfig",
    "ConfigError",
    "GraphAPIError",
    "MediaService",
    "RequestContext",
    "ServiceResponse",
    "StorageError",
    "load_config",
    "resolve_runtime_secrets",
]
