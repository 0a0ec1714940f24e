from .base import (
    Author,
    Baseline,
    ChangeKind,
    CommitTransaction,
    RemoteStore,
    StagedChange,
    StagingStore,
    TreeEntry,
)
from .cache import CacheInvalidator, TaggedCache
from .config import ConfigError, PublishConfig, load_config
from .errors import (
    CancelledError,
    ConflictError,
    NotFoundError,
    RateLimitedError,
    StagePlaneError,
    StaleChange,
    TransportError,
    ValidationError,
)
from .executor import CommitTransactionExecutor, PublishResult, TransactionState
from .impl.file import create_file_staging_store
from .impl.git import create_git_remote_store
from .impl.github import create_github_remote_store
from .impl.memory import create_memory_remote_store, create_memory_staging_store
from .impl.sql import create_sql_staging_store

__all__ = [
    "Author",
    "Baseline",
    "ChangeKind",
    "CommitTransaction",
    "RemoteStore",
    "StagedChange",
    "StagingStore",
    "TreeEntry",
    "CacheInvalidator",
    "TaggedCache",
    "ConfigError",
    "PublishConfig",
    "load_config",
    "CancelledError",
    "ConflictError",
    "NotFoundError",
    "RateLimitedError",
    "StagePlaneError",
    "StaleChange",
    "TransportError",
    "ValidationError",
    "CommitTransactionExecutor",
    "PublishResult",
    "TransactionState",
    "create_file_staging_store",
    "create_git_remote_store",
    "create_github_remote_store",
    "create_memory_remote_store",
    "create_memory_staging_store",
    "create_sql_staging_store",
]
