from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from stage_plane.base import RemoteStore, StagingStore
from stage_plane.config import PublishConfig
from stage_plane.impl.file import create_file_staging_store
from stage_plane.impl.git import create_git_remote_store
from stage_plane.impl.memory import create_memory_remote_store, create_memory_staging_store
from stage_plane.impl.sql import Base, create_sql_staging_store

TARGET = "acme/corpus"
BRANCH = "main"


# Providers build a store at a location. Persistent providers can be asked for
# a second instance on the same location to simulate a process restart.


class StoreProvider:
    persistent = True

    def create(self, path: Path) -> StagingStore:
        raise NotImplementedError()

    def cleanup(self) -> None:
        pass


class MemoryStoreProvider(StoreProvider):
    persistent = False

    def create(self, path: Path) -> StagingStore:
        return create_memory_staging_store()


class FileStoreProvider(StoreProvider):
    def create(self, path: Path) -> StagingStore:
        return create_file_staging_store(path / "staged.json")


class SqlStoreProvider(StoreProvider):
    def __init__(self):
        self.engine = None

    def create(self, path: Path) -> StagingStore:
        if self.engine:
            self.engine.dispose()

        self.engine = create_engine(f"sqlite:///{path / 'staging.db'}")
        Base.metadata.create_all(self.engine)
        return create_sql_staging_store(sessionmaker(bind=self.engine))

    def cleanup(self) -> None:
        if self.engine:
            self.engine.dispose()


STORE_PROVIDERS = [MemoryStoreProvider, FileStoreProvider, SqlStoreProvider]
STORE_PROVIDER_IDS = ["memory", "file", "sql"]


class RemoteProvider:
    def create(self, path: Path) -> RemoteStore:
        raise NotImplementedError()


class MemoryRemoteProvider(RemoteProvider):
    def create(self, path: Path) -> RemoteStore:
        return create_memory_remote_store()


class GitRemoteProvider(RemoteProvider):
    def create(self, path: Path) -> RemoteStore:
        root = path / "remotes"
        root.mkdir(exist_ok=True)
        return create_git_remote_store(root)


REMOTE_PROVIDERS = [MemoryRemoteProvider, GitRemoteProvider]
REMOTE_PROVIDER_IDS = ["memory", "git"]


@pytest.fixture(params=STORE_PROVIDERS, ids=STORE_PROVIDER_IDS)
def store_provider(request):
    provider = request.param()
    yield provider
    provider.cleanup()


@pytest.fixture
def store(store_provider: StoreProvider, tmp_path: Path) -> StagingStore:
    return store_provider.create(tmp_path)


@pytest.fixture(params=REMOTE_PROVIDERS, ids=REMOTE_PROVIDER_IDS)
def remote(request, tmp_path: Path) -> RemoteStore:
    return request.param().create(tmp_path)


@pytest.fixture
def config() -> PublishConfig:
    return PublishConfig(
        target=TARGET,
        branch=BRANCH,
        author_name="Test",
        author_email="test@test",
        categories={"articles": "content/articles", "videos": "content/3.videos"},
    )
