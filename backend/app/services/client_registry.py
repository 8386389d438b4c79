"""
Process-local cache of per-tenant resource handles.

A registry maps an exact connection identity string to one live handle. The
first request for a key builds the handle under that key's lock, so
concurrent first requests for a brand-new tenant share a single instance.
Handles are never expired by idle time; evict() exists for credential
rotation and evict_all() for shutdown.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
from typing import Callable, Dict, Generic, Optional, TypeVar

import boto3
from botocore.config import Config as BotoConfig
from sqlalchemy import func, select
from sqlalchemy.engine import Engine

from app.core.database import build_engine, build_session_factory, dependency_guard
from app.models.tenant_user import TenantUser


logger = logging.getLogger(__name__)

H = TypeVar("H")


class ClientRegistry(Generic[H]):
    def __init__(
        self,
        factory: Optional[Callable[[str], H]] = None,
        closer: Optional[Callable[[H], None]] = None,
        name: str = "client",
    ) -> None:
        self._factory = factory
        self._closer = closer
        self._name = name
        self._handles: Dict[str, H] = {}
        self._key_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def get_client(self, key: str, build: Optional[Callable[[], H]] = None) -> H:
        """Existing handle for key, or one built by `build` (default: the registry factory)."""
        handle = self._handles.get(key)
        if handle is not None:
            return handle
        with self._lock_for(key):
            # another worker may have built it while we waited
            handle = self._handles.get(key)
            if handle is None:
                if build is not None:
                    handle = build()
                elif self._factory is not None:
                    handle = self._factory(key)
                else:
                    raise ValueError(f"No factory to build {self._name} handle")
                with self._lock:
                    # an evict may have swapped this key's lock while we built
                    existing = self._handles.setdefault(key, handle)
                if existing is not handle:
                    self._close(handle)
                    return existing
                logger.info("%s handle created total=%s", self._name, len(self._handles))
            return handle

    def evict(self, key: str) -> bool:
        with self._lock_for(key):
            with self._lock:
                handle = self._handles.pop(key, None)
                self._key_locks.pop(key, None)
        if handle is None:
            return False
        self._close(handle)
        logger.info("%s handle evicted total=%s", self._name, len(self._handles))
        return True

    def evict_all(self) -> int:
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
            self._key_locks.clear()
        for handle in handles:
            self._close(handle)
        if handles:
            logger.info("%s handles evicted count=%s", self._name, len(handles))
        return len(handles)

    def _close(self, handle: H) -> None:
        if self._closer is not None:
            self._closer(handle)

    def __contains__(self, key: str) -> bool:
        return key in self._handles

    def __len__(self) -> int:
        return len(self._handles)


class TenantDatabase:
    """Handle on a tenant's dedicated database."""

    def __init__(self, connection_string: str) -> None:
        self.engine: Engine = build_engine(connection_string)
        self.session_factory = build_session_factory(self.engine)

    def count_active_users(self) -> int:
        with dependency_guard("Tenant database"):
            with self.session_factory() as session:
                return session.execute(
                    select(func.count()).select_from(TenantUser).where(TenantUser.is_active.is_(True))
                ).scalar_one()

    def dispose(self) -> None:
        self.engine.dispose()


@dataclass(frozen=True)
class StorageConfig:
    endpoint: str
    access_key: str
    secret_key: str
    bucket: str

    @property
    def identity(self) -> str:
        return f"{self.endpoint}|{self.access_key}|{self.bucket}"


class TenantStorage:
    """S3 client bound to one tenant's bucket."""

    def __init__(self, config: StorageConfig, region: str) -> None:
        self.bucket = config.bucket
        self.endpoint = config.endpoint
        self.client = boto3.client(
            "s3",
            endpoint_url=config.endpoint or None,
            aws_access_key_id=config.access_key,
            aws_secret_access_key=config.secret_key,
            region_name=region,
            config=BotoConfig(connect_timeout=5, read_timeout=30, retries={"max_attempts": 3}),
        )

    def upload(self, key: str, body: bytes, content_type: str = "application/octet-stream") -> str:
        self.client.put_object(Bucket=self.bucket, Key=key, Body=body, ContentType=content_type)
        return self.object_url(key)

    def get_object(self, key: str) -> bytes:
        response = self.client.get_object(Bucket=self.bucket, Key=key)
        return response["Body"].read()

    def delete_object(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=key)

    def object_url(self, key: str) -> str:
        endpoint = (self.endpoint or "https://s3.amazonaws.com").rstrip("/")
        return f"{endpoint}/{self.bucket}/{key}"


def build_database_registry() -> ClientRegistry[TenantDatabase]:
    return ClientRegistry(TenantDatabase, closer=TenantDatabase.dispose, name="tenant database")


def build_storage_registry() -> ClientRegistry[TenantStorage]:
    return ClientRegistry(name="tenant storage")
