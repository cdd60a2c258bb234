"""
Credential Stores

Pluggable persistence for session credentials. The session manager depends only
on the ``CredentialStore`` protocol; the backend is chosen by the composition
root.

Backends:
- InMemoryCredentialStore: process-local, used for test isolation
- EncryptedFileCredentialStore: Fernet-encrypted JSON file for desktop and CLI use
- RedisCredentialStore: JSON value in Redis for server-side deployments

Contract:
- load() returns the stored Credentials or None
- save() persists, raising StorageError when the write fails
- clear() removes stored credentials and is idempotent

Every backend serializes access to its backend with an asyncio.Lock. Concurrent
saves are last-write-wins. Stores never retry; that is the caller's decision.
"""

import asyncio
import logging
import os
import tempfile
from datetime import timedelta
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

import redis.asyncio as redis
import sentry_sdk
from cryptography.fernet import Fernet, InvalidToken
from pydantic import ValidationError
from redis.exceptions import RedisError

from dropanchor.errors import StorageError
from dropanchor.model.credentials import Credentials

logger = logging.getLogger(__name__)


@runtime_checkable
class CredentialStore(Protocol):
    async def load(self) -> Optional[Credentials]: ...

    async def save(self, credentials: Credentials) -> None: ...

    async def clear(self) -> None: ...


class InMemoryCredentialStore:
    def __init__(self, credentials: Optional[Credentials] = None) -> None:
        self._credentials = credentials
        self._lock = asyncio.Lock()
        self.save_count = 0

    async def load(self) -> Optional[Credentials]:
        async with self._lock:
            return self._credentials

    async def save(self, credentials: Credentials) -> None:
        async with self._lock:
            self._credentials = credentials
            self.save_count += 1

    async def clear(self) -> None:
        async with self._lock:
            self._credentials = None


class EncryptedFileCredentialStore:
    """
    Stores credentials as a Fernet token in a single file.

    Writes go to a temporary file in the same directory which then replaces the
    target, so readers never observe a partially written file. A file that can
    no longer be decrypted (rotated key, corruption) loads as None and is removed.
    """

    def __init__(self, path: str | Path, encryption_key: Fernet) -> None:
        self._path = Path(path)
        self._fernet = encryption_key
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def load(self) -> Optional[Credentials]:
        async with self._lock:
            try:
                token = await asyncio.to_thread(self._path.read_bytes)
            except FileNotFoundError:
                return None
            except OSError:
                logger.exception("Unable to read credentials file %s", self._path)
                return None

            try:
                data = self._fernet.decrypt(token)
                return Credentials.model_validate_json(data)
            except (InvalidToken, ValidationError):
                logger.warning(
                    "Discarding unreadable credentials file %s", self._path
                )
                await asyncio.to_thread(self._path.unlink, True)
                return None

    async def save(self, credentials: Credentials) -> None:
        token = self._fernet.encrypt(credentials.model_dump_json().encode("utf-8"))
        async with self._lock:
            try:
                await asyncio.to_thread(self._write_atomic, token)
            except OSError as e:
                raise StorageError(
                    f"Unable to write credentials file {self._path}"
                ) from e

    async def clear(self) -> None:
        async with self._lock:
            try:
                await asyncio.to_thread(self._path.unlink, True)
            except OSError as e:
                raise StorageError(
                    f"Unable to remove credentials file {self._path}"
                ) from e

    def _write_atomic(self, data: bytes) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=self._path.parent, prefix=f".{self._path.name}."
        )
        try:
            with os.fdopen(fd, "wb") as fl:
                fl.write(data)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self._path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise


def load_or_create_key(path: str | Path) -> Fernet:
    """
    Fernet key for the credentials file, generated on first use.

    The key is kept in ``path`` with mode 0600 so later processes can decrypt
    what earlier ones wrote.
    """
    path = Path(path)
    try:
        return Fernet(path.read_bytes().strip())
    except FileNotFoundError:
        pass
    except (OSError, ValueError) as e:
        raise StorageError(f"Unable to read encryption key {path}") from e

    key = Fernet.generate_key()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        # Created by a concurrent process.
        return load_or_create_key(path)
    except OSError as e:
        raise StorageError(f"Unable to create encryption key {path}") from e

    with os.fdopen(fd, "wb") as fl:
        fl.write(key)
    logger.info("Generated credentials encryption key %s", path)
    return Fernet(key)


class RedisCredentialStore:
    """
    Stores credentials as JSON under a single Redis key.

    The key expires after ``ttl`` so abandoned sessions do not linger once the
    refresh token would have expired anyway.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        key: str = "anchor:credentials",
        ttl: timedelta = timedelta(days=90),
    ) -> None:
        self._redis = redis_client
        self._key = key
        self._ttl = ttl
        self._lock = asyncio.Lock()

    async def load(self) -> Optional[Credentials]:
        async with self._lock:
            try:
                value = await self._redis.get(self._key)
            except RedisError as e:
                logger.exception("Unable to read credentials under %s", self._key)
                sentry_sdk.capture_exception(e)
                return None
        if value is None:
            return None
        try:
            return Credentials.model_validate_json(value)
        except ValidationError:
            logger.warning("Discarding unreadable credentials under %s", self._key)
            await self.clear()
            return None

    async def save(self, credentials: Credentials) -> None:
        async with self._lock:
            try:
                await self._redis.set(
                    self._key,
                    credentials.model_dump_json(),
                    ex=int(self._ttl.total_seconds()),
                )
            except RedisError as e:
                raise StorageError(f"Unable to store credentials under {self._key}") from e

    async def clear(self) -> None:
        async with self._lock:
            try:
                await self._redis.delete(self._key)
            except RedisError as e:
                raise StorageError(f"Unable to clear credentials under {self._key}") from e
