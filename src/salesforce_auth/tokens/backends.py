"""Durable backends for the token store.

Provides a factory to create the backend selected by configuration:

- 'memory': no backend, tokens live for the process lifetime
- 'file': JSON file under the user's config directory (0600)
- 'redis': py-key-value redis store, shared across processes

If STORAGE_ENCRYPTION_KEY is set, persisted records are Fernet encrypted.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import msgspec
from cryptography.fernet import Fernet, InvalidToken

from ..logging_config import get_logger
from ..models import TokenRecord

if TYPE_CHECKING:
    from key_value.aio.protocols.key_value import AsyncKeyValue

    from ..config import AuthConfig

logger = get_logger("tokens.backends")

TOKEN_COLLECTION = "salesforce_tokens"
OWNER_INDEX_KEY = "__owners__"

_records_decoder = msgspec.json.Decoder(dict[str, TokenRecord])
_record_decoder = msgspec.json.Decoder(TokenRecord)


class TokenBackend(Protocol):
    """Persistence contract used by TokenStore."""

    async def load(self) -> dict[str, TokenRecord]: ...

    async def write(self, owner_id: str, record: TokenRecord) -> None: ...

    async def delete(self, owner_id: str) -> None: ...


class FileTokenBackend:
    """Single JSON file holding every owner's record.

    The directory is created 0700 and the file written 0600 through an
    atomic replace, so a crash never leaves a truncated token file. Disk
    work runs in a worker thread; writes are serialized by a lock and only
    update the in-memory copy once the file is replaced.
    """

    def __init__(self, path: str | Path, fernet: Fernet | None = None) -> None:
        self.path = Path(path).expanduser()
        self._fernet = fernet
        self._records: dict[str, TokenRecord] = {}
        self._lock = asyncio.Lock()

    async def load(self) -> dict[str, TokenRecord]:
        async with self._lock:
            raw = await asyncio.to_thread(self._read)
            if raw is None:
                self._records = {}
                return {}

            if self._fernet is not None:
                try:
                    raw = self._fernet.decrypt(raw)
                except InvalidToken as e:
                    raise ValueError(f"Cannot decrypt token file {self.path}") from e

            self._records = _records_decoder.decode(raw) if raw.strip() else {}
        logger.info("Loaded %d stored tokens from %s", len(self._records), self.path)
        return dict(self._records)

    async def write(self, owner_id: str, record: TokenRecord) -> None:
        async with self._lock:
            records = {**self._records, owner_id: record}
            await asyncio.to_thread(self._flush, self._encode(records))
            self._records = records
        logger.debug("Saved %d tokens to %s", len(records), self.path)

    async def delete(self, owner_id: str) -> None:
        async with self._lock:
            if owner_id not in self._records:
                return
            records = {k: v for k, v in self._records.items() if k != owner_id}
            await asyncio.to_thread(self._flush, self._encode(records))
            self._records = records

    def _encode(self, records: dict[str, TokenRecord]) -> bytes:
        payload = msgspec.json.encode(records)
        if self._fernet is not None:
            payload = self._fernet.encrypt(payload)
        return payload

    def _read(self) -> bytes | None:
        try:
            return self.path.read_bytes()
        except FileNotFoundError:
            return None

    def _flush(self, payload: bytes) -> None:
        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".tokens-")
        try:
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
            os.replace(tmp_path, self.path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise


class KeyValueTokenBackend:
    """Records stored in a py-key-value AsyncKeyValue collection.

    The store has no key listing in its base protocol, so the set of
    owners is kept under a dedicated index key.
    """

    def __init__(self, store: "AsyncKeyValue", collection: str = TOKEN_COLLECTION) -> None:
        self._store = store
        self._collection = collection

    async def _owners(self) -> list[str]:
        index = await self._store.get(OWNER_INDEX_KEY, collection=self._collection)
        return list(index.get("owners", [])) if index else []

    async def _save_owners(self, owners: list[str]) -> None:
        await self._store.put(
            OWNER_INDEX_KEY, {"owners": sorted(owners)}, collection=self._collection
        )

    async def load(self) -> dict[str, TokenRecord]:
        records: dict[str, TokenRecord] = {}
        for owner_id in await self._owners():
            value = await self._store.get(owner_id, collection=self._collection)
            if value and "record" in value:
                records[owner_id] = _record_decoder.decode(value["record"])
        logger.info("Loaded %d stored tokens from key-value store", len(records))
        return records

    async def write(self, owner_id: str, record: TokenRecord) -> None:
        await self._store.put(
            owner_id,
            {"record": msgspec.json.encode(record).decode()},
            collection=self._collection,
        )
        owners = await self._owners()
        if owner_id not in owners:
            await self._save_owners([*owners, owner_id])

    async def delete(self, owner_id: str) -> None:
        await self._store.delete(owner_id, collection=self._collection)
        owners = await self._owners()
        if owner_id in owners:
            owners.remove(owner_id)
            await self._save_owners(owners)


def _fernet_from_key(encryption_key: str) -> Fernet:
    """Use the key directly if it is a Fernet key, else derive one from it."""
    try:
        return Fernet(encryption_key.encode())
    except ValueError:
        derived = hashlib.sha256(encryption_key.encode()).digest()
        return Fernet(base64.urlsafe_b64encode(derived))


def create_token_backend(config: "AuthConfig") -> TokenBackend | None:
    """Create the token backend selected by ``config.token_storage_type``.

    Returns:
        The backend, or None for in-memory only storage

    Raises:
        ValueError: If an unknown storage type is configured
    """
    storage_type = config.token_storage_type.lower()
    encryption_key = config.encryption_key

    logger.info(
        "Creating token backend: type=%s, encrypted=%s",
        storage_type,
        bool(encryption_key),
    )

    if storage_type == "memory":
        return None

    if storage_type == "file":
        fernet = _fernet_from_key(encryption_key) if encryption_key else None
        return FileTokenBackend(config.token_file, fernet=fernet)

    if storage_type == "redis":
        from key_value.aio.stores.redis import RedisStore

        store: AsyncKeyValue = RedisStore(url=config.redis_url)
        logger.debug("Created Redis token backend: url=%s", config.redis_url)

        if encryption_key:
            from key_value.aio.wrappers.encryption.fernet import FernetEncryptionWrapper

            store = FernetEncryptionWrapper(store, fernet=_fernet_from_key(encryption_key))
            logger.debug("Applied Fernet encryption wrapper to token backend")

        return KeyValueTokenBackend(store)

    raise ValueError(f"Unknown token storage type: {storage_type}")
