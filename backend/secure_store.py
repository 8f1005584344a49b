# secure_store.py
"""
Encrypted key-value storage for session data.

Values are AES-GCM encrypted with a 256-bit device key that lives in a
separate backend from the data. Stored form: base64(nonce[12] + ciphertext).
Anything that fails to decrypt reads as missing.
"""

import asyncio
import base64
import binascii
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from constants import STORAGE_KEYS

logger = logging.getLogger("resusflow.storage")

NONCE_BYTES = 12

class StorageError(OSError):
    """The backing store could not be read or written."""
    pass

# --- 1. PLAIN BACKENDS (synchronous, string values) ---

class MemoryBackend:
    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str):
        self._data[key] = value

    def delete(self, key: str):
        self._data.pop(key, None)

class JsonFileBackend:
    """
    One JSON object per file. Writes go to a temp file in the same directory
    and are swapped in with os.replace, so a crash never leaves half a file.
    """

    def __init__(self, path):
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StorageError(f"Cannot read {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"Unexpected content in {self.path}")
        return data

    def _write(self, data: Dict[str, str]):
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=self.path.name, suffix='.tmp')
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(data, f)
                os.replace(tmp, self.path)
            except BaseException:
                os.unlink(tmp)
                raise
        except OSError as e:
            raise StorageError(f"Cannot write {self.path}: {e}") from e

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)

    def set(self, key: str, value: str):
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def delete(self, key: str):
        with self._lock:
            data = self._read()
            if data.pop(key, None) is not None:
                self._write(data)

# --- 2. ENCRYPTION LAYER (async) ---

class EncryptedStore:

    def __init__(self, backend, key_backend):
        self._backend = backend
        self._key_backend = key_backend
        self._aesgcm: Optional[AESGCM] = None
        self._key_lock = asyncio.Lock()

    async def _cipher(self) -> AESGCM:
        async with self._key_lock:
            if self._aesgcm is None:
                stored = await asyncio.to_thread(self._key_backend.get, STORAGE_KEYS.ENCRYPTION_KEY)
                if stored is None:
                    key = AESGCM.generate_key(bit_length=256)
                    await asyncio.to_thread(self._key_backend.set, STORAGE_KEYS.ENCRYPTION_KEY,
                                            base64.b64encode(key).decode('ascii'))
                    logger.info("Generated new session encryption key")
                else:
                    try:
                        key = base64.b64decode(stored, validate=True)
                    except binascii.Error as e:
                        raise StorageError("Stored encryption key is not valid base64") from e
                try:
                    self._aesgcm = AESGCM(key)
                except ValueError as e:
                    raise StorageError(f"Stored encryption key is unusable: {e}") from e
            return self._aesgcm

    def _encrypt(self, cipher: AESGCM, plaintext: str) -> str:
        nonce = os.urandom(NONCE_BYTES)
        sealed = cipher.encrypt(nonce, plaintext.encode('utf-8'), None)
        return base64.b64encode(nonce + sealed).decode('ascii')

    def _decrypt(self, cipher: AESGCM, blob: str) -> Optional[str]:
        try:
            raw = base64.b64decode(blob, validate=True)
            if len(raw) <= NONCE_BYTES:
                return None
            return cipher.decrypt(raw[:NONCE_BYTES], raw[NONCE_BYTES:], None).decode('utf-8')
        except (InvalidTag, binascii.Error, UnicodeDecodeError, ValueError):
            return None

    async def get(self, key: str) -> Optional[str]:
        blob = await asyncio.to_thread(self._backend.get, key)
        if blob is None:
            return None
        plaintext = self._decrypt(await self._cipher(), blob)
        if plaintext is None:
            logger.warning(f"Could not decrypt '{key}', treating as missing")
        return plaintext

    async def set(self, key: str, plaintext: str):
        blob = self._encrypt(await self._cipher(), plaintext)
        await asyncio.to_thread(self._backend.set, key, blob)

    async def delete(self, key: str):
        await asyncio.to_thread(self._backend.delete, key)

def open_store(data_dir) -> EncryptedStore:
    """File-backed store: data and key in separate files under `data_dir`."""
    root = Path(data_dir).expanduser()
    return EncryptedStore(JsonFileBackend(root / 'sessions.json'), JsonFileBackend(root / 'keys.json'))

def memory_store() -> EncryptedStore:
    return EncryptedStore(MemoryBackend(), MemoryBackend())
