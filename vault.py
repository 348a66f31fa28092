# vault.py
# On-device data directory, AES-GCM helpers and the vault key file.

import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from threading import RLock
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from applog import logger

try:
    from jnius import autoclass
except ImportError:
    autoclass = None

DATA_DIR_NAME = "medcabinet_data"
NONCE_SIZE = 12
KEY_SIZE = 32

CRYPTO_LOCK = RLock()


def on_android() -> bool:
    return autoclass is not None and "ANDROID_ARGUMENT" in os.environ


def _is_writable_dir(p: Path) -> bool:
    try:
        p.mkdir(parents=True, exist_ok=True)
        t = p / f".writetest.{uuid.uuid4().hex}"
        t.write_text("ok", encoding="utf-8")
        t.unlink(missing_ok=True)
        return True
    except OSError:
        return False


def _android_files_dir() -> Optional[Path]:
    if not on_android():
        return None
    try:
        PythonActivity = autoclass("org.kivy.android.PythonActivity")
        activity = PythonActivity.mActivity
        if activity is None:
            PythonService = autoclass("org.kivy.android.PythonService")
            activity = PythonService.mService
        return Path(str(activity.getFilesDir().getAbsolutePath()))
    except Exception:
        logger.exception("android files dir lookup failed")
        return None


def app_base_dir() -> Path:
    p = os.environ.get("ANDROID_PRIVATE")
    if p:
        d = Path(p) / DATA_DIR_NAME
        if _is_writable_dir(d):
            return d

    af = _android_files_dir()
    if af:
        d = af / DATA_DIR_NAME
        if _is_writable_dir(d):
            return d

    d = Path(__file__).resolve().parent / DATA_DIR_NAME
    d.mkdir(parents=True, exist_ok=True)
    return d


@dataclass(frozen=True)
class VaultPaths:
    base: Path
    db_path: Path
    key_path: Path
    log_path: Path
    tmp_dir: Path

    @classmethod
    def under(cls, base: Path) -> "VaultPaths":
        base = Path(base)
        tmp = base / "tmp"
        tmp.mkdir(parents=True, exist_ok=True)
        return cls(
            base=base,
            db_path=base / "cabinet.db.aes",
            key_path=base / ".enc_key",
            log_path=base / "app.log",
            tmp_dir=tmp,
        )

    @classmethod
    def default(cls) -> "VaultPaths":
        return cls.under(app_base_dir())


def atomic_write_bytes(path: Path, data: bytes):
    tmp = path.with_suffix(path.suffix + f".tmp.{uuid.uuid4().hex}")
    tmp.parent.mkdir(parents=True, exist_ok=True)
    tmp.write_bytes(data)
    tmp.replace(path)


def aes_encrypt(data: bytes, key: bytes) -> bytes:
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, data, None)


def aes_decrypt(data: bytes, key: bytes) -> bytes:
    if not data or len(data) < NONCE_SIZE:
        raise InvalidTag("ciphertext too short")
    nonce, ct = data[:NONCE_SIZE], data[NONCE_SIZE:]
    return AESGCM(key).decrypt(nonce, ct, None)


def load_key(key_path: Path) -> Optional[bytes]:
    if not key_path.exists():
        return None
    d = key_path.read_bytes()
    return d[:KEY_SIZE] if len(d) >= KEY_SIZE else None


def get_or_create_key(key_path: Path) -> bytes:
    with CRYPTO_LOCK:
        k = load_key(key_path)
        if k:
            return k
        key = AESGCM.generate_key(bit_length=256)
        atomic_write_bytes(key_path, key)
        logger.info("vault key created")
        return key
