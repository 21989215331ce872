# file_crypto.py
# File payloads: the ciphertext lives in a blob store, the emoji token
# carries only the envelope metadata and the storage locator.
from __future__ import annotations
import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import emoji_alphabet
from blob_store import DEFAULT_BUCKET
from cipher_errors import MalformedToken, UnsupportedEnvelopeVersion
from emoji_cipher import (
    ALGORITHM,
    DEFAULT_MIME,
    NONCE_LEN,
    SALT_LEN,
    WRAPPED_KEY_LEN,
    Envelope,
    EnvelopeV1,
    EnvelopeV2,
    open_sealed,
    open_sealed_with_admin_key,
    seal,
)

logger = logging.getLogger("emoji-cipher")

STORAGE_LOCAL = "local"


@dataclass(frozen=True)
class FileToken:
    envelope: Envelope
    object_id: str
    bucket: str = DEFAULT_BUCKET
    storage: str = STORAGE_LOCAL


# --------- Encrypt / decrypt ---------
def encrypt_file(
    data: bytes,
    name: str,
    mime: Optional[str],
    passphrase: str,
    recipient_key_b64: Optional[str] = None,
) -> Tuple[bytes, Envelope]:
    envelope, ct = seal(
        data, passphrase, recipient_key_b64, name=name or "", mime=mime or DEFAULT_MIME
    )
    logger.info("sealed file: version=%d bytes=%d", envelope.version, len(data))
    return ct, envelope


def decrypt_file(ciphertext: bytes, envelope: Envelope, passphrase: str) -> bytes:
    return open_sealed(envelope, ciphertext, passphrase)


def decrypt_file_with_admin_key(ciphertext: bytes, envelope: Envelope, private_key_b64: str) -> bytes:
    return open_sealed_with_admin_key(envelope, ciphertext, private_key_b64)


# --------- Metadata ---------
def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _field(meta: Dict[str, Any], key: str, length: Optional[int] = None) -> bytes:
    value = meta.get(key)
    if not isinstance(value, str):
        raise MalformedToken(f"Invalid token: missing {key}")
    try:
        raw = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedToken(f"Invalid token: bad {key}") from exc
    if length is not None and len(raw) != length:
        raise MalformedToken(f"Invalid token: bad {key}")
    return raw


def _size(meta: Dict[str, Any]) -> int:
    size = meta.get("size", 0)
    if not isinstance(size, int) or isinstance(size, bool) or size < 0:
        raise MalformedToken("Invalid token: bad size")
    return size


def envelope_to_meta(envelope: Envelope) -> Dict[str, Any]:
    meta: Dict[str, Any] = {
        "v": envelope.version,
        "alg": envelope.algorithm,
        "name": envelope.name,
        "mime": envelope.mime,
        "size": envelope.size,
    }
    if isinstance(envelope, EnvelopeV1):
        meta.update(salt_b64=_b64(envelope.salt), iv_b64=_b64(envelope.iv))
    elif isinstance(envelope, EnvelopeV2):
        meta.update(
            iv_file_b64=_b64(envelope.iv_file),
            pw_salt_b64=_b64(envelope.pw_salt),
            pw_iv_b64=_b64(envelope.pw_iv),
            pw_wrapped_key_b64=_b64(envelope.pw_wrapped_key),
        )
        if envelope.admin_wrapped_key:
            meta.update(
                admin_wrapped_key_b64=_b64(envelope.admin_wrapped_key),
                wrap_alg=envelope.wrap_alg,
            )
    else:
        raise UnsupportedEnvelopeVersion(
            f"Unsupported envelope version: {getattr(envelope, 'version', None)!r}"
        )
    return meta


def envelope_from_meta(meta: Dict[str, Any]) -> Envelope:
    if not isinstance(meta, dict) or "v" not in meta:
        raise MalformedToken("Invalid token: no format version")
    if meta.get("alg", ALGORITHM) != ALGORITHM:
        raise MalformedToken(f"Invalid token: unsupported cipher {meta.get('alg')!r}")

    version = meta["v"]
    name = meta.get("name") or ""
    mime = meta.get("mime") or DEFAULT_MIME
    if not isinstance(name, str) or not isinstance(mime, str):
        raise MalformedToken("Invalid token: bad file description")
    # bool is an int subclass; true must not pass for version 1
    if isinstance(version, bool) or not isinstance(version, int):
        raise UnsupportedEnvelopeVersion(f"Unsupported file format version: {version!r}")

    if version == EnvelopeV1.version:
        return EnvelopeV1(
            salt=_field(meta, "salt_b64", SALT_LEN),
            iv=_field(meta, "iv_b64", NONCE_LEN),
            size=_size(meta),
            name=name,
            mime=mime,
        )
    if version == EnvelopeV2.version:
        admin = None
        if meta.get("admin_wrapped_key_b64"):
            admin = _field(meta, "admin_wrapped_key_b64")
        return EnvelopeV2(
            iv_file=_field(meta, "iv_file_b64", NONCE_LEN),
            pw_salt=_field(meta, "pw_salt_b64", SALT_LEN),
            pw_iv=_field(meta, "pw_iv_b64", NONCE_LEN),
            pw_wrapped_key=_field(meta, "pw_wrapped_key_b64", WRAPPED_KEY_LEN),
            admin_wrapped_key=admin,
            size=_size(meta),
            name=name,
            mime=mime,
        )
    raise UnsupportedEnvelopeVersion(f"Unsupported file format version: {version!r}")


def file_token_to_meta(ref: FileToken) -> Dict[str, Any]:
    meta = envelope_to_meta(ref.envelope)
    meta.update(storage=ref.storage, bucket=ref.bucket, id=ref.object_id)
    return meta


# --------- Tokens ---------
def is_file_token(token: str) -> bool:
    return token.strip().startswith(emoji_alphabet.FILE_SENTINEL)


def make_file_token(ref: FileToken) -> str:
    raw = json.dumps(file_token_to_meta(ref), separators=(",", ":")).encode("utf-8")
    return emoji_alphabet.FILE_SENTINEL + emoji_alphabet.bytes_to_glyphs(raw)


def parse_file_token(token: str) -> FileToken:
    body = token.strip()
    if not body.startswith(emoji_alphabet.FILE_SENTINEL):
        raise MalformedToken("Invalid token: missing file prefix")
    raw = emoji_alphabet.glyphs_to_bytes(body[len(emoji_alphabet.FILE_SENTINEL):])
    try:
        meta = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedToken("Invalid token") from exc

    envelope = envelope_from_meta(meta)
    object_id = meta.get("id")
    if not isinstance(object_id, str) or not object_id:
        raise MalformedToken("Invalid token: no storage id")
    return FileToken(
        envelope=envelope,
        object_id=object_id,
        bucket=meta.get("bucket") or DEFAULT_BUCKET,
        storage=meta.get("storage") or STORAGE_LOCAL,
    )
