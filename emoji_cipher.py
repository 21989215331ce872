# emoji_cipher.py
from __future__ import annotations
import base64
import binascii
import logging
import os
import struct
from dataclasses import dataclass
from typing import ClassVar, Optional, Tuple, Union

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

import emoji_alphabet
from cipher_errors import (
    MalformedToken,
    MissingPassphrase,
    RecipientKeyUnavailable,
    UnsupportedEnvelopeVersion,
    WrongPasswordOrCorruptData,
)

logger = logging.getLogger("emoji-cipher")

# --------- Config ---------
ALGORITHM = "AES-GCM"
WRAP_ALGORITHM = "RSA-OAEP-256"
PBKDF2_ITERS = 200_000
SALT_LEN = 16          # 128-bit salt
NONCE_LEN = 12         # 96-bit nonce (AES-GCM recommended)
KEY_LEN = 32           # 256-bit AES key
TAG_LEN = 16
WRAPPED_KEY_LEN = KEY_LEN + TAG_LEN
DEFAULT_MIME = "application/octet-stream"
TEXT_MIME = "text/plain; charset=utf-8"

_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None
)


# --------- Envelopes ---------
@dataclass(frozen=True)
class EnvelopeV1:
    """Payload encrypted directly under the password-derived key."""
    salt: bytes
    iv: bytes
    size: int = 0
    name: str = ""
    mime: str = DEFAULT_MIME

    version: ClassVar[int] = 1
    algorithm: ClassVar[str] = ALGORITHM


@dataclass(frozen=True)
class EnvelopeV2:
    """
    Payload encrypted under a random one-time data key. The data key is
    stored only in wrapped form: always under the password-derived key,
    and optionally under the admin RSA public key.
    """
    iv_file: bytes
    pw_salt: bytes
    pw_iv: bytes
    pw_wrapped_key: bytes
    admin_wrapped_key: Optional[bytes] = None
    size: int = 0
    name: str = ""
    mime: str = DEFAULT_MIME

    version: ClassVar[int] = 2
    algorithm: ClassVar[str] = ALGORITHM

    @property
    def wrap_alg(self) -> Optional[str]:
        return WRAP_ALGORITHM if self.admin_wrapped_key else None


Envelope = Union[EnvelopeV1, EnvelopeV2]


# --------- Crypto utils ---------
def pbkdf2_key(passphrase: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(), length=KEY_LEN, salt=salt, iterations=PBKDF2_ITERS
    )
    return kdf.derive(passphrase.encode("utf-8"))


def _require_passphrase(passphrase: str) -> None:
    if not isinstance(passphrase, str) or not passphrase.strip():
        raise MissingPassphrase()


def _aead_open(key: bytes, nonce: bytes, ct: bytes) -> bytes:
    try:
        return AESGCM(key).decrypt(nonce, ct, None)
    except InvalidTag as exc:
        raise WrongPasswordOrCorruptData() from exc


def _open_with_data_key(data_key: bytes, envelope: EnvelopeV2, ct: bytes) -> bytes:
    if len(data_key) != KEY_LEN:
        raise WrongPasswordOrCorruptData()
    return _aead_open(data_key, envelope.iv_file, ct)


def _b64_der(text: str) -> bytes:
    # keys are often pasted wrapped over several lines
    return base64.b64decode("".join(text.split()), validate=True)


# --------- Admin keys ---------
def load_recipient_key(spki_b64: str) -> rsa.RSAPublicKey:
    try:
        key = serialization.load_der_public_key(_b64_der(spki_b64))
    except (binascii.Error, ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise RecipientKeyUnavailable("Admin public key not usable") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise RecipientKeyUnavailable("Admin public key must be an RSA key")
    return key


def load_admin_private_key(pkcs8_b64: str) -> rsa.RSAPrivateKey:
    try:
        key = serialization.load_der_private_key(_b64_der(pkcs8_b64), password=None)
    except (binascii.Error, ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise RecipientKeyUnavailable("Admin private key not usable") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise RecipientKeyUnavailable("Admin private key must be an RSA key")
    return key


def generate_admin_keypair(bits: int = 2048) -> Tuple[str, str]:
    """Return ``(spki_b64, pkcs8_b64)`` for a fresh RSA key pair."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    spki = private_key.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    pkcs8 = private_key.private_bytes(
        serialization.Encoding.DER,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return base64.b64encode(spki).decode("ascii"), base64.b64encode(pkcs8).decode("ascii")


def _wrap_for_recipient(data_key: bytes, recipient_key_b64: str) -> bytes:
    public_key = load_recipient_key(recipient_key_b64)
    try:
        return public_key.encrypt(data_key, _OAEP)
    except ValueError as exc:
        # modulus too small for OAEP-SHA256
        raise RecipientKeyUnavailable("Admin public key not usable") from exc


# --------- Seal / open ---------
def seal(
    data: bytes,
    passphrase: str,
    recipient_key_b64: Optional[str] = None,
    *,
    name: str = "",
    mime: str = DEFAULT_MIME,
) -> Tuple[Envelope, bytes]:
    """
    Encrypt ``data`` under ``passphrase``.

    Without a recipient key this produces a v1 envelope. With one, the
    payload goes under a one-time data key (v2) wrapped for the password
    and, when the key loads, for the admin recipient as well. An unusable
    recipient key is logged and the envelope keeps the password copy only.
    """
    _require_passphrase(passphrase)

    if not (recipient_key_b64 and recipient_key_b64.strip()):
        salt = os.urandom(SALT_LEN)
        iv = os.urandom(NONCE_LEN)
        key = pbkdf2_key(passphrase, salt)
        ct = AESGCM(key).encrypt(iv, data, None)
        return EnvelopeV1(salt=salt, iv=iv, size=len(data), name=name, mime=mime), ct

    data_key = AESGCM.generate_key(bit_length=KEY_LEN * 8)
    iv_file = os.urandom(NONCE_LEN)
    ct = AESGCM(data_key).encrypt(iv_file, data, None)

    pw_salt = os.urandom(SALT_LEN)
    pw_iv = os.urandom(NONCE_LEN)
    pw_wrapped = AESGCM(pbkdf2_key(passphrase, pw_salt)).encrypt(pw_iv, data_key, None)

    admin_wrapped = None
    try:
        admin_wrapped = _wrap_for_recipient(data_key, recipient_key_b64)
    except RecipientKeyUnavailable as exc:
        logger.warning("%s; sealing with the password copy only", exc)

    envelope = EnvelopeV2(
        iv_file=iv_file,
        pw_salt=pw_salt,
        pw_iv=pw_iv,
        pw_wrapped_key=pw_wrapped,
        admin_wrapped_key=admin_wrapped,
        size=len(data),
        name=name,
        mime=mime,
    )
    return envelope, ct


def open_sealed(envelope: Envelope, ciphertext: bytes, passphrase: str) -> bytes:
    _require_passphrase(passphrase)
    if isinstance(envelope, EnvelopeV1):
        key = pbkdf2_key(passphrase, envelope.salt)
        return _aead_open(key, envelope.iv, ciphertext)
    if isinstance(envelope, EnvelopeV2):
        wrap_key = pbkdf2_key(passphrase, envelope.pw_salt)
        data_key = _aead_open(wrap_key, envelope.pw_iv, envelope.pw_wrapped_key)
        return _open_with_data_key(data_key, envelope, ciphertext)
    raise UnsupportedEnvelopeVersion(
        f"Unsupported envelope version: {getattr(envelope, 'version', None)!r}"
    )


def open_sealed_with_admin_key(envelope: Envelope, ciphertext: bytes, private_key_b64: str) -> bytes:
    if not isinstance(envelope, EnvelopeV2) or not envelope.admin_wrapped_key:
        raise RecipientKeyUnavailable("Admin decryption not available for this payload")
    private_key = load_admin_private_key(private_key_b64)
    try:
        data_key = private_key.decrypt(envelope.admin_wrapped_key, _OAEP)
    except ValueError as exc:
        raise WrongPasswordOrCorruptData() from exc
    return _open_with_data_key(data_key, envelope, ciphertext)


# --------- Inline framing ---------
# v1: 0x01 | salt | iv | ct
# v2: 0x02 | iv_file | pw_salt | pw_iv | pw_wrapped_key | u16 admin_len | admin_wrapped_key | ct
_V2_HEADER = struct.Struct(f">{NONCE_LEN}s{SALT_LEN}s{NONCE_LEN}s{WRAPPED_KEY_LEN}sH")


def pack_inline(envelope: Envelope, ciphertext: bytes) -> bytes:
    if isinstance(envelope, EnvelopeV1):
        return bytes([envelope.version]) + envelope.salt + envelope.iv + ciphertext
    if isinstance(envelope, EnvelopeV2):
        admin = envelope.admin_wrapped_key or b""
        header = _V2_HEADER.pack(
            envelope.iv_file, envelope.pw_salt, envelope.pw_iv, envelope.pw_wrapped_key, len(admin)
        )
        return bytes([envelope.version]) + header + admin + ciphertext
    raise UnsupportedEnvelopeVersion(
        f"Unsupported envelope version: {getattr(envelope, 'version', None)!r}"
    )


def unpack_inline(blob: bytes) -> Tuple[Envelope, bytes]:
    if not blob:
        raise MalformedToken("No valid encrypted data found")
    version, body = blob[0], blob[1:]

    if version == EnvelopeV1.version:
        if len(body) < SALT_LEN + NONCE_LEN + TAG_LEN:
            raise MalformedToken("Token too short - corrupted data")
        salt = body[:SALT_LEN]
        iv = body[SALT_LEN:SALT_LEN + NONCE_LEN]
        ct = body[SALT_LEN + NONCE_LEN:]
        return EnvelopeV1(salt=salt, iv=iv, size=len(ct) - TAG_LEN, mime=TEXT_MIME), ct

    if version == EnvelopeV2.version:
        if len(body) < _V2_HEADER.size:
            raise MalformedToken("Token too short - corrupted data")
        iv_file, pw_salt, pw_iv, pw_wrapped, admin_len = _V2_HEADER.unpack_from(body)
        rest = body[_V2_HEADER.size:]
        if len(rest) < admin_len + TAG_LEN:
            raise MalformedToken("Token too short - corrupted data")
        ct = rest[admin_len:]
        envelope = EnvelopeV2(
            iv_file=iv_file,
            pw_salt=pw_salt,
            pw_iv=pw_iv,
            pw_wrapped_key=pw_wrapped,
            admin_wrapped_key=rest[:admin_len] or None,
            size=len(ct) - TAG_LEN,
            mime=TEXT_MIME,
        )
        return envelope, ct

    raise UnsupportedEnvelopeVersion(f"Unsupported token version: {version}")


# --------- Text tokens ---------
def _parse_inline_token(token: str) -> Tuple[Envelope, bytes]:
    body = token.strip()
    if body.startswith(emoji_alphabet.FILE_SENTINEL):
        raise MalformedToken("This is a file token, not an encrypted message")
    if not body:
        raise MalformedToken("No valid encrypted data found")
    return unpack_inline(emoji_alphabet.glyphs_to_bytes(body))


def _to_text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedToken("Decrypted payload is not UTF-8 text") from exc


def encrypt_message(plaintext: str, passphrase: str, recipient_key_b64: Optional[str] = None) -> str:
    data = plaintext.encode("utf-8")
    envelope, ct = seal(data, passphrase, recipient_key_b64, mime=TEXT_MIME)
    token = emoji_alphabet.bytes_to_glyphs(pack_inline(envelope, ct))
    logger.info(
        "sealed message: version=%d bytes=%d glyphs=%d", envelope.version, len(data), len(token)
    )
    return token


def decrypt_message(token: str, passphrase: str) -> str:
    envelope, ct = _parse_inline_token(token)
    return _to_text(open_sealed(envelope, ct, passphrase))


def decrypt_message_with_admin_key(token: str, private_key_b64: str) -> str:
    envelope, ct = _parse_inline_token(token)
    return _to_text(open_sealed_with_admin_key(envelope, ct, private_key_b64))


if __name__ == "__main__":
    pw = "correct-horse"
    enc = encrypt_message("hello", pw)
    print("Encrypted Token:", enc)
    print("Token Length:", len(enc))
    print("Decrypted:", decrypt_message(enc, pw))
