import base64
import json
import os
import sys
import unittest
from unittest.mock import patch
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

import emoji_alphabet
import emoji_cipher
import file_crypto
from blob_store import MemoryBlobStore
from cipher_errors import (
    InvalidGlyph,
    MalformedToken,
    RecipientKeyUnavailable,
    UnsupportedEnvelopeVersion,
    WrongPasswordOrCorruptData,
)
from emoji_cipher import EnvelopeV1, EnvelopeV2
from file_crypto import FileToken


def _token_for_meta(meta) -> str:
    raw = json.dumps(meta).encode("utf-8")
    return emoji_alphabet.FILE_SENTINEL + emoji_alphabet.bytes_to_glyphs(raw)


class FileCryptoTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.public_b64, cls.private_b64 = emoji_cipher.generate_admin_keypair()

    def setUp(self) -> None:
        patcher = patch.object(emoji_cipher, "PBKDF2_ITERS", 1_000)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.store = MemoryBlobStore()

    def _encrypt_and_store(self, data: bytes, recipient=None):
        cipher, envelope = file_crypto.encrypt_file(data, "notes.txt", "text/plain", "pw", recipient)
        object_id = self.store.put(cipher, "notes.txt")
        return file_crypto.make_file_token(FileToken(envelope=envelope, object_id=object_id))

    def test_binary_roundtrip_through_store(self):
        data = os.urandom(4096) + bytes(range(256))
        token = self._encrypt_and_store(data)
        self.assertTrue(token.startswith(emoji_alphabet.FILE_SENTINEL))
        self.assertTrue(emoji_alphabet.is_glyph_string(token))

        ref = file_crypto.parse_file_token(token)
        self.assertIsInstance(ref.envelope, EnvelopeV1)
        self.assertEqual(ref.envelope.name, "notes.txt")
        self.assertEqual(ref.envelope.mime, "text/plain")
        self.assertEqual(ref.envelope.size, len(data))
        plain = file_crypto.decrypt_file(self.store.get(ref.object_id), ref.envelope, "pw")
        self.assertEqual(plain, data)

    def test_empty_file_roundtrip(self):
        token = self._encrypt_and_store(b"")
        ref = file_crypto.parse_file_token(token)
        self.assertEqual(file_crypto.decrypt_file(self.store.get(ref.object_id), ref.envelope, "pw"), b"")

    def test_missing_mime_defaults(self):
        _, envelope = file_crypto.encrypt_file(b"x", "", None, "pw")
        self.assertEqual(envelope.mime, emoji_cipher.DEFAULT_MIME)
        self.assertEqual(envelope.name, "")

    def test_wrong_password(self):
        ref = file_crypto.parse_file_token(self._encrypt_and_store(b"secret"))
        with self.assertRaises(WrongPasswordOrCorruptData):
            file_crypto.decrypt_file(self.store.get(ref.object_id), ref.envelope, "nope")

    def test_tampered_stored_ciphertext(self):
        ref = file_crypto.parse_file_token(self._encrypt_and_store(b"secret"))
        cipher = bytearray(self.store.get(ref.object_id))
        cipher[0] ^= 0xFF
        with self.assertRaises(WrongPasswordOrCorruptData):
            file_crypto.decrypt_file(bytes(cipher), ref.envelope, "pw")

    def test_v2_dual_recovery(self):
        data = b"\x00\x01 quarterly report \xff"
        token = self._encrypt_and_store(data, self.public_b64)
        ref = file_crypto.parse_file_token(token)
        self.assertIsInstance(ref.envelope, EnvelopeV2)
        cipher = self.store.get(ref.object_id)
        self.assertEqual(file_crypto.decrypt_file(cipher, ref.envelope, "pw"), data)
        self.assertEqual(
            file_crypto.decrypt_file_with_admin_key(cipher, ref.envelope, self.private_b64), data
        )

    def test_admin_path_requires_admin_copy(self):
        ref = file_crypto.parse_file_token(self._encrypt_and_store(b"x"))
        with self.assertRaises(RecipientKeyUnavailable):
            file_crypto.decrypt_file_with_admin_key(self.store.get(ref.object_id), ref.envelope, self.private_b64)


class MetaTests(unittest.TestCase):
    def test_v1_meta_fields(self):
        envelope = EnvelopeV1(salt=b"s" * 16, iv=b"i" * 12, size=3, name="a.bin", mime="x/y")
        meta = file_crypto.envelope_to_meta(envelope)
        self.assertEqual(meta["v"], 1)
        self.assertEqual(meta["alg"], "AES-GCM")
        self.assertEqual(base64.b64decode(meta["salt_b64"]), b"s" * 16)
        self.assertNotIn("pw_wrapped_key_b64", meta)
        self.assertEqual(file_crypto.envelope_from_meta(meta), envelope)

    def test_v2_meta_fields(self):
        envelope = EnvelopeV2(
            iv_file=b"f" * 12, pw_salt=b"s" * 16, pw_iv=b"p" * 12,
            pw_wrapped_key=b"w" * 48, admin_wrapped_key=b"a" * 256, size=9,
        )
        meta = file_crypto.envelope_to_meta(envelope)
        self.assertEqual(meta["v"], 2)
        self.assertEqual(meta["wrap_alg"], "RSA-OAEP-256")
        self.assertEqual(file_crypto.envelope_from_meta(meta), envelope)

    def test_v2_meta_without_admin_copy(self):
        envelope = EnvelopeV2(iv_file=b"f" * 12, pw_salt=b"s" * 16, pw_iv=b"p" * 12, pw_wrapped_key=b"w" * 48)
        meta = file_crypto.envelope_to_meta(envelope)
        self.assertNotIn("admin_wrapped_key_b64", meta)
        self.assertNotIn("wrap_alg", meta)
        self.assertIsNone(file_crypto.envelope_from_meta(meta).admin_wrapped_key)

    def test_unknown_version(self):
        with self.assertRaises(UnsupportedEnvelopeVersion):
            file_crypto.envelope_from_meta({"v": 3, "alg": "AES-GCM"})

    def test_boolean_version_is_rejected(self):
        meta = file_crypto.envelope_to_meta(EnvelopeV1(salt=b"s" * 16, iv=b"i" * 12))
        meta["v"] = True
        with self.assertRaises(UnsupportedEnvelopeVersion):
            file_crypto.envelope_from_meta(meta)
        meta["v"] = "1"
        with self.assertRaises(UnsupportedEnvelopeVersion):
            file_crypto.envelope_from_meta(meta)

    def test_missing_version(self):
        with self.assertRaises(MalformedToken):
            file_crypto.envelope_from_meta({"alg": "AES-GCM"})

    def test_bad_field_lengths(self):
        meta = file_crypto.envelope_to_meta(EnvelopeV1(salt=b"s" * 16, iv=b"i" * 12))
        meta["iv_b64"] = base64.b64encode(b"short").decode("ascii")
        with self.assertRaises(MalformedToken):
            file_crypto.envelope_from_meta(meta)

    def test_bad_size(self):
        meta = file_crypto.envelope_to_meta(EnvelopeV1(salt=b"s" * 16, iv=b"i" * 12))
        meta["size"] = "big"
        with self.assertRaises(MalformedToken):
            file_crypto.envelope_from_meta(meta)

    def test_foreign_cipher(self):
        meta = file_crypto.envelope_to_meta(EnvelopeV1(salt=b"s" * 16, iv=b"i" * 12))
        meta["alg"] = "AES-CBC"
        with self.assertRaises(MalformedToken):
            file_crypto.envelope_from_meta(meta)


class TokenTests(unittest.TestCase):
    def setUp(self) -> None:
        self.envelope = EnvelopeV1(salt=b"s" * 16, iv=b"i" * 12, size=1, name="n", mime="m/t")

    def test_token_roundtrip(self):
        ref = FileToken(envelope=self.envelope, object_id="cipher/1-abc.bin", bucket="b")
        parsed = file_crypto.parse_file_token("\n" + file_crypto.make_file_token(ref) + " ")
        self.assertEqual(parsed, ref)

    def test_is_file_token(self):
        ref = FileToken(envelope=self.envelope, object_id="cipher/1-abc.bin")
        self.assertTrue(file_crypto.is_file_token(file_crypto.make_file_token(ref)))
        self.assertFalse(file_crypto.is_file_token("😀😁"))

    def test_missing_sentinel(self):
        ref = FileToken(envelope=self.envelope, object_id="cipher/1-abc.bin")
        token = file_crypto.make_file_token(ref)
        with self.assertRaises(MalformedToken):
            file_crypto.parse_file_token(token[1:])

    def test_missing_object_id(self):
        meta = file_crypto.envelope_to_meta(self.envelope)
        with self.assertRaises(MalformedToken):
            file_crypto.parse_file_token(_token_for_meta(meta))

    def test_not_json(self):
        with self.assertRaises(MalformedToken):
            file_crypto.parse_file_token(
                emoji_alphabet.FILE_SENTINEL + emoji_alphabet.bytes_to_glyphs(b"\xff not json")
            )

    def test_invalid_glyph(self):
        ref = FileToken(envelope=self.envelope, object_id="cipher/1-abc.bin")
        token = file_crypto.make_file_token(ref)
        with self.assertRaises(InvalidGlyph):
            file_crypto.parse_file_token(token + "?")


if __name__ == "__main__":
    unittest.main()
