# cipher_errors.py
from __future__ import annotations


class EmojiCipherError(ValueError):
    """Base class for every error raised by the codec layers."""


class UnsupportedSymbol(EmojiCipherError):
    pass


class MalformedToken(EmojiCipherError):
    pass


class InvalidGlyph(MalformedToken):
    pass


class UnsupportedEnvelopeVersion(EmojiCipherError):
    pass


class WrongPasswordOrCorruptData(EmojiCipherError):
    def __init__(self, message: str = "Wrong password or corrupted data"):
        super().__init__(message)


class RecipientKeyUnavailable(EmojiCipherError):
    pass


class MissingPassphrase(EmojiCipherError):
    def __init__(self, message: str = "passphrase is required"):
        super().__init__(message)
