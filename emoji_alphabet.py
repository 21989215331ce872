# emoji_alphabet.py
from __future__ import annotations
import base64
import binascii
from typing import Dict

from cipher_errors import InvalidGlyph, MalformedToken, UnsupportedSymbol

# --------- Tables ---------
B64_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/="

# Single codepoints only: no variation selectors, no ZWJ sequences
GLYPHS = (
    "😀", "😁", "😂", "🤣", "😃", "😄", "😅", "😆", "😉", "😊",
    "😋", "😎", "😍", "😘", "🥰", "🙂", "🤗", "🤔", "🤨", "😐",
    "😑", "😶", "🙄", "😏", "😣", "😥", "😮", "🤐", "😯", "😪",
    "😫", "🥱", "😴", "😌", "😜", "😝", "🤤", "😒", "😓", "😔",
    "😕", "🙃", "🤑", "😲", "😟", "😧", "😦", "😨", "😰", "😱",
    "😳", "🥺", "😵", "🤯", "🤪", "🥳", "😇", "🤓", "🧐", "🤠",
    "😷", "🤒", "🤕", "🤢", "🤮",
)

FILE_SENTINEL = "🔐"

SYMBOL_TO_GLYPH: Dict[str, str] = dict(zip(B64_ALPHABET, GLYPHS))
GLYPH_TO_SYMBOL: Dict[str, str] = {g: s for s, g in SYMBOL_TO_GLYPH.items()}

if len(GLYPHS) != len(B64_ALPHABET) or len(GLYPH_TO_SYMBOL) != len(GLYPHS):
    raise RuntimeError("glyph table must be a bijection over the base64 alphabet")


# --------- Symbol <-> glyph ---------
def encode(symbols: str) -> str:
    out = []
    for ch in symbols:
        glyph = SYMBOL_TO_GLYPH.get(ch)
        if glyph is None:
            raise UnsupportedSymbol(f"Unsupported character in base64 mapping: {ch!r}")
        out.append(glyph)
    return "".join(out)


def decode(glyphs: str) -> str:
    # str iteration is per codepoint, so astral-plane emoji come out whole
    out = []
    for glyph in glyphs:
        ch = GLYPH_TO_SYMBOL.get(glyph)
        if ch is None:
            raise InvalidGlyph("Please enter valid encrypted emojis only")
        out.append(ch)
    return "".join(out)


# --------- Bytes <-> glyph ---------
def bytes_to_glyphs(data: bytes) -> str:
    return encode(base64.b64encode(data).decode("ascii"))


def glyphs_to_bytes(text: str) -> bytes:
    b64 = decode(text)
    try:
        return base64.b64decode(b64.encode("ascii"), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedToken("Token is truncated or damaged") from exc


def is_glyph_string(text: str) -> bool:
    """
    Strict check that ``text`` could be a token: every codepoint is a
    glyph, with an optional leading file sentinel.
    """
    body = text.strip()
    if body.startswith(FILE_SENTINEL):
        body = body[len(FILE_SENTINEL):]
    return bool(body) and all(g in GLYPH_TO_SYMBOL for g in body)
