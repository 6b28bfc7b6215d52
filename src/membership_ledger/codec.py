"""membership_ledger.codec

Reversible, keyed encoding of a QuestionMap into a single spreadsheet cell
("mapping token").

Scheme:
  - payload: compact JSON list of [question_id, attribute] pairs, in
    registration order (order matters: last-registered wins on ingestion)
  - cipher: AES-256-CBC with PKCS7 padding
  - key: SHA-256 of the process-wide mapping secret; one secret for every ledger
  - iv: 16 random bytes per ledger, stored base64 in the ledger settings
  - token: standard base64 of the ciphertext

The same map, key and iv always give the same token, so a snapshot that
round-trips through the spreadsheet unedited is a no-op. The token is opaque
outside its ledger; confidentiality is not a goal.

Usage:
    from membership_ledger.codec import decode, encode, generate_iv

    iv = generate_iv()
    token = encode({"2": MemberAttribute.EXTERNAL_ID}, "secret", iv)
    assert decode(token, "secret", iv) == {"2": MemberAttribute.EXTERNAL_ID}
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from membership_ledger.errors import DecodeError
from membership_ledger.models import MemberAttribute, QuestionMap

IV_BYTES = 16
_BLOCK_BITS = 128


def derive_key(secret: str | bytes) -> bytes:
    """Stretch the configured secret to a 32-byte AES key."""
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    return hashlib.sha256(secret).digest()


def generate_iv() -> str:
    """Return a fresh base64 iv for a new ledger."""
    return base64.b64encode(os.urandom(IV_BYTES)).decode("ascii")


def _iv_bytes(iv: str) -> bytes:
    try:
        raw = base64.b64decode(iv, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"mapping iv is not valid base64: {iv!r}") from exc
    if len(raw) != IV_BYTES:
        raise ValueError(f"mapping iv must decode to {IV_BYTES} bytes, got {len(raw)}")
    return raw


def _cipher(key: str | bytes, iv: str) -> Cipher:
    return Cipher(algorithms.AES(derive_key(key)), modes.CBC(_iv_bytes(iv)))


def encode(question_map: QuestionMap, key: str | bytes, iv: str) -> str:
    """Encode *question_map* into a mapping token.

    Raises ValueError if *iv* is not a base64 16-byte value.
    """
    pairs = [[qid, attr.value] for qid, attr in question_map.items()]
    plaintext = json.dumps(pairs, separators=(",", ":")).encode("utf-8")

    padder = padding.PKCS7(_BLOCK_BITS).padder()
    padded = padder.update(plaintext) + padder.finalize()

    encryptor = _cipher(key, iv).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return base64.b64encode(ciphertext).decode("ascii")


def decode(token: str, key: str | bytes, iv: str) -> QuestionMap:
    """Decode a mapping token produced by encode() with the same key and iv.

    Raises DecodeError when the token is malformed, truncated, or was produced
    with a different key or iv.
    """
    try:
        cipher = _cipher(key, iv)
    except ValueError as exc:
        raise DecodeError(str(exc)) from exc

    try:
        ciphertext = base64.b64decode(token.strip(), validate=True)
    except (binascii.Error, ValueError, AttributeError) as exc:
        raise DecodeError("mapping token is not valid base64") from exc
    if not ciphertext or len(ciphertext) % (_BLOCK_BITS // 8):
        raise DecodeError("mapping token is truncated")

    decryptor = cipher.decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(_BLOCK_BITS).unpadder()
    try:
        plaintext = unpadder.update(padded) + unpadder.finalize()
        pairs = json.loads(plaintext.decode("utf-8"))
    except ValueError as exc:
        # bad padding, bad utf-8 and bad JSON all surface as ValueError
        raise DecodeError("mapping token does not decode with this key/iv") from exc

    if not isinstance(pairs, list):
        raise DecodeError("mapping token payload is not a list")
    result: QuestionMap = {}
    for pair in pairs:
        if not (isinstance(pair, list) and len(pair) == 2 and isinstance(pair[0], str)):
            raise DecodeError(f"malformed mapping entry: {pair!r}")
        try:
            result[pair[0]] = MemberAttribute(pair[1])
        except ValueError as exc:
            raise DecodeError(f"unknown attribute in mapping token: {pair[1]!r}") from exc
    return result
