"""
crypto.py — the three crypto primitives the command channel is built from.

Why this exists:
- Keep every cryptography call in one place so the framing/session code can
  just say `encrypt`, `decrypt`, `checksum` and never touch padding or modes.
- Ciphertext travels as URL-safe Base64 without '=' padding, so it fits on a
  text line and never contains the ':' envelope delimiter.

What lives here:
- Diffie-Hellman over the fixed RFC 3526 2048-bit MODP group (the handshake
  itself is in handshake.py; this module only has the maths).
- AES-128-CBC + PKCS7, fresh random IV per message, IV prepended.
- SHA-256 hex checksum, compared in constant time.

Notes:
- CBC gives confidentiality only. Integrity is the checksum's job (see
  framing.py), which is why the two are separate layers.
"""

import base64
import binascii
import hashlib
import hmac
import os

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import padding, serialization
from cryptography.hazmat.primitives.asymmetric import dh
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import CipherUnavailableError, CryptoError

SESSION_KEY_BYTES = 16  # AES-128
BLOCK_BYTES = 16
CHECKSUM_HEX_LEN = 64  # SHA-256 rendered as hex

# RFC 3526, group 14 (2048-bit MODP). Both ends use the same group, so no
# per-connection parameter generation is needed.
MODP_2048_P = int(
    "FFFFFFFFFFFFFFFFC90FDAA22168C234C4C6628B80DC1CD1"
    "29024E088A67CC74020BBEA63B139B22514A08798E3404DD"
    "EF9519B3CD3A431B302B0A6DF25F14374FE1356D6D51C245"
    "E485B576625E7EC6F44C42E9A637ED6B0BFF5CB6F406B7ED"
    "EE386BFB5A899FA5AE9F24117C4B1FE649286651ECE45B3D"
    "C2007CB8A163BF0598DA48361C55D39A69163FA8FD24CF5F"
    "83655D23DCA3AD961C62F356208552BB9ED529077096966D"
    "670C354E4ABC9804F1746C08CA18217C32905E462E36CE3B"
    "E39E772C180E86039B2783A2EC07A28FB5C55DF06F4C52C9"
    "DE2BCBF6955817183995497CEA956AE515D2261898FA0510"
    "15728E5A8AACAA68FFFFFFFFFFFFFFFF",
    16,
)
MODP_2048_G = 2

# -----------------------------
# Base64 URL helpers (no padding)
# -----------------------------

def b64url_encode(data: bytes) -> str:
    """URL-safe Base64 without '=' padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    """Decode our URL-safe, no-padding Base64 back to bytes."""
    # Add the minimal padding back so Python's decoder is happy.
    pad_len = (-len(data)) % 4
    return base64.urlsafe_b64decode(data + "=" * pad_len)


# -------------
# DH key utils
# -------------

def dh_parameters() -> dh.DHParameters:
    """The shared 2048-bit group as a cryptography parameters object."""
    return dh.DHParameterNumbers(MODP_2048_P, MODP_2048_G).parameters()


def generate_dh_keypair():
    """Fresh ephemeral key pair in the shared group. Cheap; one per connection."""
    priv = dh_parameters().generate_private_key()
    return priv, priv.public_key()


def export_pubkey_b64url(pub: dh.DHPublicKey) -> str:
    """Export a public key as PEM, then Base64url-encode it so it fits one line."""
    pem = pub.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return b64url_encode(pem)


def import_pubkey_b64url(data: str) -> dh.DHPublicKey:
    """
    Inverse of export_pubkey_b64url().

    Raises ValueError for anything that is not a DH public key in our group;
    the handshake turns that into HandshakeError.
    """
    try:
        pem = b64url_decode(data)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Peer key is not valid base64: {exc}") from exc
    pub = serialization.load_pem_public_key(pem)
    if not isinstance(pub, dh.DHPublicKey):
        raise ValueError("Peer key is not a Diffie-Hellman public key")
    numbers = pub.public_numbers().parameter_numbers
    if numbers.p != MODP_2048_P or numbers.g != MODP_2048_G:
        raise ValueError("Peer key uses a different DH group")
    return pub


def derive_session_key(priv: dh.DHPrivateKey, peer_pub: dh.DHPublicKey) -> bytes:
    """Run the agreement and keep the leading 16 bytes as the AES-128 key."""
    shared = priv.exchange(peer_pub)
    return shared[:SESSION_KEY_BYTES]


# ---------------------------
# Encryption & Decryption API
# ---------------------------

def _check_key(key: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != SESSION_KEY_BYTES:
        raise CryptoError("Session key missing or not 16 bytes")


def _aes_cbc(key: bytes, iv: bytes) -> Cipher:
    try:
        return Cipher(algorithms.AES(bytes(key)), modes.CBC(iv))
    except UnsupportedAlgorithm as exc:
        raise CipherUnavailableError(f"AES-CBC not available: {exc}") from exc


def encrypt(plaintext: str, key: bytes) -> str:
    """
    Encrypt a text message with AES-128-CBC and return Base64url(IV || ct).

    A new random IV is drawn for every call, so the same plaintext never
    produces the same ciphertext twice.
    """
    _check_key(key)
    iv = os.urandom(BLOCK_BYTES)
    padder = padding.PKCS7(BLOCK_BYTES * 8).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    encryptor = _aes_cbc(key, iv).encryptor()
    ct = encryptor.update(padded) + encryptor.finalize()
    return b64url_encode(iv + ct)


def decrypt(ciphertext: str, key: bytes) -> str:
    """Reverse of encrypt(). Any malformed input surfaces as CryptoError."""
    _check_key(key)
    try:
        raw = b64url_decode(ciphertext)
    except (binascii.Error, ValueError) as exc:
        raise CryptoError(f"Ciphertext is not valid base64: {exc}") from exc

    # IV plus at least one block, and whole blocks only.
    if len(raw) < 2 * BLOCK_BYTES or len(raw) % BLOCK_BYTES:
        raise CryptoError(f"Ciphertext has invalid length {len(raw)}")

    iv, ct = raw[:BLOCK_BYTES], raw[BLOCK_BYTES:]
    decryptor = _aes_cbc(key, iv).decryptor()
    padded = decryptor.update(ct) + decryptor.finalize()
    try:
        unpadder = padding.PKCS7(BLOCK_BYTES * 8).unpadder()
        data = unpadder.update(padded) + unpadder.finalize()
        return data.decode("utf-8")
    except ValueError as exc:
        # Bad padding and bad UTF-8 both land here (UnicodeDecodeError is a ValueError).
        raise CryptoError(f"Could not decrypt message: {exc}") from exc


# -------------------------
# Checksum API
# -------------------------

def checksum(payload: str) -> str:
    """SHA-256 over the UTF-8 bytes of payload, as 64 lowercase hex chars."""
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def validate(payload: str, digest: str) -> bool:
    """Recompute the checksum and compare in constant time."""
    try:
        expected = checksum(payload).encode("ascii")
        given = digest.encode("ascii")
    except (UnicodeEncodeError, AttributeError):
        return False
    return hmac.compare_digest(expected, given)
