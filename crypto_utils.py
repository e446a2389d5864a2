# crypto_utils.py
import hashlib
import json
import secrets
from typing import Any, Dict

from eth_account import Account
from eth_account.messages import encode_defunct
from hexbytes import HexBytes


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def canonical_json(payload: Any) -> bytes:
    # deterministic JSON canonicalization (sort keys, no whitespace)
    return json.dumps(payload, sort_keys=True, separators=(',', ':')).encode()


def cid_from_payload(payload: dict) -> str:
    return sha256_hex(canonical_json(payload))


def normalize_address(address: str) -> str:
    return (address or "").strip().lower()


def same_address(a: str, b: str) -> bool:
    return normalize_address(a) == normalize_address(b)


# --- Conversation helpers ---
def conversation_id(a: str, b: str) -> str:
    """Deterministic id for a 1:1 chat: sha256 of sorted addresses."""
    addrs = sorted([normalize_address(a), normalize_address(b)])
    raw = (addrs[0] + '|' + addrs[1]).encode()
    return sha256_hex(raw)


def new_message_id(payload: Dict[str, Any]) -> str:
    """Stable id assigned by the sender at append time.

    A random nonce keeps two identical file references (sent in cleartext)
    from colliding.
    """
    return cid_from_payload({**payload, "nonce": secrets.token_hex(16)})


# --- Record signatures (ECDSA via eth-account) ---
def record_signing_text(kind: str, author: str, data: Dict[str, Any]) -> str:
    return json.dumps([kind, normalize_address(author), data], sort_keys=True, separators=(',', ':'))


def sign_message_hex(privkey_hex: str, text: str) -> str:
    acct = Account.from_key(privkey_hex)
    msg = encode_defunct(text=text)
    sig = Account.sign_message(msg, acct.key).signature.hex()
    return sig


def verify_signature(sender: str, message: str, sig_hex: str) -> bool:
    try:
        msg = encode_defunct(text=message)
        recovered = Account.recover_message(msg, signature=HexBytes(sig_hex))
        return recovered.lower() == sender.lower()
    except Exception as e:
        print("⚠️ Signature verification failed:", e)
        return False


def envelope_id(ciphertext: str) -> str:
    """Key under which a sender retains the plaintext of an envelope it sealed."""
    return sha256_hex(ciphertext.encode())
