"""
BIP-352 Silent Payments Engine
==============================
- Sender: turns a UTXO set plus a list of targets (plain addresses or
  ``sp1...`` payment codes) into one-time BIP-341 taproot outputs
- Receiver: derives scan/spend keys from a BIP-39 seed, computes the
  per-transaction tweak and detects owned outputs with their spending keys
- secp256k1 arithmetic via ``coincurve`` (libsecp256k1)
- Bech32m payment codes and taproot addresses via ``embit.bech32``

Dependencies:
    pip install coincurve embit pycryptodome base58 mnemonic

Derivation summary (BIP-352):

    a            = sum of eligible input keys (taproot keys with odd Y negated)
    A            = a·G
    input_hash   = hash_BIP0352/Inputs(outpoint_L || A)
    S            = input_hash·a·B_scan        (sender)
                 = b_scan·(input_hash·A)       (receiver, tweak = input_hash·A)
    t_k          = hash_BIP0352/SharedSecret(S || ser32(k))
    P_k          = B_spend + t_k·G
    d_k          = b_spend + t_k

Scope Notes:
    - Coin selection, fee calculation, transaction signing and broadcast
      are left to the caller.
    - Nothing is persisted.  Every function is a pure computation over its
      arguments and is safe to call from several threads at once.
    - Labels (``BIP0352/Label`` sub-addresses) are not applied when
      scanning; ``scan_outputs`` is the place to add them.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import struct
from dataclasses import dataclass, field
from enum import Enum
from functools import reduce
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

# secp256k1 arithmetic: coincurve (libsecp256k1)
from coincurve import PrivateKey as _Secp256k1PrivateKey
from coincurve import PublicKey as _Secp256k1PublicKey

# Bech32m payment codes and taproot addresses
from embit.bech32 import CHARSET as _BECH32_CHARSET
from embit.bech32 import Encoding as _Bech32Encoding
from embit.bech32 import bech32_encode as _bech32_encode_words
from embit.bech32 import bech32_verify_checksum as _bech32_verify_checksum
from embit.bech32 import convertbits as _convertbits
from embit.bech32 import encode as _bech32_encode, decode as _bech32_decode

# WIF private keys and BIP-39 seeds
import base58
from mnemonic import Mnemonic

from bitcoin_protocol import (
    Transaction,
    TxIn,
    hash160,
    is_p2pkh,
    is_p2sh,
    is_p2tr,
    is_p2wpkh,
    load_transaction,
    looks_like_script,
    p2tr_script,
    script_pushes,
    ser32,
    serialize_outpoint,
    tagged_hash,
    taproot_internal_key,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
from logging.handlers import RotatingFileHandler

log = logging.getLogger("silent_payments")
log.addHandler(logging.NullHandler())


def setup_logging(log_file: str = "silent_payments.log") -> None:
    """
    Configure logging with rotating file + console.

    Call once at startup; safe to call multiple times (idempotent).
    """
    if getattr(setup_logging, "_done", False):
        return

    fmt = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    file_handler = RotatingFileHandler(
        log_file, maxBytes=10 * 1024 * 1024, backupCount=5,
    )
    file_handler.setFormatter(fmt)
    file_handler.setLevel(logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(fmt)
    console_handler.setLevel(logging.WARNING)

    log.addHandler(file_handler)
    log.addHandler(console_handler)
    log.setLevel(logging.INFO)

    setup_logging._done = True  # type: ignore[attr-defined]


# ============================================================
# ERRORS
# ============================================================

class SilentPaymentError(Exception):
    """Base class.  All of these are permanent: retrying cannot help."""


class DecodeError(SilentPaymentError, ValueError):
    """Malformed payment code, WIF or key encoding."""


class UnsupportedVersion(SilentPaymentError):
    """Payment code with a version other than 0."""


class NoInputs(SilentPaymentError):
    """Empty UTXO / transaction input set."""


class NoEligibleInputs(SilentPaymentError):
    """Inputs exist but none of them may contribute to the shared secret."""


class InvalidResult(SilentPaymentError):
    """A scalar or point operation produced a degenerate value."""


class InvalidDerivation(SilentPaymentError):
    """Receiver-side spending key reconstruction degenerated."""


# ============================================================
# CONSTANTS & NETWORK CONFIG
# ============================================================

# secp256k1 order n
SECP256K1_ORDER = int(
    "FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16
)

INPUTS_TAG = "BIP0352/Inputs"
SHARED_SECRET_TAG = "BIP0352/SharedSecret"

# BIP-341 NUMS point H: script-path spends with this internal key are skipped
NUMS_H = bytes.fromhex(
    "50929b74c1a04954b78b4b6035e97a5e078a5a0f28ec96d547bfee9ace803ac0"
)

PAYMENT_CODE_VERSION = 0
# v0 codes are 116 (sp) or 117 (tsp) characters, over the generic 90 limit
PAYMENT_CODE_MAX_LENGTH = 117

HARDENED = 0x80000000


@dataclass(frozen=True)
class NetworkParams:
    name: str
    segwit_hrp: str
    sp_hrp: str
    coin_type: int
    wif_prefix: int


NETWORKS: Dict[str, NetworkParams] = {
    "mainnet": NetworkParams("mainnet", "bc",   "sp",  0, 0x80),
    "testnet": NetworkParams("testnet", "tb",   "tsp", 1, 0xEF),
    "signet":  NetworkParams("signet",  "tb",   "tsp", 1, 0xEF),
    "regtest": NetworkParams("regtest", "bcrt", "tsp", 1, 0xEF),
}

PAYMENT_CODE_HRPS = frozenset(p.sp_hrp for p in NETWORKS.values())
SEGWIT_HRPS = frozenset(p.segwit_hrp for p in NETWORKS.values())


def network_params(network: str) -> NetworkParams:
    try:
        return NETWORKS[network]
    except KeyError:
        raise ValueError(
            f"Unknown network {network!r}; expected one of {sorted(NETWORKS)}"
        ) from None


# ============================================================
# SCALAR / POINT ENGINE  (libsecp256k1 via coincurve)
# ============================================================
#
# Every operation either returns a valid scalar/point or raises
# InvalidResult.  Zero scalars, scalars >= n, the point at infinity and
# off-curve encodings never leak out as byte strings.

def _load_scalar(k: bytes) -> _Secp256k1PrivateKey:
    if len(k) != 32:
        raise InvalidResult(f"scalar must be 32 bytes, got {len(k)}")
    try:
        return _Secp256k1PrivateKey(bytes(k))
    except ValueError as exc:
        raise InvalidResult(f"scalar out of range: {exc}") from exc


def _load_point(p: bytes) -> _Secp256k1PublicKey:
    if len(p) == 32:
        # x-only (BIP-340): implicit even Y
        p = b"\x02" + bytes(p)
    try:
        return _Secp256k1PublicKey(bytes(p))
    except ValueError as exc:
        raise InvalidResult(f"not a valid secp256k1 point: {exc}") from exc


def is_valid_point(p: bytes) -> bool:
    try:
        _load_point(p)
    except InvalidResult:
        return False
    return True


def scalar_add(a: bytes, b: bytes) -> bytes:
    """(a + b) mod n; fails on a zero result or b >= n."""
    if len(b) != 32:
        raise InvalidResult(f"scalar must be 32 bytes, got {len(b)}")
    try:
        return _load_scalar(a).add(bytes(b)).secret
    except ValueError as exc:
        raise InvalidResult(f"scalar addition failed: {exc}") from exc


def scalar_multiply(a: bytes, b: bytes) -> bytes:
    """(a · b) mod n; both operands must be valid non-zero scalars."""
    if len(b) != 32:
        raise InvalidResult(f"scalar must be 32 bytes, got {len(b)}")
    try:
        return _load_scalar(a).multiply(bytes(b)).secret
    except ValueError as exc:
        raise InvalidResult(f"scalar multiplication failed: {exc}") from exc


def scalar_negate(a: bytes) -> bytes:
    """n - a."""
    k = _load_scalar(a).to_int()
    return (SECP256K1_ORDER - k).to_bytes(32, "big")


def point_from_scalar(k: bytes, compressed: bool = True) -> bytes:
    """k·G"""
    return _load_scalar(k).public_key.format(compressed=compressed)


def point_multiply(p: bytes, k: bytes, compressed: bool = True) -> bytes:
    """k·P"""
    if len(k) != 32:
        raise InvalidResult(f"scalar must be 32 bytes, got {len(k)}")
    try:
        return _load_point(p).multiply(bytes(k)).format(compressed=compressed)
    except ValueError as exc:
        raise InvalidResult(f"point multiplication failed: {exc}") from exc


def point_sum(points: Sequence[bytes], compressed: bool = True) -> bytes:
    """P_1 + ... + P_n; fails on an empty list or the point at infinity."""
    if not points:
        raise InvalidResult("cannot sum an empty list of points")
    keys = [_load_point(p) for p in points]
    try:
        return _Secp256k1PublicKey.combine_keys(keys).format(compressed=compressed)
    except ValueError as exc:
        raise InvalidResult(f"point addition failed: {exc}") from exc


def point_add(p: bytes, q: bytes, compressed: bool = True) -> bytes:
    """P + Q"""
    return point_sum([p, q], compressed=compressed)


def has_odd_y(k: bytes) -> bool:
    """True when k·G serializes with the 0x03 prefix."""
    return point_from_scalar(k)[0] == 0x03


# ============================================================
# KEY ENCODING  (WIF + BIP-32)
# ============================================================

def wif_to_private_key(wif: str) -> bytes:
    """Decode a WIF string to its raw 32-byte secret."""
    try:
        payload = base58.b58decode_check(wif)
    except ValueError as exc:
        raise DecodeError(f"Invalid WIF: {exc}") from exc
    if payload[:1] not in (b"\x80", b"\xef"):
        raise DecodeError(f"Invalid WIF prefix 0x{payload[:1].hex()}")
    if len(payload) == 34 and payload[-1] == 0x01:
        key = payload[1:33]
    elif len(payload) == 33:
        key = payload[1:]
    else:
        raise DecodeError(f"Invalid WIF payload length {len(payload)}")
    try:
        _load_scalar(key)
    except InvalidResult as exc:
        raise DecodeError("WIF encodes an out-of-range secret") from exc
    return key


def private_key_to_wif(key: bytes, network: str = "mainnet") -> str:
    """Compressed-pubkey WIF for a 32-byte secret."""
    _load_scalar(key)
    prefix = bytes([network_params(network).wif_prefix])
    return base58.b58encode_check(prefix + key + b"\x01").decode()


def parse_derivation_path(path: str) -> List[int]:
    """``m/352'/0'/0'/1'/0`` → child indices (hardened bit applied)."""
    parts = path.split("/")
    if not parts or parts[0] != "m":
        raise ValueError("Path must start with 'm/'")
    indices: List[int] = []
    for part in parts[1:]:
        hardened = part.endswith(("'", "h", "H"))
        digits = part[:-1] if hardened else part
        if not digits.isdigit() or int(digits) >= HARDENED:
            raise ValueError(f"Invalid path component {part!r}")
        indices.append(int(digits) + (HARDENED if hardened else 0))
    return indices


def _bip32_child(key: bytes, chain_code: bytes, index: int) -> Tuple[bytes, bytes]:
    if index & HARDENED:
        data = b"\x00" + key + struct.pack(">I", index)
    else:
        data = point_from_scalar(key) + struct.pack(">I", index)
    digest = hmac.new(chain_code, data, hashlib.sha512).digest()
    return scalar_add(key, digest[:32]), digest[32:]


def derive_private_key(seed: bytes, path: str) -> bytes:
    """BIP-32 private derivation of *path* from a 16–64 byte seed."""
    digest = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
    key, chain_code = digest[:32], digest[32:]
    try:
        _load_scalar(key)
        for index in parse_derivation_path(path):
            key, chain_code = _bip32_child(key, chain_code, index)
    except InvalidResult as exc:
        # Probability ~2^-127 per step; BIP-32 says skip to the next index,
        # but silent payment paths are fixed so there is nothing to skip to.
        raise InvalidDerivation(f"BIP-32 derivation of {path} failed") from exc
    return key


def seed_from_mnemonic(phrase: str, passphrase: str = "") -> bytes:
    """Validate a BIP-39 phrase and stretch it to the 64-byte seed."""
    mnemo = Mnemonic("english")
    if not mnemo.check(phrase):
        raise ValueError("Invalid BIP39 mnemonic phrase")
    return mnemo.to_seed(phrase, passphrase=passphrase)


# ============================================================
# PAYMENT CODES  (bech32m, "sp" / "tsp")
# ============================================================

@dataclass(frozen=True)
class PaymentCode:
    """A decoded v0 silent payment code: B_scan || B_spend."""
    scan_pubkey: bytes
    spend_pubkey: bytes
    version: int = PAYMENT_CODE_VERSION
    hrp: str = "sp"

    def encode(self) -> str:
        return _encode_payment_code_words(
            self.hrp, self.scan_pubkey, self.spend_pubkey, self.version,
        )


def _encode_payment_code_words(
    hrp: str, scan_pubkey: bytes, spend_pubkey: bytes, version: int,
) -> str:
    if len(scan_pubkey) != 33 or len(spend_pubkey) != 33:
        raise ValueError("scan and spend keys must be 33-byte compressed points")
    words = _convertbits(scan_pubkey + spend_pubkey, 8, 5)
    return _bech32_encode_words(_Bech32Encoding.BECH32M, hrp, [version] + words)


def encode_payment_code(
    scan_pubkey: bytes,
    spend_pubkey: bytes,
    network: str = "mainnet",
) -> str:
    """Encode B_scan and B_spend as a version 0 payment code."""
    for name, key in (("scan", scan_pubkey), ("spend", spend_pubkey)):
        if len(key) != 33 or not is_valid_point(key):
            raise ValueError(f"{name} key is not a compressed secp256k1 point")
    return _encode_payment_code_words(
        network_params(network).sp_hrp, scan_pubkey, spend_pubkey,
        PAYMENT_CODE_VERSION,
    )


def decode_payment_code(code: str, hrp: Optional[str] = None) -> PaymentCode:
    """
    Decode a payment code.

    embit.bech32 enforces the 90-character segwit limit in its string
    decoder, so the string is split here and only the checksum and
    5→8 bit conversion are delegated to it.

    Raises:
        DecodeError: bad characters, case, prefix, length or checksum.
        UnsupportedVersion: a well-formed code with version != 0.
    """
    if not isinstance(code, str):
        raise DecodeError("payment code must be a string")
    if code.lower() != code and code.upper() != code:
        raise DecodeError("mixed-case payment code")
    code = code.lower()

    pos = code.rfind("1")
    if pos < 1 or pos + 7 > len(code) or len(code) > PAYMENT_CODE_MAX_LENGTH:
        raise DecodeError(f"payment code has invalid length or separator ({len(code)} chars)")

    code_hrp = code[:pos]
    allowed = {hrp} if hrp is not None else PAYMENT_CODE_HRPS
    if code_hrp not in allowed:
        raise DecodeError(f"unexpected payment code prefix {code_hrp!r}")

    try:
        data = [_BECH32_CHARSET.index(c) for c in code[pos + 1:]]
    except ValueError:
        raise DecodeError("payment code contains non-bech32 characters") from None
    if _bech32_verify_checksum(code_hrp, data) != _Bech32Encoding.BECH32M:
        raise DecodeError("payment code checksum is not valid bech32m")

    words = data[:-6]
    if not words:
        raise DecodeError("payment code has no data")
    version = words[0]
    if version != PAYMENT_CODE_VERSION:
        raise UnsupportedVersion(f"Unexpected version of silent payment code: {version}")

    payload = _convertbits(words[1:], 5, 8, False)
    if payload is None or len(payload) != 66:
        raise DecodeError("payment code payload must be 66 bytes")

    scan_pubkey, spend_pubkey = bytes(payload[:33]), bytes(payload[33:])
    if not (is_valid_point(scan_pubkey) and is_valid_point(spend_pubkey)):
        raise DecodeError("payment code carries an invalid public key")
    return PaymentCode(scan_pubkey, spend_pubkey, version, code_hrp)


def is_payment_code_valid(code: str, network: Optional[str] = None) -> bool:
    """Advisory check; never raises."""
    hrp = network_params(network).sp_hrp if network else None
    try:
        decode_payment_code(code, hrp)
    except (DecodeError, UnsupportedVersion):
        return False
    return True


# ============================================================
# TAPROOT ADDRESSES
# ============================================================

def pubkey_to_address(xonly_hex: str, network: str = "mainnet") -> str:
    """32-byte x-only key → Bech32m P2TR address."""
    xonly = bytes.fromhex(xonly_hex)
    if len(xonly) != 32:
        raise ValueError(f"{xonly_hex} has no matching Address")
    addr = _bech32_encode(network_params(network).segwit_hrp, 1, list(xonly))
    if addr is None:
        raise RuntimeError("Bech32m encoding failed")
    return addr


def address_to_pubkey(address: str) -> Optional[str]:
    """P2TR address → x-only key hex, or None for any other address."""
    pos = address.rfind("1")
    hrp = address[:pos].lower()
    if pos < 1 or hrp not in SEGWIT_HRPS:
        return None
    ver, prog = _bech32_decode(hrp, address)
    if ver != 1 or prog is None or len(prog) != 32:
        return None
    return bytes(prog).hex()


# ============================================================
# DATA MODEL
# ============================================================

class UTXOType(str, Enum):
    """How an input is spent; decides whether its key joins the shared secret."""
    P2WPKH       = "p2wpkh"
    P2SH_P2WPKH  = "p2sh-p2wpkh"
    P2PKH        = "p2pkh"
    P2TR         = "p2tr"
    NON_ELIGIBLE = "non-eligible"   # e.g. script-path spend with NUMS internal key


@dataclass(frozen=True)
class UTXO:
    txid: str                 # display hex
    vout: int
    wif: str                  # private key; "" when the sender lacks it
    utxo_type: UTXOType = UTXOType.P2WPKH
    value: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "utxo_type", UTXOType(self.utxo_type))
        if self.vout < 0:
            raise ValueError("vout cannot be negative")

    @property
    def outpoint(self) -> bytes:
        return serialize_outpoint(self.txid, self.vout)

    @property
    def private_key(self) -> bytes:
        return wif_to_private_key(self.wif)


@dataclass(frozen=True)
class Target:
    """
    A payment destination.

    ``address`` holds either an on-chain address or a payment code; an
    explicit ``payment_code`` takes precedence.  Targets with neither
    (change placeholders) pass through untouched.
    """
    address: Optional[str] = None
    value: Optional[int] = None
    payment_code: Optional[str] = None

    @property
    def silent_payment_code(self) -> Optional[str]:
        if self.payment_code:
            return self.payment_code
        if self.address:
            prefix = self.address[:self.address.rfind("1")].lower()
            if prefix in PAYMENT_CODE_HRPS:
                return self.address
        return None


@dataclass
class SilentPaymentGroup:
    """All targets sharing one B_scan: the same recipient, one k sequence."""
    scan_pubkey: bytes
    # (B_m, value, original target index), in target order
    entries: List[Tuple[bytes, Optional[int], int]] = field(default_factory=list)


@dataclass(frozen=True)
class ReceiverKeys:
    address: str
    scan_public: bytes
    scan_private: bytes = field(repr=False)
    spend_public: bytes
    spend_private: bytes = field(repr=False)


# ============================================================
# OUTPOINT CANONICALIZATION
# ============================================================

def smallest_outpoint(outpoints: Iterable[bytes]) -> bytes:
    """Lexicographically smallest 36-byte outpoint (unsigned byte order)."""
    ordered = sorted(outpoints)
    if not ordered:
        raise NoInputs("No outpoints to commit to")
    return ordered[0]


def input_hash(outpoints: Iterable[bytes], summed_pubkey: bytes) -> bytes:
    """hash_BIP0352/Inputs(outpoint_L || A)"""
    if len(summed_pubkey) != 33:
        raise ValueError("A must be a 33-byte compressed point")
    return tagged_hash(INPUTS_TAG, smallest_outpoint(outpoints) + summed_pubkey)


def outpoints_hash(utxos: Sequence[UTXO], summed_pubkey: bytes) -> bytes:
    """Input hash over every UTXO, eligible or not, in any order."""
    return input_hash((u.outpoint for u in utxos), summed_pubkey)


def shared_secret_tweak(shared_secret: bytes, k: int) -> bytes:
    """t_k = hash_BIP0352/SharedSecret(S || ser32(k))"""
    return tagged_hash(SHARED_SECRET_TAG, shared_secret + ser32(k))


def _output_pubkey(shared_secret: bytes, spend_pubkey: bytes, k: int) -> Tuple[bytes, bytes]:
    """(t_k, P_k = t_k·G + B_m)"""
    t_k = shared_secret_tweak(shared_secret, k)
    return t_k, point_add(point_from_scalar(t_k), spend_pubkey)


# ============================================================
# SENDER
# ============================================================

def sum_private_keys(utxos: Sequence[UTXO]) -> bytes:
    """
    a = sum of eligible input keys, in UTXO order.

    Non-eligible UTXOs and UTXOs without a private key are skipped.
    Taproot keys whose point has odd Y are negated first; no other type
    is ever corrected.
    """
    if not utxos:
        raise NoInputs("No UTXOs provided")

    keys: List[bytes] = []
    for utxo in utxos:
        if utxo.utxo_type is UTXOType.NON_ELIGIBLE:
            log.debug("Skipping non-eligible input %s:%d", utxo.txid[:16], utxo.vout)
            continue
        if not utxo.wif:
            log.warning("No private key for input %s:%d, skipped",
                        utxo.txid[:16], utxo.vout)
            continue

        key = utxo.private_key
        if utxo.utxo_type is UTXOType.P2TR and has_odd_y(key):
            key = scalar_negate(key)
        keys.append(key)

    if not keys:
        raise NoEligibleInputs("No eligible UTXOs with private keys found")
    return reduce(scalar_add, keys)


def resolve(
    utxos: Sequence[UTXO],
    targets: Sequence[Target],
    network: str = "mainnet",
) -> List[Target]:
    """
    Takes the UTXOs the sender is going to spend and a list of targets,
    some of which carry silent payment codes, and returns the targets with
    every payment code unwrapped into a taproot address.

    The result has the same length and order as *targets*.  Plain targets
    are returned as-is; values are carried over.

    Raises:
        DecodeError / UnsupportedVersion: a payment code is not usable.
        NoInputs: payment codes present but *utxos* is empty.
        NoEligibleInputs: no UTXO can contribute a key.
        InvalidResult: degenerate curve arithmetic (key sum zero, etc).
    """
    params = network_params(network)
    result: List[Optional[Target]] = [None] * len(targets)

    # Addresses with the same B_scan all belong to the same recipient
    groups: Dict[bytes, SilentPaymentGroup] = {}
    for index, target in enumerate(targets):
        code = target.silent_payment_code
        if code is None:
            result[index] = target  # passthrough
            continue
        decoded = decode_payment_code(code, params.sp_hrp)
        group = groups.get(decoded.scan_pubkey)
        if group is None:
            group = groups[decoded.scan_pubkey] = SilentPaymentGroup(decoded.scan_pubkey)
        group.entries.append((decoded.spend_pubkey, target.value, index))

    if not groups:
        return result  # type: ignore[return-value]

    a = sum_private_keys(utxos)
    A = point_from_scalar(a)
    ecdh_step1 = scalar_multiply(outpoints_hash(utxos, A), a)

    for group in groups.values():
        # S = input_hash·a·B_scan
        shared_secret = point_multiply(group.scan_pubkey, ecdh_step1)
        for k, (spend_pubkey, value, index) in enumerate(group.entries):
            _, p_k = _output_pubkey(shared_secret, spend_pubkey, k)
            result[index] = Target(
                address=pubkey_to_address(p_k[1:].hex(), network),
                value=value,
            )
        log.debug("Group %s: %d output(s)", group.scan_pubkey.hex()[:16],
                  len(group.entries))

    log.info("Resolved %d target(s): %d silent payment output(s) for %d "
             "recipient(s) from %d UTXO(s)",
             len(targets), sum(len(g.entries) for g in groups.values()),
             len(groups), len(utxos))
    return result  # type: ignore[return-value]


# ============================================================
# INPUT PUBLIC KEYS
# ============================================================

def is_canonical_pubkey(data: bytes) -> bool:
    """33-byte compressed SEC1 point on the curve."""
    return len(data) == 33 and data[0] in (0x02, 0x03) and is_valid_point(data)


def _unlocking_pubkeys(txin: TxIn) -> List[bytes]:
    found: List[bytes] = []
    for stack in (script_pushes(txin.script_sig), txin.witness):
        found.extend(item for item in stack if is_canonical_pubkey(item))
        # nested redeem / witness script is the last element
        if len(stack) > 1 and not is_canonical_pubkey(stack[-1]) \
                and looks_like_script(stack[-1]):
            found.extend(p for p in script_pushes(stack[-1]) if is_canonical_pubkey(p))
    return found


def extract_input_pubkeys(tx: Union[Transaction, bytes, str]) -> List[bytes]:
    """
    Every canonical public key revealed by the inputs' scriptSig and
    witness data, including keys inside redeem/witness scripts.

    Works on the transaction alone.  Taproot key-path spends reveal no
    key there; use ``get_input_pubkey`` with prevouts for those.
    """
    tx = load_transaction(tx)
    return [pk for txin in tx.inputs for pk in _unlocking_pubkeys(txin)]


def get_input_pubkey(txin: TxIn, prevout_script: bytes) -> Optional[bytes]:
    """
    The single key an input contributes under BIP-352, or None when the
    input is not eligible.
    """
    spk = prevout_script
    if is_p2pkh(spk):
        spk_hash = spk[3:3 + 20]
        script_sig = txin.script_sig
        # 33-byte window from the back; standard scriptSigs match at once,
        # malleated ones still yield their compressed key
        for i in range(len(script_sig), 32, -1):
            candidate = script_sig[i - 33:i]
            if hash160(candidate) == spk_hash and is_canonical_pubkey(candidate):
                return candidate
    if is_p2sh(spk):
        redeem_script = txin.script_sig[1:]
        if is_p2wpkh(redeem_script) and txin.witness \
                and is_canonical_pubkey(txin.witness[-1]):
            return txin.witness[-1]
    if is_p2wpkh(spk):
        if txin.witness and is_canonical_pubkey(txin.witness[-1]):
            return txin.witness[-1]
    if is_p2tr(spk) and txin.witness:
        if taproot_internal_key(txin.witness) == NUMS_H:
            return None
        candidate = b"\x02" + spk[2:]
        if is_valid_point(candidate):
            return candidate
    return None


def classify_utxo(txin: TxIn, prevout_script: bytes) -> UTXOType:
    """
    UTXO type of a spent output, as the receiver will judge it.

    A sending wallet normally knows this already; this is for wallets
    that only hold the spending input and the previous scriptPubKey.
    """
    if get_input_pubkey(txin, prevout_script) is None:
        return UTXOType.NON_ELIGIBLE
    if is_p2pkh(prevout_script):
        return UTXOType.P2PKH
    if is_p2sh(prevout_script):
        return UTXOType.P2SH_P2WPKH
    if is_p2wpkh(prevout_script):
        return UTXOType.P2WPKH
    return UTXOType.P2TR


# ============================================================
# RECEIVER
# ============================================================

def _to_bytes(value: Union[bytes, str]) -> bytes:
    return bytes.fromhex(value) if isinstance(value, str) else bytes(value)


def _seed_bytes(seed: Union[str, bytes], passphrase: str) -> bytes:
    if isinstance(seed, str):
        return seed_from_mnemonic(seed, passphrase)
    return bytes(seed)


def derive_code(
    seed: Union[str, bytes],
    account_index: int = 0,
    passphrase: str = "",
    network: str = "mainnet",
) -> ReceiverKeys:
    """
    Derive the scan/spend key pairs and the payment code of an account.

    *seed* is a BIP-39 phrase (stretched with *passphrase*) or a raw
    BIP-32 seed.  Paths:

        scan:  m/352'/coin'/account'/1'/0
        spend: m/352'/coin'/account'/0'/0
    """
    params = network_params(network)
    root = _seed_bytes(seed, passphrase)
    base = f"m/352'/{params.coin_type}'/{account_index}'"

    scan_private = derive_private_key(root, f"{base}/1'/0")
    spend_private = derive_private_key(root, f"{base}/0'/0")
    scan_public = point_from_scalar(scan_private)
    spend_public = point_from_scalar(spend_private)

    return ReceiverKeys(
        address=encode_payment_code(scan_public, spend_public, network),
        scan_public=scan_public,
        scan_private=scan_private,
        spend_public=spend_public,
        spend_private=spend_private,
    )


def compute_tweak(
    tx: Union[Transaction, bytes, str],
    prevouts: Optional[Sequence[Union[bytes, str]]] = None,
) -> bytes:
    """
    Per-transaction tweak input_hash·A (33-byte compressed point).

    This is what an indexing server hands to light clients.  Without
    *prevouts* the keys come from the unlocking data alone; with the
    prevout scriptPubKeys (one per input) BIP-352 eligibility rules apply.
    """
    tx = load_transaction(tx)
    if not tx.inputs:
        raise NoInputs("Transaction has no inputs")

    if prevouts is None:
        pubkeys = extract_input_pubkeys(tx)
    else:
        if len(prevouts) != len(tx.inputs):
            raise ValueError(
                f"prevout count ({len(prevouts)}) != input count ({len(tx.inputs)})"
            )
        pubkeys = []
        for txin, spk in zip(tx.inputs, prevouts):
            pubkey = get_input_pubkey(txin, _to_bytes(spk))
            if pubkey is not None:
                pubkeys.append(pubkey)

    if not pubkeys:
        raise NoEligibleInputs("Transaction has no eligible input public keys")

    A = point_sum(pubkeys)
    return point_multiply(A, input_hash((txin.outpoint for txin in tx.inputs), A))


def scan_outputs(
    tx: Union[Transaction, bytes, str],
    scan_private: bytes,
    spend_public: bytes,
    spend_private: bytes,
    tweak: Union[bytes, str],
    network: str = "mainnet",
) -> List[UTXO]:
    """
    Outputs of *tx* paying to (B_scan, B_spend), with their spending keys.

    k starts at 0 and advances only while some output matches P_k, so
    several payments to one recipient in one transaction are all found.
    """
    tx = load_transaction(tx)
    txid = tx.txid
    shared_secret = point_multiply(_to_bytes(tweak), scan_private)

    remaining = {
        vout: out for vout, out in enumerate(tx.outputs)
        if is_p2tr(out.script_pubkey)
    }
    found: List[UTXO] = []
    k = 0
    while remaining:
        t_k, p_k = _output_pubkey(shared_secret, spend_public, k)
        script = p2tr_script(p_k[1:])
        matches = [vout for vout, out in remaining.items() if out.script_pubkey == script]
        if not matches:
            break
        try:
            d = scalar_add(spend_private, t_k)
        except InvalidResult as exc:
            raise InvalidDerivation(
                f"spend key + t_{k} degenerates for {txid}"
            ) from exc
        for vout in matches:
            found.append(UTXO(
                txid=txid,
                vout=vout,
                wif=private_key_to_wif(d, network),
                utxo_type=UTXOType.P2TR,
                value=remaining.pop(vout).value,
            ))
        k += 1

    log.info("Scanned %s: %d owned output(s)", txid[:16], len(found))
    return found


def scan(
    tx: Union[Transaction, bytes, str],
    seed: Union[str, bytes],
    tweak_hex: str,
    account_index: int = 0,
    passphrase: str = "",
    network: str = "mainnet",
) -> List[UTXO]:
    """Derive the account keys from *seed* and scan *tx* with *tweak_hex*."""
    keys = derive_code(seed, account_index, passphrase, network)
    return scan_outputs(
        tx, keys.scan_private, keys.spend_public, keys.spend_private,
        tweak_hex, network,
    )


# ============================================================
# USER-FACING API
# ============================================================

class SilentPaymentWallet:
    """
    Receiving side of one silent payment account.

    Keys live in memory only.

    >>> w = SilentPaymentWallet("abandon " * 11 + "about", network="testnet")
    >>> w.address.startswith("tsp1q")
    True
    """

    def __init__(
        self,
        seed: Union[str, bytes],
        account_index: int = 0,
        passphrase: str = "",
        network: str = "mainnet",
    ) -> None:
        self.network = network
        self.account_index = account_index
        self.keys = derive_code(seed, account_index, passphrase, network)

    @property
    def address(self) -> str:
        """The static payment code to publish."""
        return self.keys.address

    def scan(self, tx: Union[Transaction, bytes, str], tweak: Union[bytes, str]) -> List[UTXO]:
        """Light-client mode: tweak supplied by an index server."""
        return scan_outputs(
            tx, self.keys.scan_private, self.keys.spend_public,
            self.keys.spend_private, tweak, self.network,
        )

    def scan_transaction(
        self,
        tx: Union[Transaction, bytes, str],
        prevouts: Optional[Sequence[Union[bytes, str]]] = None,
    ) -> List[UTXO]:
        """Full-node mode: compute the tweak locally, then scan."""
        tx = load_transaction(tx)
        try:
            tweak = compute_tweak(tx, prevouts)
        except (NoInputs, NoEligibleInputs):
            return []
        return self.scan(tx, tweak)
