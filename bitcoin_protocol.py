"""
Bitcoin wire-format helpers used by the silent payments engine.
Reference: https://github.com/bitcoin/bips/blob/master/bip-0352.mediawiki
"""

import hashlib
import struct
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from Crypto.Hash import RIPEMD160


def compact_size(n: int) -> bytes:
    """Bitcoin CompactSize encoding."""
    if n < 0xfd:
        return struct.pack("<B", n)
    elif n <= 0xffff:
        return b'\xfd' + struct.pack("<H", n)
    elif n <= 0xffffffff:
        return b'\xfe' + struct.pack("<I", n)
    else:
        return b'\xff' + struct.pack("<Q", n)


def read_compact_size(data: bytes, pos: int) -> Tuple[int, int]:
    """Decode a CompactSize at *pos*. Returns (value, new_pos)."""
    if pos >= len(data):
        raise ValueError("Truncated CompactSize")
    b0 = data[pos]
    if b0 < 0xfd:
        return b0, pos + 1
    elif b0 == 0xfd:
        return _unpack("<H", data, pos + 1), pos + 3
    elif b0 == 0xfe:
        return _unpack("<I", data, pos + 1), pos + 5
    else:
        return _unpack("<Q", data, pos + 1), pos + 9


def _unpack(fmt: str, data: bytes, pos: int) -> int:
    try:
        return struct.unpack_from(fmt, data, pos)[0]
    except struct.error as exc:
        raise ValueError(f"Truncated data at offset {pos}") from exc


def ser32(i: int) -> bytes:
    """ser_32(i): 4-byte big-endian encoding of a 32-bit unsigned integer."""
    if not 0 <= i <= 0xffffffff:
        raise ValueError(f"ser32 out of range: {i}")
    return struct.pack(">I", i)


def tagged_hash(tag: str, msg: bytes) -> bytes:
    """BIP-340 tagged hash: SHA-256(SHA-256(tag) || SHA-256(tag) || msg)"""
    tag_hash = hashlib.sha256(tag.encode()).digest()
    return hashlib.sha256(tag_hash + tag_hash + msg).digest()


def sha256d(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash160(data: bytes) -> bytes:
    """RIPEMD-160(SHA-256(data))."""
    return RIPEMD160.new(hashlib.sha256(data).digest()).digest()


def serialize_outpoint(txid: str, vout: int) -> bytes:
    """36-byte outpoint: txid in internal byte order || vout (LE)."""
    txid_bytes = bytes.fromhex(txid)
    if len(txid_bytes) != 32:
        raise ValueError(f"txid must be 32 bytes, got {len(txid_bytes)}")
    if not 0 <= vout <= 0xffffffff:
        raise ValueError(f"vout out of range: {vout}")
    return txid_bytes[::-1] + struct.pack("<I", vout)


# ============================================================
# SCRIPT TEMPLATES
# ============================================================

OP_0 = 0x00
OP_PUSHDATA1 = 0x4c
OP_PUSHDATA2 = 0x4d
OP_PUSHDATA4 = 0x4e
OP_1 = 0x51
OP_CHECKSIG = 0xac
OP_CHECKMULTISIGVERIFY = 0xaf

# Annex marker (BIP-341)
ANNEX_TAG = 0x50


def is_p2tr(spk: bytes) -> bool:
    # OP_1 OP_PUSHBYTES_32 <32 bytes>
    return len(spk) == 34 and spk[0] == OP_1 and spk[1] == 0x20


def is_p2wpkh(spk: bytes) -> bool:
    # OP_0 OP_PUSHBYTES_20 <20 bytes>
    return len(spk) == 22 and spk[0] == OP_0 and spk[1] == 0x14


def is_p2sh(spk: bytes) -> bool:
    # OP_HASH160 OP_PUSHBYTES_20 <20 bytes> OP_EQUAL
    return len(spk) == 23 and spk[0] == 0xa9 and spk[1] == 0x14 and spk[-1] == 0x87


def is_p2pkh(spk: bytes) -> bool:
    # OP_DUP OP_HASH160 OP_PUSHBYTES_20 <20 bytes> OP_EQUALVERIFY OP_CHECKSIG
    return (len(spk) == 25 and spk[0] == 0x76 and spk[1] == 0xa9
            and spk[2] == 0x14 and spk[-2] == 0x88 and spk[-1] == OP_CHECKSIG)


def p2tr_script(xonly: bytes) -> bytes:
    """OP_1 <32-byte x-only pubkey>  (P2TR scriptPubKey)."""
    if len(xonly) != 32:
        raise ValueError(f"x-only key must be 32 bytes, got {len(xonly)}")
    return bytes([OP_1, 0x20]) + xonly


def script_pushes(script: bytes) -> List[bytes]:
    """
    Return the data pushes of *script*, in order.

    Non-push opcodes are skipped.  A push running past the end of the
    script stops the walk (the remainder is not valid script anyway).
    """
    pushes: List[bytes] = []
    pos = 0
    while pos < len(script):
        op = script[pos]
        pos += 1
        if 0x01 <= op <= 0x4b:
            size = op
        elif op == OP_PUSHDATA1:
            if pos + 1 > len(script):
                break
            size = script[pos]
            pos += 1
        elif op == OP_PUSHDATA2:
            if pos + 2 > len(script):
                break
            size = struct.unpack_from("<H", script, pos)[0]
            pos += 2
        elif op == OP_PUSHDATA4:
            if pos + 4 > len(script):
                break
            size = struct.unpack_from("<I", script, pos)[0]
            pos += 4
        else:
            continue
        if pos + size > len(script):
            break
        pushes.append(script[pos:pos + size])
        pos += size
    return pushes


def looks_like_script(data: bytes) -> bool:
    """Heuristic for a redeem/witness script: ends in a CHECKSIG-family op."""
    return len(data) > 1 and OP_CHECKSIG <= data[-1] <= OP_CHECKMULTISIGVERIFY


# ============================================================
# TRANSACTIONS
# ============================================================

@dataclass
class TxIn:
    txid: str                  # display (big-endian) hex
    vout: int
    script_sig: bytes = b""
    sequence: int = 0xFFFFFFFF
    witness: List[bytes] = field(default_factory=list)

    @property
    def outpoint(self) -> bytes:
        return serialize_outpoint(self.txid, self.vout)


@dataclass
class TxOut:
    value: int
    script_pubkey: bytes


@dataclass
class Transaction:
    """Minimal BIP-144 aware transaction model."""
    version: int = 2
    inputs: List[TxIn] = field(default_factory=list)
    outputs: List[TxOut] = field(default_factory=list)
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        with_witness = include_witness and self.has_witness
        raw = struct.pack("<I", self.version)
        if with_witness:
            # segwit marker + flag
            raw += b"\x00\x01"
        raw += compact_size(len(self.inputs))
        for inp in self.inputs:
            raw += inp.outpoint
            raw += compact_size(len(inp.script_sig)) + inp.script_sig
            raw += struct.pack("<I", inp.sequence)
        raw += compact_size(len(self.outputs))
        for out in self.outputs:
            raw += struct.pack("<q", out.value)
            raw += compact_size(len(out.script_pubkey)) + out.script_pubkey
        if with_witness:
            for inp in self.inputs:
                raw += compact_size(len(inp.witness))
                for item in inp.witness:
                    raw += compact_size(len(item)) + item
        raw += struct.pack("<I", self.locktime)
        return raw

    def to_hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        """Display txid: reversed double-SHA256 of the witness-stripped tx."""
        return sha256d(self.serialize(include_witness=False))[::-1].hex()

    @classmethod
    def from_bytes(cls, data: bytes) -> "Transaction":
        tx = cls()
        pos = 0
        tx.version = _unpack("<I", data, pos)
        pos += 4

        segwit = len(data) > pos + 1 and data[pos] == 0x00 and data[pos + 1] == 0x01
        if segwit:
            pos += 2

        n_in, pos = read_compact_size(data, pos)
        for _ in range(n_in):
            txid_le = data[pos:pos + 32]
            if len(txid_le) != 32:
                raise ValueError("Truncated input outpoint")
            pos += 32
            vout = _unpack("<I", data, pos)
            pos += 4
            script_len, pos = read_compact_size(data, pos)
            script_sig = data[pos:pos + script_len]
            pos += script_len
            sequence = _unpack("<I", data, pos)
            pos += 4
            tx.inputs.append(TxIn(
                txid=txid_le[::-1].hex(),
                vout=vout,
                script_sig=script_sig,
                sequence=sequence,
            ))

        n_out, pos = read_compact_size(data, pos)
        for _ in range(n_out):
            value = _unpack("<q", data, pos)
            pos += 8
            spk_len, pos = read_compact_size(data, pos)
            spk = data[pos:pos + spk_len]
            if len(spk) != spk_len:
                raise ValueError("Truncated scriptPubKey")
            pos += spk_len
            tx.outputs.append(TxOut(value=value, script_pubkey=spk))

        if segwit:
            for inp in tx.inputs:
                n_items, pos = read_compact_size(data, pos)
                for _ in range(n_items):
                    item_len, pos = read_compact_size(data, pos)
                    inp.witness.append(data[pos:pos + item_len])
                    pos += item_len

        tx.locktime = _unpack("<I", data, pos)
        pos += 4
        if pos != len(data):
            raise ValueError(f"{len(data) - pos} trailing bytes after transaction")
        return tx

    @classmethod
    def from_hex(cls, tx_hex: str) -> "Transaction":
        return cls.from_bytes(bytes.fromhex(tx_hex))


def load_transaction(tx) -> Transaction:
    """Accept a Transaction, raw bytes or a hex string."""
    if isinstance(tx, Transaction):
        return tx
    if isinstance(tx, (bytes, bytearray)):
        return Transaction.from_bytes(bytes(tx))
    if isinstance(tx, str):
        return Transaction.from_hex(tx)
    raise TypeError(f"Unsupported transaction type: {type(tx).__name__}")


def strip_annex(witness: List[bytes]) -> List[bytes]:
    """Drop a trailing BIP-341 annex from a taproot witness stack."""
    if len(witness) > 1 and witness[-1][:1] == bytes([ANNEX_TAG]):
        return witness[:-1]
    return list(witness)


def taproot_internal_key(witness: List[bytes]) -> Optional[bytes]:
    """
    Internal key from a script-path spend's control block, or None for a
    key-path spend.  Control block: <control byte> <32B internal key> <32B hashes...>
    """
    stack = strip_annex(witness)
    if len(stack) > 1:
        control_block = stack[-1]
        return control_block[1:33]
    return None
