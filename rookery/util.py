"""Misc AT Protocol utils. TIDs, CIDs, keys, errors."""
from datetime import datetime, timezone
from numbers import Integral
import random
import time

from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)
import dag_cbor
from multiformats import CID, multihash

# every TID from this process uses the same random clock id
_clockid = random.randint(0, 31)
_tid_ts_last = 0  # microseconds

S32_CHARS = '234567abcdefghijklmnopqrstuvwxyz'

# for low-S signing
# https://atproto.com/specs/cryptography
CURVE_ORDER = {
    ec.SECP256R1: 0xFFFFFFFF_00000000_FFFFFFFF_FFFFFFFF_BCE6FAAD_A7179E84_F3B9CAC2_FC632551,
    ec.SECP256K1: 0xFFFFFFFF_FFFFFFFF_FFFFFFFF_FFFFFFFE_BAAEDCE6_AF48A03B_BFD25E8C_D0364141
}


class InvalidKey(ValueError):
    """Raised when a string isn't a valid MST key.

    Attributes:
      key (str or bytes)
    """
    def __init__(self, key, *args, **kwargs):
        self.key = key
        super().__init__(f'Invalid MST key: {key!r}', *args, **kwargs)


class InvalidNode(ValueError):
    """Raised when an MST node is structurally invalid, eg two adjacent subtrees."""
    pass


class StorageError(RuntimeError):
    """Raised by :class:`Storage` implementations when the backend fails."""
    pass


class MissingBlock(StorageError):
    """Raised when a referenced block isn't in storage.

    Attributes:
      cid (CID)
    """
    def __init__(self, cid, *args, **kwargs):
        self.cid = cid
        super().__init__(f'Block {cid} not found in storage', *args, **kwargs)


class IntegrityError(ValueError):
    """Raised when a stored block's contents don't hash to its CID.

    Attributes:
      expected (CID): the CID the block was requested by
      actual (CID): the CID of the block's encoded bytes
    """
    def __init__(self, expected, actual, *args, **kwargs):
        self.expected = expected
        self.actual = actual
        super().__init__(f'Block {expected} is corrupt, its contents hash to {actual}',
                         *args, **kwargs)


def now(tz=timezone.utc, **kwargs):
    """Wrapper for :meth:`datetime.datetime.now` that lets us mock it out in tests."""
    return datetime.now(tz=tz, **kwargs)


def time_ns():
    """Wrapper for :func:`time.time_ns` that lets us mock it out in tests."""
    return time.time_ns()


def dag_cbor_cid(obj):
    """Returns the DAG-CBOR CID for a given object.

    Args:
      obj: CBOR-compatible native object or value

    Returns:
      CID:
    """
    return cid_for_encoded(dag_cbor.encode(obj))


def cid_for_encoded(encoded):
    """Returns the DAG-CBOR CID for already encoded bytes.

    Args:
      encoded (bytes): DAG-CBOR

    Returns:
      CID:
    """
    digest = multihash.digest(encoded, 'sha2-256')
    return CID('base58btc', 1, 'dag-cbor', digest)


def s32encode(num):
    """Encodes a non-negative integer with the sortable base32 alphabet.

    https://github.com/bluesky-social/atproto/blob/main/packages/common-web/src/tid.ts

    Args:
      num (int)

    Returns:
      str: empty for 0
    """
    assert isinstance(num, Integral) and num >= 0

    chars = ''
    while num:
        num, digit = divmod(num, 32)
        chars = S32_CHARS[digit] + chars

    return chars


def s32decode(val):
    """Inverse of :func:`s32encode`.

    Args:
      val (str)

    Returns:
      int:
    """
    num = 0
    for char in val:
        num = num * 32 + S32_CHARS.index(char)
    return num


def int_to_tid(num, clock_id=None):
    """Builds a TID from a timestamp in microseconds and a clock id.

    https://atproto.com/specs/record-key#record-key-type-tid

    Args:
      num (int): microseconds since the epoch
      clock_id (int): 0-31, defaults to this process's clock id

    Returns:
      str: 13 characters
    """
    if clock_id is None:
        clock_id = _clockid

    tid = s32encode(num) + s32encode(clock_id).ljust(2, '2')
    assert len(tid) <= 13, tid
    # '2' is the zero digit
    return tid.rjust(13, '2')


def datetime_to_tid(dt, clock_id=None):
    """
    Args:
      dt (datetime.datetime)
      clock_id (int): optional, see :func:`int_to_tid`

    Returns:
      str: TID
    """
    return int_to_tid(int(dt.timestamp() * 1000 * 1000), clock_id=clock_id)


def tid_to_int(tid):
    """Returns a TID's timestamp, in microseconds.

    Args:
      tid (str)

    Returns:
      int:

    Raises:
      ValueError: if tid isn't a 13 character string
    """
    if not isinstance(tid, (str, bytes)) or len(tid) != 13:
        raise ValueError(f'Expected 13-character str or bytes; got {tid}')

    return s32decode(tid[:-2])


def tid_to_datetime(tid):
    """
    Args:
      tid (str)

    Returns:
      datetime.datetime: UTC
    """
    return datetime.fromtimestamp(tid_to_int(tid) / 1000 / 1000, timezone.utc)


def next_tid():
    """Returns a new TID for the current time.

    TIDs from this function always increase, by at least 1us, even if the
    system clock goes backward. They're the usual record key half of an MST key.

    Returns:
      str: TID
    """
    global _tid_ts_last

    _tid_ts_last = max(time_ns() // 1000, _tid_ts_last + 1)
    return int_to_tid(_tid_ts_last)


def new_key(seed=None):
    """Generates a new ECC K-256 keypair.

    https://atproto.com/specs/cryptography

    Args:
      seed (int): optional deterministic value to derive private key from.
        Don't use in production!

    Returns:
      ec.EllipticCurvePrivateKey:
    """
    if seed:
        return ec.derive_private_key(seed, ec.SECP256K1())
    else:
        return ec.generate_private_key(ec.SECP256K1())


def apply_low_s_mitigation(signature, curve):
    """Low-S signature mitigation.

    This prevents signature malleability. (It *doesn't* guarantee deterministic
    signatures though!)

    https://atproto.com/specs/cryptography#ecdsa-signature-malleability

    Args:
      signature (bytes): DER-encoded
      curve (ec.EllipticCurve)

    Returns:
      bytes:
    """
    r, s = decode_dss_signature(signature)
    n = CURVE_ORDER[type(curve)]
    if s > n // 2:
        s = n - s
    return encode_dss_signature(r, s)
