"""MST node storage base class and in-memory implementation.

Lightly based on:
https://github.com/bluesky-social/atproto/blob/main/packages/repo/src/storage/repo-storage.ts
"""
import logging

from carbox import car
import dag_cbor

from . import util
from .util import IntegrityError, MissingBlock

logger = logging.getLogger(__name__)


class Block:
    """One content-addressed block: a record or a serialized MST node.

    Takes encoded bytes, a decoded object, or both. The missing form and the
    CID are computed the first time they're accessed.

    Attributes:
      cid (CID): computed from ``encoded`` unless provided
      decoded (dict)
      encoded (bytes): DAG-CBOR
      time (datetime): when this object was created
    """
    def __init__(self, *, cid=None, decoded=None, encoded=None, time=None):
        assert encoded or decoded
        self._cid = cid
        self._encoded = encoded
        self._decoded = decoded
        self.time = time or util.now()

    def __repr__(self):
        return f'Block({self.cid})'

    @property
    def cid(self):
        if self._cid is None:
            self._cid = util.cid_for_encoded(self.encoded)
        return self._cid

    @property
    def encoded(self):
        if self._encoded is None:
            self._encoded = dag_cbor.encode(self._decoded)
        return self._encoded

    @property
    def decoded(self):
        if self._decoded is None:
            self._decoded = dag_cbor.decode(self._encoded)
        return self._decoded

    def verify(self):
        """Checks that this block's encoded bytes hash to its CID.

        Raises:
          IntegrityError: if they don't
        """
        actual = util.cid_for_encoded(self.encoded)
        if actual != self.cid:
            raise IntegrityError(self.cid, actual)

    def __eq__(self, other):
        """Compares by CID only."""
        if isinstance(other, Block):
            return self.cid == other.cid
        return NotImplemented

    def __hash__(self):
        return hash(self.cid)


class Storage:
    """Abstract base class for storing blocks: records and MST nodes.

    Concrete subclasses should implement this on top of physical storage,
    eg database, filesystem, in memory. Storage is content addressed: a given
    :class:`CID` always maps to the same bytes, or is absent. Backends should
    raise :class:`StorageError` on I/O failures and never retry internally.
    """

    def read(self, cid):
        """Reads a node from storage.

        Args:
          cid (CID)

        Returns:
          Block, or None if not found:

        Raises:
          StorageError
        """
        raise NotImplementedError()

    def read_many(self, cids, require_all=True):
        """Batch read multiple nodes from storage.

        Args:
          cids (sequence of CID)
          require_all (bool): whether to raise if any cids aren't found

        Returns:
          dict: {:class:`CID`: :class:`Block` or None if not found}

        Raises:
          MissingBlock: if ``require_all`` and any of ``cids`` aren't found
          StorageError
        """
        raise NotImplementedError()

    def read_verified(self, cid):
        """Reads a block and checks it against its CID.

        Args:
          cid (CID)

        Returns:
          Block:

        Raises:
          MissingBlock: if ``cid`` isn't in storage
          IntegrityError: if the stored bytes don't hash to ``cid``
          StorageError
        """
        block = self.read(cid)
        if block is None:
            raise MissingBlock(cid)

        _check_block(cid, block)
        return block

    def read_many_verified(self, cids):
        """Batch reads blocks and checks each one against its CID.

        Args:
          cids (sequence of CID)

        Returns:
          dict: {:class:`CID`: :class:`Block`}

        Raises:
          MissingBlock: if any of ``cids`` aren't in storage
          IntegrityError: if any stored bytes don't hash to their CID
          StorageError
        """
        blocks = self.read_many(cids)
        for cid, block in blocks.items():
            _check_block(cid, block)
        return blocks

    def has(self, cid):
        """Checks if a given :class:`CID` is currently stored.

        Args:
          cid (CID)

        Returns:
          bool:
        """
        raise NotImplementedError()

    def write(self, obj):
        """Writes a node to storage.

        Args:
          obj (dict): a record or serialized :class:`MST` node

        Returns:
          Block:
        """
        raise NotImplementedError()

    def write_blocks(self, blocks):
        """Batch write blocks to storage.

        Blocks are immutable, so rewriting an existing CID is a no-op.

        Args:
          blocks (sequence of :class:`Block`)
        """
        raise NotImplementedError()

    def import_car(self, car_bytes):
        """Verifies and writes all blocks in a CAR v1 archive.

        Args:
          car_bytes (bytes)

        Returns:
          CID: the CAR's first root

        Raises:
          IntegrityError: if any block doesn't match its CID
        """
        roots, car_blocks = car.read_car(car_bytes)
        assert roots, 'CAR has no roots'

        blocks = []
        for car_block in car_blocks:
            block = Block(cid=car_block.cid, encoded=car_block.data)
            block.verify()
            blocks.append(block)

        self.write_blocks(blocks)
        logger.info(f'Imported {len(blocks)} blocks from CAR with root {roots[0]}')
        return roots[0]


def _check_block(cid, block):
    actual = util.cid_for_encoded(block.encoded)
    if actual != cid:
        raise IntegrityError(cid, actual)


class MemoryStorage(Storage):
    """In memory storage implementation.

    Attributes:
      blocks (dict): {:class:`CID`: :class:`Block`}
    """
    blocks = None

    def __init__(self):
        self.blocks = {}

    def read(self, cid):
        return self.blocks.get(cid)

    def read_many(self, cids, require_all=True):
        found = {cid: self.blocks.get(cid) for cid in cids}
        if require_all:
            for cid, block in found.items():
                if block is None:
                    raise MissingBlock(cid)
        return found

    def has(self, cid):
        return cid in self.blocks

    def write(self, obj):
        block = Block(decoded=obj)
        self.blocks.setdefault(block.cid, block)
        return block

    def write_blocks(self, blocks):
        for block in blocks:
            if block.cid not in self.blocks:
                logger.debug(f'Writing block {block.cid}')
                self.blocks[block.cid] = block
