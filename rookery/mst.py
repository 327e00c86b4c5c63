"""Merkle search tree (MST) over a repo's records.

* https://atproto.com/specs/repository#mst-structure
* https://hal.inria.fr/hal-02303490/document

Based on:
https://github.com/bluesky-social/atproto/blob/main/packages/repo/src/mst/mst.ts

Keys are ``[collection]/[record key]`` strings. Each key's layer is the number
of leading zero bit pairs in its SHA-256 hash, so about 1 in 4 keys is on layer
1 or above, 1 in 16 on layer 2 or above, and so on. A node on layer N holds the
layer N keys in its range, in order, with the subtrees between them. The shape
only depends on the set of keys, not the order they were added in, so two trees
with the same contents have the same root CID.

Stored nodes are DAG-CBOR maps::

  {
    'l': CID of the leftmost subtree, or None,
    'e': [{
      'p': number of bytes this key shares with the previous key in the node,
      'k': the rest of this key, as bytes,
      'v': value CID,
      't': CID of the subtree to the right of this key, or None,
    }, ...],
  }

Subtrees are never adjacent, since there's always a key between them, so this
can represent any node.

:class:`MST` objects are immutable. Every change returns a new tree that shares
all untouched subtrees with the old one. Subtrees load lazily from storage, and
CIDs of changed nodes are only recalculated when someone asks for them.
"""
from collections import namedtuple
import copy
from hashlib import sha256
import itertools
import logging
from os.path import commonprefix
import re

from carbox import car
from multiformats import CID

from .storage import Block
from .util import dag_cbor_cid, InvalidKey, InvalidNode

logger = logging.getLogger(__name__)

# record key characters: https://atproto.com/specs/record-key
KEY_SEGMENT_RE = re.compile(r'[a-zA-Z0-9_\-:.]+')
MAX_KEY_LEN = 256

# one element of a stored node's e field
Entry = namedtuple('Entry', [
    'p',  # int, length in bytes of prefix this key shares with the prev key
    'k',  # bytes, the rest of the data key outside the shared prefix
    'v',  # CID, value
    't',  # CID, next subtree (to the right of leaf), or None
])

# a stored node
Data = namedtuple('Data', [
    'l',  # CID, left-most subtree, or None
    'e',  # list of dict Entry
])

Leaf = namedtuple('Leaf', [
    'key',    # str, data key (collection + record key aka rkey)
    'value',  # CID
])


class MST:
    """One node of a Merkle search tree, and everything below it.

    Attributes:
      storage (Storage)
      entries (list of MST and Leaf): None until loaded from storage
      layer (int): None if not known yet
      pointer (CID): this node's CID, stale if ``outdated_pointer``
      outdated_pointer (bool)
    """
    storage = None
    entries = None
    layer = None
    pointer = None
    outdated_pointer = False

    def __init__(self, *, storage=None, entries=None, pointer=None, layer=None):
        self.storage = storage
        self.entries = entries
        self.pointer = pointer
        self.layer = layer

    @classmethod
    def load(cls, *, storage=None, cid=None, layer=None):
        """Attaches to an existing stored tree. Doesn't load any nodes yet.

        Args:
          storage (Storage)
          cid (CID): root node
          layer (int): optional hint, the root's layer, if known

        Returns:
          MST
        """
        return MST(storage=storage, pointer=cid, layer=layer)

    @classmethod
    def create(cls, *, storage=None, entries=None, layer=None):
        """Creates a new in-memory node and calculates its CID.

        Args:
          storage (Storage)
          entries (sequence of MST and Leaf): defaults to empty
          layer (int)

        Returns:
          MST

        Raises:
          InvalidKey, InvalidNode: if ``entries`` isn't a valid node
        """
        entries = list(entries or [])
        return MST(storage=storage, entries=entries,
                   pointer=cid_for_entries(entries), layer=layer)

    def __eq__(self, other):
        if isinstance(other, MST):
            return self.get_pointer() == other.get_pointer()
        return NotImplemented

    def __hash__(self):
        return hash(self.get_pointer())

    def __repr__(self):
        return f'MST(pointer={self.get_pointer()}, layer={self.layer})'

    def with_entries(self, entries):
        """Returns a copy of this node with different entries.

        The copy's CID is calculated lazily, by :meth:`get_pointer`.

        Args:
          entries (list of MST and Leaf)

        Returns:
          MST:
        """
        mst = MST(storage=self.storage, entries=entries, pointer=self.pointer,
                  layer=self.layer)
        mst.outdated_pointer = True
        return mst

    # Loading
    # -------------------

    def get_entries(self):
        """Returns this node's entries, loading them from storage if necessary.

        Returns:
          list of MST and Leaf: a copy, safe to modify

        Raises:
          MissingBlock: if this node isn't in storage
          IntegrityError: if the stored node doesn't match its CID
          InvalidKey, InvalidNode: if the stored node is malformed
        """
        if self.entries is not None:
            return copy.copy(self.entries)

        if not self.pointer:
            raise RuntimeError('MST has neither entries nor a CID')

        block = self.storage.read_verified(self.pointer)
        data = decode_node_data(block.decoded)

        layer = self.layer
        if data.e:
            # the first key is never prefix compressed
            first_layer = leading_zeros_on_hash(data.e[0]['k'])
            if layer is None:
                layer = first_layer
            elif layer != first_layer:
                raise InvalidNode(f'MST node {self.pointer} should be on layer {layer}, found {first_layer}')

        logger.debug(f'Loaded MST node {self.pointer} at layer {layer}')
        self.entries = deserialize_node_data(storage=self.storage, data=data,
                                             layer=layer)
        return copy.copy(self.entries)

    def get_pointer(self):
        """Returns this node's CID, recalculating it and its children's if stale.

        Returns:
          CID:
        """
        if self.outdated_pointer:
            # children first, since our CID depends on theirs
            for entry in self.get_entries():
                if isinstance(entry, MST):
                    entry.get_pointer()
            self.pointer = cid_for_entries(self.get_entries())
            self.outdated_pointer = False

        return self.pointer

    def get_layer(self):
        """Returns this node's layer, and sets ``self.layer``.

        The layer usually comes from a hint from the parent. Otherwise it's the
        layer of the node's first key, or one more than the first subtree that
        has one. An empty tree is layer 0.

        Returns:
          int:
        """
        layer = self._find_layer()
        self.layer = 0 if layer is None else layer
        return self.layer

    def _find_layer(self):
        if self.layer is not None:
            return self.layer

        entries = self.get_entries()
        layer = layer_for_entries(entries)
        if layer is None:
            # no leaves, so this is a padding node with a single subtree
            for entry in entries:
                below = entry._find_layer()
                if below is not None:
                    layer = below + 1
                    break

        if layer is not None:
            self.layer = layer
        return layer

    # Lookups
    # -------------------

    def _locate(self, key):
        """Finds where a key is, or would be, in this node.

        Returns:
          (list of MST and Leaf, int, Leaf or None) tuple: this node's entries,
          index of the first leaf >= key (or the end), and that leaf if its key
          is ``key``
        """
        entries = self.get_entries()
        for index, entry in enumerate(entries):
            if isinstance(entry, Leaf) and entry.key >= key:
                return entries, index, entry if entry.key == key else None

        return entries, len(entries), None

    @staticmethod
    def _subtree_at(entries, index):
        """Returns the subtree at ``index`` or None if it's a leaf or out of range."""
        if 0 <= index < len(entries) and isinstance(entries[index], MST):
            return entries[index]

    def get(self, key):
        """Returns the value for a key.

        Args:
          key (str)

        Returns:
          CID, or None if the key isn't in the tree:
        """
        entries, index, found = self._locate(key)
        if found:
            return found.value

        below = self._subtree_at(entries, index - 1)
        if below:
            return below.get(key)

    def cids_for_path(self, key):
        """Returns the CIDs of the nodes on the path to a key.

        These prove the key's value, or its absence.

        Args:
          key (str)

        Returns:
          list of CID: node CIDs from the root down, then the key's value if
          it's in the tree
        """
        cids = [self.get_pointer()]
        entries, index, found = self._locate(key)
        if found:
            return cids + [found.value]

        below = self._subtree_at(entries, index - 1)
        if below:
            return cids + below.cids_for_path(key)

        return cids

    # Changes
    # -------------------

    def _replace(self, start, end, *new):
        """Returns a copy of this node with ``entries[start:end]`` replaced.

        None values in ``new`` are skipped.
        """
        entries = self.get_entries()
        entries[start:end] = [entry for entry in new if entry is not None]
        return self.with_entries(entries)

    def add(self, key, value=None, known_zeros=None):
        """Adds a key/value pair, or updates the value if the key exists.

        Args:
          key (str)
          value (CID)
          known_zeros (int): optional, ``leading_zeros_on_hash(key)``

        Returns:
          MST: the new root

        Raises:
          InvalidKey: before any change is made
        """
        ensure_valid_key(key)
        zeros = leading_zeros_on_hash(key) if known_zeros is None else known_zeros
        layer = self.get_layer()
        leaf = Leaf(key=key, value=value)

        if zeros > layer:
            # the key goes above this node, so push everything else down
            left, right = self.split_around(key)
            for _ in range(zeros - layer - 1):
                left = left and left.create_parent()
                right = right and right.create_parent()

            root = MST(storage=self.storage, layer=zeros,
                       entries=[e for e in (left, leaf, right) if e is not None])
            root.outdated_pointer = True
            return root

        entries, index, found = self._locate(key)
        below = self._subtree_at(entries, index - 1)

        if zeros < layer:
            if below:
                return self._replace(index - 1, index, below.add(key, value, zeros))
            return self._replace(index, index,
                                 self.create_child().add(key, value, zeros))

        if found:
            return self._replace(index, index + 1, leaf)
        elif below:
            # the key lands inside the subtree to its left, so split it
            left, right = below.split_around(key)
            return self._replace(index - 1, index, left, leaf, right)
        else:
            return self._replace(index, index, leaf)

    def update(self, key, value):
        """Changes the value for an existing key.

        Args:
          key (str)
          value (CID)

        Returns:
          MST: the new root

        Raises:
          KeyError: if key isn't in the tree
        """
        ensure_valid_key(key)

        entries, index, found = self._locate(key)
        if found:
            return self._replace(index, index + 1, Leaf(key=key, value=value))

        below = self._subtree_at(entries, index - 1)
        if below:
            return self._replace(index - 1, index, below.update(key, value))

        raise KeyError(f'Could not find a record with key: {key}')

    def delete(self, key):
        """Removes a key.

        Args:
          key (str)

        Returns:
          MST: the new root

        Raises:
          KeyError: if key isn't in the tree
        """
        return self._delete(key).trim_top()

    def _delete(self, key):
        entries, index, found = self._locate(key)
        below = self._subtree_at(entries, index - 1)

        if found:
            after = self._subtree_at(entries, index + 1)
            if below and after:
                # the subtrees on either side are now adjacent, merge them
                return self._replace(index - 1, index + 2, below.append_merge(after))
            return self._replace(index, index + 1)

        if below:
            subtree = below._delete(key)
            return self._replace(index - 1, index,
                                 subtree if subtree.get_entries() else None)

        raise KeyError(f'Could not find a record with key: {key}')

    def trim_top(self):
        """Removes root nodes that only hold a single subtree.

        Returns a fresh empty tree if this one is empty, since its old layer
        no longer applies.

        Returns:
          MST:
        """
        entries = self.get_entries()
        if not entries:
            return MST.create(storage=self.storage)
        elif len(entries) == 1 and isinstance(entries[0], MST):
            return entries[0].trim_top()
        return self

    def split_around(self, key):
        """Splits this tree into the parts before and after a key.

        Args:
          key (str): not in the tree

        Returns:
          (MST or None, MST or None) tuple: None for an empty side
        """
        entries, index, _ = self._locate(key)
        left = entries[:index]
        right = entries[index:]

        # the subtree just before the key may straddle it
        if left and isinstance(left[-1], MST):
            lower_left, lower_right = left.pop().split_around(key)
            if lower_left:
                left.append(lower_left)
            if lower_right:
                right.insert(0, lower_right)

        return (self.with_entries(left) if left else None,
                self.with_entries(right) if right else None)

    def append_merge(self, to_merge):
        """Merges a tree whose keys are all after this tree's keys onto its end.

        Args:
          to_merge (MST): on the same layer as this tree

        Returns:
          MST:

        Raises:
          InvalidNode: if the trees are on different layers
        """
        if self.get_layer() != to_merge.get_layer():
            raise InvalidNode(f'Cannot merge MST nodes on layers {self.get_layer()} and {to_merge.get_layer()}')

        left = self.get_entries()
        right = to_merge.get_entries()
        if isinstance(left[-1], MST) and isinstance(right[0], MST):
            return self.with_entries(
                left[:-1] + [left[-1].append_merge(right[0])] + right[1:])

        return self.with_entries(left + right)

    def create_child(self):
        """Returns a new empty node one layer below this one."""
        return MST.create(storage=self.storage, layer=self.get_layer() - 1)

    def create_parent(self):
        """Returns a new node one layer above this one, with just this node."""
        parent = MST(storage=self.storage, entries=[self],
                     layer=self.get_layer() + 1)
        parent.outdated_pointer = True
        return parent

    # Traversal
    # -------------------

    def walk_leaves_from(self, key):
        """Generates leaves in key order, starting at a key.

        Only loads the nodes it reaches.

        Args:
          key (str): first key to include, if it exists

        Returns:
          generator of Leaf
        """
        entries, index, _ = self._locate(key)

        below = self._subtree_at(entries, index - 1)
        if below:
            yield from below.walk_leaves_from(key)

        for entry in entries[index:]:
            if isinstance(entry, Leaf):
                yield entry
            else:
                yield from entry.walk_leaves_from(key)

    def list(self, after=None, before=None):
        """Returns leaves in key order, optionally within a key range.

        Args:
          after (str): optional, exclusive
          before (str): optional, exclusive

        Returns:
          list of Leaf:
        """
        leaves = []
        for leaf in self.walk_leaves_from(after or ''):
            if before and leaf.key >= before:
                break
            if leaf.key != after:
                leaves.append(leaf)

        return leaves

    def list_with_prefix(self, prefix):
        """Returns the leaves whose keys start with a prefix, in key order.

        Args:
          prefix (str)

        Returns:
          list of Leaf:
        """
        return list(itertools.takewhile(lambda leaf: leaf.key.startswith(prefix),
                                        self.walk_leaves_from(prefix)))

    def walk(self):
        """Generates this node, then its entries, depth first, in key order.

        Returns:
          generator of MST and Leaf
        """
        yield self

        for entry in self.get_entries():
            if isinstance(entry, MST):
                yield from entry.walk()
            else:
                yield entry

    def all_nodes(self):
        """
        Returns:
          list of MST and Leaf: everything :meth:`walk` generates
        """
        return list(self.walk())

    def all_cids(self):
        """Returns the CIDs of this tree's nodes, not including leaf values.

        Returns:
          set of CID:
        """
        return {node.get_pointer() for node in self.walk() if isinstance(node, MST)}

    def leaves(self):
        """
        Returns:
          list of Leaf: in key order
        """
        return [entry for entry in self.walk() if isinstance(entry, Leaf)]

    def leaf_count(self):
        return len(self.leaves())

    # Persistence
    # -------------------

    def get_unstored_blocks(self):
        """Returns the nodes in this tree that aren't in storage yet.

        Stops descending at nodes that are already stored, since everything
        below them is stored too.

        Returns:
          (CID, dict) tuple: root CID, {:class:`CID`: :class:`Block`}
        """
        root = self.get_pointer()
        unstored = {}

        to_visit = [self]
        while to_visit:
            node = to_visit.pop()
            cid = node.get_pointer()
            if cid in unstored or self.storage.has(cid):
                continue

            entries = node.get_entries()
            unstored[cid] = Block(cid=cid,
                                  decoded=serialize_node_data(entries)._asdict())
            to_visit.extend(entry for entry in entries if isinstance(entry, MST))

        return root, unstored

    def load_all(self):
        """Generates every stored node in this tree, then its records.

        Breadth first, one batch read from storage per layer. Records that
        aren't in storage are skipped.

        Returns:
          generator of (CID, bytes) tuples

        Raises:
          MissingBlock: if a node isn't in storage
          IntegrityError: if a stored node doesn't match its CID
        """
        records = set()
        to_fetch = {self.get_pointer()}

        while to_fetch:
            blocks = self.storage.read_many_verified(to_fetch)
            to_fetch = set()

            for cid, block in blocks.items():
                yield cid, block.encoded
                for entry in deserialize_node_data(
                        storage=self.storage, data=decode_node_data(block.decoded)):
                    if isinstance(entry, Leaf):
                        records.add(entry.value)
                    else:
                        to_fetch.add(entry.get_pointer())

        for cid, block in self.storage.read_many(records, require_all=False).items():
            if block:
                yield cid, block.encoded
            else:
                logger.debug(f'Record {cid} not in storage, omitting')

    def to_car(self):
        """Exports this tree, and whichever of its records are stored, as a CAR.

        The tree must already be persisted.

        Returns:
          bytes: CAR v1 archive with this tree's root as its only root

        Raises:
          MissingBlock: if a node isn't in storage
          IntegrityError: if a stored node doesn't match its CID
        """
        blocks = [car.Block(cid=cid, data=data) for cid, data in self.load_all()]
        return car.write_car([self.get_pointer()], blocks)


def leading_zeros_on_hash(key):
    """Returns a key's layer: the leading zero bit pairs in its SHA-256 hash.

    Args:
      key (str or bytes)

    Returns:
      int:
    """
    if not isinstance(key, bytes):
        key = key.encode()  # ensure_valid_key enforces that this is ASCII only

    zeros = 0
    for byte in sha256(key).digest():
        if byte:
            return zeros + (8 - byte.bit_length()) // 2
        zeros += 4

    return zeros


def layer_for_entries(entries):
    """Returns the layer of a node's entries, based on its first leaf.

    Args:
      entries (sequence of MST and Leaf)

    Returns:
      int or None: None if there are no leaves
    """
    for entry in entries:
        if isinstance(entry, Leaf):
            return leading_zeros_on_hash(entry.key)


def _check_type(obj, field, type_, optional=False):
    val = obj[field]
    if not (isinstance(val, type_) or (optional and val is None)):
        raise InvalidNode(f'MST node field {field} has type {type(val).__name__}')


def decode_node_data(decoded):
    """Checks that a decoded DAG-CBOR object is an MST node.

    Args:
      decoded (dict)

    Returns:
      Data:

    Raises:
      InvalidNode: if ``decoded`` doesn't have the node's shape
    """
    if not isinstance(decoded, dict) or decoded.keys() != set(Data._fields):
        raise InvalidNode(f'Not an MST node: {decoded!r}')

    _check_type(decoded, 'l', CID, optional=True)
    _check_type(decoded, 'e', list)
    for entry in decoded['e']:
        if not isinstance(entry, dict) or entry.keys() != set(Entry._fields):
            raise InvalidNode(f'Not an MST node entry: {entry!r}')
        _check_type(entry, 'p', int)
        _check_type(entry, 'k', bytes)
        _check_type(entry, 'v', CID)
        _check_type(entry, 't', CID, optional=True)

    return Data(**decoded)


def deserialize_node_data(*, storage=None, data=None, layer=None):
    """Reconstructs a node's entries from its stored form.

    Subtrees are returned as unloaded :class:`MST` s.

    Args:
      storage (Storage)
      data (Data)
      layer (int): this node's layer, or None if unknown

    Returns:
      list of MST and Leaf:

    Raises:
      InvalidKey, InvalidNode
    """
    child_layer = layer - 1 if layer is not None else None

    def subtree(cid):
        return MST(storage=storage, pointer=cid, layer=child_layer)

    entries = []
    if data.l is not None:
        entries.append(subtree(data.l))

    last_key = b''
    for entry in data.e:
        entry = Entry(**entry)
        if not 0 <= entry.p <= len(last_key):
            raise InvalidNode(f'Prefix length {entry.p} longer than previous key {last_key!r}')

        key_bytes = last_key[:entry.p] + entry.k
        if key_bytes <= last_key:
            raise InvalidNode(f'MST keys out of order: {last_key!r}, {key_bytes!r}')

        try:
            key = key_bytes.decode('ascii')
        except UnicodeDecodeError as e:
            raise InvalidKey(key_bytes) from e

        ensure_valid_key(key)
        entries.append(Leaf(key, entry.v))
        if entry.t is not None:
            entries.append(subtree(entry.t))
        last_key = key_bytes

    return entries


def serialize_node_data(entries):
    """Converts a node's entries to its canonical stored form.

    Args:
      entries (sequence of MST and Leaf)

    Returns:
      Data:

    Raises:
      InvalidKey: if a key is invalid
      InvalidNode: if two subtrees are adjacent or keys are out of order
    """
    entries = list(entries)
    data = Data(l=None, e=[])
    if entries and isinstance(entries[0], MST):
        data = data._replace(l=entries.pop(0).get_pointer())

    last_key = b''
    i = 0
    while i < len(entries):
        leaf = entries[i]
        if not isinstance(leaf, Leaf):
            raise InvalidNode('Not a valid node: two subtrees next to each other')

        right = MST._subtree_at(entries, i + 1)
        i += 2 if right else 1

        ensure_valid_key(leaf.key)
        key = leaf.key.encode('ascii')
        if key <= last_key:
            raise InvalidNode(f'MST keys out of order: {last_key!r}, {key!r}')

        prefix_len = common_prefix_len(last_key, key)
        data.e.append(Entry(
            p=prefix_len,
            k=key[prefix_len:],
            v=leaf.value,
            t=right.get_pointer() if right else None,
        )._asdict())
        last_key = key

    return data


def common_prefix_len(a, b):
    """Returns the number of bytes that two keys share at their start.

    Args:
      a (str or bytes)
      b (str or bytes)

    Returns:
      int:
    """
    if isinstance(a, str):
        a = a.encode()
    if isinstance(b, str):
        b = b.encode()
    return len(commonprefix((a, b)))


def cid_for_entries(entries):
    """
    Args:
      entries (sequence of MST and Leaf)

    Returns:
      CID
    """
    return dag_cbor_cid(serialize_node_data(entries)._asdict())


def is_valid_key(key):
    """Returns True if key is a valid MST key, False otherwise.

    A valid key is ``[collection]/[record key]``, at most 256 characters, with
    both parts non-empty and only containing ``A-Za-z0-9_-:.``. Neither part
    can be ``.`` or ``..``.

    Args:
      key (str)

    Returns:
      bool:
    """
    if not isinstance(key, str) or len(key) > MAX_KEY_LEN:
        return False

    split = key.split('/')
    return (len(split) == 2
            and all(KEY_SEGMENT_RE.fullmatch(part) for part in split)
            and all(part not in ('.', '..') for part in split))


def ensure_valid_key(key):
    """
    Args:
      key (str)

    Raises:
      InvalidKey: if key is not a valid MST key
    """
    if not is_valid_key(key):
        raise InvalidKey(key)


WalkStatus = namedtuple('WalkStatus', [
    'done',     # bool
    'cur',      # MST or Leaf
    'walking',  # MST whose entries we're in, or None at the root
    'index',    # int, index of cur in walking's entries
], defaults=[None, None, None, None])


class Walker:
    """Cursor over an MST that can step over whole subtrees without loading them.

    Used by :class:`rookery.diff.Diff` to walk two trees side by side.

    Attributes:
      stack (list of WalkStatus): parents of the current position
      status (WalkStatus): current position
    """
    def __init__(self, tree):
        """
        Args:
          tree (MST)
        """
        self.stack = []
        self.status = WalkStatus(done=False, cur=tree, walking=None, index=0)

    def layer(self):
        """Returns the layer of the node the current entry is in.

        At the root, that's one above the root itself.
        """
        assert not self.status.done, 'Walk is done'

        if self.status.walking:
            return self.status.walking.get_layer()
        return self.status.cur.get_layer() + 1

    def step_over(self):
        """Moves to the next entry, skipping the current subtree if any."""
        if self.status.done:
            return

        if not self.status.walking:
            # stepped over the root
            self.status = WalkStatus(done=True)
            return

        index = self.status.index + 1
        entries = self.status.walking.get_entries()
        if index < len(entries):
            self.status = self.status._replace(cur=entries[index], index=index)
        elif self.stack:
            # end of this node, continue after it in its parent
            self.status = self.stack.pop()
            self.step_over()
        else:
            self.status = WalkStatus(done=True)

    def step_into(self):
        """Moves to the first entry of the current subtree.

        Raises:
          RuntimeError: if the current entry is a leaf
          InvalidNode: if the current subtree is empty
        """
        if self.status.done:
            return

        cur = self.status.cur
        if not isinstance(cur, MST):
            raise RuntimeError('No tree at pointer, cannot step into')

        entries = cur.get_entries()
        if not self.status.walking:
            # the root is the only node that can be empty
            if not entries:
                self.status = WalkStatus(done=True)
                return
        elif not entries:
            raise InvalidNode(f'MST node {cur.get_pointer()} has no entries')
        else:
            self.stack.append(self.status)

        self.status = WalkStatus(done=False, cur=entries[0], walking=cur, index=0)

    def advance(self):
        """Moves to the next entry in key order, stepping into subtrees."""
        if self.status.done:
            return
        elif isinstance(self.status.cur, Leaf):
            self.step_over()
        else:
            self.step_into()
