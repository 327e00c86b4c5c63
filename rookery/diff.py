"""Diffs between two MSTs.

Based on:
https://github.com/bluesky-social/atproto/blob/main/packages/repo/src/mst/diff.ts
https://github.com/bluesky-social/atproto/blob/main/packages/repo/src/data-diff.ts
"""
from collections import namedtuple
import logging

from .mst import Leaf, MST, Walker

logger = logging.getLogger(__name__)

Change = namedtuple('Change', [
    'key',   # str
    'cid',   # CID, new value for adds and updates, old value for deletes
    'prev',  # CID, previous value for updates, otherwise None
], defaults=[None])


class Diff:
    """A diff between two MSTs.

    Use :meth:`of` to create one.

    Attributes:
      adds (dict): {str key: :class:`Change`}
      updates (dict): {str key: :class:`Change`}
      deletes (dict): {str key: :class:`Change`}
      new_cids (set of CID): MST nodes in the new tree that aren't in the old
      removed_cids (set of CID): MST nodes in the old tree that aren't in the new
    """
    def __init__(self):
        self.adds = {}
        self.updates = {}
        self.deletes = {}
        self.new_cids = set()
        self.removed_cids = set()

    def __repr__(self):
        return (f'Diff(adds={len(self.adds)}, updates={len(self.updates)}, '
                f'deletes={len(self.deletes)}, new_cids={len(self.new_cids)}, '
                f'removed_cids={len(self.removed_cids)})')

    def is_empty(self):
        """Returns True if the two trees were identical."""
        return not (self.adds or self.updates or self.deletes
                    or self.new_cids or self.removed_cids)

    @staticmethod
    def of(curr, prev):
        """Calculates the diff between two trees.

        Walks both trees in key order. Subtrees with the same CID in both trees
        are skipped without being loaded.

        Args:
          curr (MST): new tree
          prev (MST): old tree, or None to treat everything in curr as new

        Returns:
          Diff:
        """
        if prev is None:
            return null_diff(curr)

        curr.get_pointer()
        prev.get_pointer()

        diff = Diff()
        left = Walker(prev)
        right = Walker(curr)

        while not left.status.done or not right.status.done:
            # if one walker is finished, continue walking the other & logging all nodes
            if left.status.done:
                diff.record_add(right.status.cur)
                right.advance()
                continue
            elif right.status.done:
                diff.record_delete(left.status.cur)
                left.advance()
                continue

            l = left.status.cur
            r = right.status.cur

            # if both pointers are leaves, record an update & advance both or
            # record the lowest key and advance that pointer
            if isinstance(l, Leaf) and isinstance(r, Leaf):
                if l.key == r.key:
                    if l.value != r.value:
                        diff.leaf_update(l.key, l.value, r.value)
                    left.advance()
                    right.advance()
                elif l.key < r.key:
                    diff.leaf_delete(l.key, l.value)
                    left.advance()
                else:
                    diff.leaf_add(r.key, r.value)
                    right.advance()
                continue

            # next, ensure that we're on the same layer. if one walker is higher:
            # * if it's on a tree, step into it to catch up with the lower
            # * if it's on a leaf, advance the lower walker to catch up
            left_layer = left.layer()
            right_layer = right.layer()
            if left_layer > right_layer:
                if isinstance(l, Leaf):
                    diff.record_add(r)
                    right.advance()
                else:
                    diff.tree_delete(l.get_pointer())
                    left.step_into()
                continue
            elif left_layer < right_layer:
                if isinstance(r, Leaf):
                    diff.record_delete(l)
                    left.advance()
                else:
                    diff.tree_add(r.get_pointer())
                    right.step_into()
                continue

            # same layer, both trees. if they're the same, step over. if they're
            # different, step in to find the subdiff
            if isinstance(l, MST) and isinstance(r, MST):
                if l.get_pointer() == r.get_pointer():
                    left.step_over()
                    right.step_over()
                else:
                    diff.tree_add(r.get_pointer())
                    diff.tree_delete(l.get_pointer())
                    left.step_into()
                    right.step_into()
                continue

            # finally, if one pointer is a tree and the other is a leaf, step
            # into the tree
            if isinstance(l, Leaf):
                diff.tree_add(r.get_pointer())
                right.step_into()
            else:
                diff.tree_delete(l.get_pointer())
                left.step_into()

        logger.debug(f'{diff} between {prev.get_pointer()} and {curr.get_pointer()}')
        return diff

    @staticmethod
    def of_cids(storage, curr, prev):
        """Calculates the diff between two stored trees, by root CID.

        Args:
          storage (Storage)
          curr (CID): new tree's root
          prev (CID): old tree's root, or None

        Returns:
          Diff:
        """
        return Diff.of(MST.load(storage=storage, cid=curr),
                       MST.load(storage=storage, cid=prev) if prev else None)

    def record_add(self, entry):
        """Records an MST node or leaf that's only in the new tree."""
        if isinstance(entry, Leaf):
            self.leaf_add(entry.key, entry.value)
        else:
            self.tree_add(entry.get_pointer())

    def record_delete(self, entry):
        """Records an MST node or leaf that's only in the old tree."""
        if isinstance(entry, Leaf):
            self.leaf_delete(entry.key, entry.value)
        else:
            self.tree_delete(entry.get_pointer())

    def leaf_add(self, key, cid):
        self.adds[key] = Change(key=key, cid=cid)

    def leaf_update(self, key, prev, cid):
        if prev != cid:
            self.updates[key] = Change(key=key, cid=cid, prev=prev)

    def leaf_delete(self, key, cid):
        self.deletes[key] = Change(key=key, cid=cid)

    def tree_add(self, cid):
        if cid in self.removed_cids:
            self.removed_cids.remove(cid)
        else:
            self.new_cids.add(cid)

    def tree_delete(self, cid):
        if cid in self.new_cids:
            self.new_cids.remove(cid)
        else:
            self.removed_cids.add(cid)


def null_diff(tree):
    """Returns a diff that adds everything in the given tree.

    Args:
      tree (MST)

    Returns:
      Diff:
    """
    diff = Diff()
    for entry in tree.walk():
        diff.record_add(entry)

    return diff
