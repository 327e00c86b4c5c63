"""Unit tests for mst.py.

Based on:
https://github.com/bluesky-social/atproto/blob/main/packages/repo/tests/mst.test.ts
"""
import random

from ..mst import (
    cid_for_entries,
    common_prefix_len,
    deserialize_node_data,
    ensure_valid_key,
    is_valid_key,
    layer_for_entries,
    leading_zeros_on_hash,
    Leaf,
    MST,
    serialize_node_data,
    Walker,
)
from ..storage import Block, MemoryStorage
from ..util import InvalidKey, InvalidNode, IntegrityError, MissingBlock
from . import testutil
from .testutil import (
    CountingStorage,
    KEY_LAYER_0,
    KEY_LAYER_1,
    KEY_LAYER_2,
    KEY_LAYER_3,
    KEY_LAYER_5,
)


class MstTest(testutil.TestCase):

    def setUp(self):
        super().setUp()
        self.mst = MST.create(storage=self.storage)
        self.cid1, self.cid2, self.cid3 = self.random_cids(3)

    def test_known_layers(self):
        self.assertEqual(0, leading_zeros_on_hash(KEY_LAYER_0))
        self.assertEqual(1, leading_zeros_on_hash(KEY_LAYER_1))
        self.assertEqual(2, leading_zeros_on_hash(KEY_LAYER_2))
        self.assertEqual(3, leading_zeros_on_hash(KEY_LAYER_3))
        self.assertEqual(5, leading_zeros_on_hash(KEY_LAYER_5))

    def test_layer_is_stable(self):
        for key, _ in self.random_keys_and_cids(50):
            layer = leading_zeros_on_hash(key)
            self.assertEqual(layer, leading_zeros_on_hash(key))
            self.assertEqual(layer, leading_zeros_on_hash(key.encode()))

    def test_layer_distribution(self):
        layers = [leading_zeros_on_hash(key)
                  for key, _ in self.random_keys_and_cids(2000)]
        # roughly 1/4 of keys are on layer 1 or above
        above = len([l for l in layers if l >= 1])
        self.assertGreater(above, 350)
        self.assertLess(above, 650)

    def test_layer_for_entries(self):
        self.assertIsNone(layer_for_entries([]))
        self.assertIsNone(layer_for_entries([MST.create(storage=self.storage)]))
        self.assertEqual(2, layer_for_entries([
            MST.create(storage=self.storage),
            Leaf(KEY_LAYER_2, self.cid1),
        ]))

    def test_end_to_end_example(self):
        def build():
            tree = MST.create(storage=MemoryStorage())
            tree = tree.add('app.bsky.feed.post/3k2x', self.cid1)
            return tree.add('app.bsky.feed.post/3k2y', self.cid2)

        tree = build()
        self.assertEqual(self.cid1, tree.get('app.bsky.feed.post/3k2x'))
        self.assertEqual(self.cid2, tree.get('app.bsky.feed.post/3k2y'))
        self.assertEqual(build().get_pointer(), tree.get_pointer())

        # both keys are on layer 0, so they're in the root node, and the
        # second is prefix compressed
        self.assertEqual({
            'l': None,
            'e': [{
                'p': 0,
                'k': b'app.bsky.feed.post/3k2x',
                'v': self.cid1,
                't': None,
            }, {
                'p': 22,
                'k': b'y',
                'v': self.cid2,
                't': None,
            }],
        }, serialize_node_data(tree.get_entries())._asdict())

    def test_empty(self):
        self.assertEqual([], self.mst.get_entries())
        self.assertEqual(0, self.mst.get_layer())
        self.assertEqual(0, self.mst.leaf_count())
        self.assertIsNone(self.mst.get(KEY_LAYER_0))
        self.assertEqual(MST.create(storage=MemoryStorage()).get_pointer(),
                         self.mst.get_pointer())

    def test_adds(self):
        to_add = self.random_keys_and_cids(1000)

        mst = self.mst
        for key, cid in to_add:
            mst = mst.add(key, cid)

        for key, cid in to_add:
            self.assertEqual(cid, mst.get(key))

        self.assertEqual(1000, mst.leaf_count())

    def test_add_existing_key_updates(self):
        mst = self.mst.add(KEY_LAYER_0, self.cid1).add(KEY_LAYER_2, self.cid2)
        updated = mst.add(KEY_LAYER_0, self.cid3)

        self.assertEqual(self.cid3, updated.get(KEY_LAYER_0))
        self.assertEqual(2, updated.leaf_count())
        self.assertEqual(
            self.mst.add(KEY_LAYER_2, self.cid2).add(KEY_LAYER_0, self.cid3),
            updated)

        # original is unchanged
        self.assertEqual(self.cid1, mst.get(KEY_LAYER_0))

    def test_add_invalid_key_fails_before_mutating(self):
        mst = self.mst.add(KEY_LAYER_0, self.cid1)
        before = mst.get_pointer()

        with self.assertRaises(InvalidKey) as e:
            mst.add('not a key', self.cid2)

        self.assertEqual('not a key', e.exception.key)
        self.assertEqual(before, mst.get_pointer())
        self.assertEqual(1, mst.leaf_count())

    def test_edits(self):
        to_edit = self.random_keys_and_cids(100)

        mst = self.mst
        for key, cid in to_edit:
            mst = mst.add(key, cid)

        edited = []
        for (key, _), cid in zip(to_edit, self.random_cids(100)):
            mst = mst.update(key, cid)
            edited.append((key, cid))

        for key, cid in edited:
            self.assertEqual(cid, mst.get(key))

        self.assertEqual(100, mst.leaf_count())

    def test_update_missing_key(self):
        with self.assertRaises(KeyError):
            self.mst.add(KEY_LAYER_0, self.cid1).update(KEY_LAYER_1, self.cid2)

    def test_deletes(self):
        to_delete = self.random_keys_and_cids(100)
        to_keep = to_delete[:50]

        mst = self.mst
        for key, cid in to_delete:
            mst = mst.add(key, cid)

        for key, _ in to_delete[50:]:
            mst = mst.delete(key)

        self.assertEqual(50, mst.leaf_count())
        for key, cid in to_keep:
            self.assertEqual(cid, mst.get(key))
        for key, _ in to_delete[50:]:
            self.assertIsNone(mst.get(key))

        self.assertEqual(self.build(to_keep).get_pointer(), mst.get_pointer())

    def test_delete_missing_key(self):
        with self.assertRaises(KeyError):
            self.mst.add(KEY_LAYER_0, self.cid1).delete(KEY_LAYER_1)

    def test_delete_everything_resets_to_empty(self):
        mst = self.mst.add(KEY_LAYER_3, self.cid1).add(KEY_LAYER_0, self.cid2)
        mst = mst.delete(KEY_LAYER_3).delete(KEY_LAYER_0)
        self.assertEqual(self.mst.get_pointer(), mst.get_pointer())
        self.assertEqual(0, mst.get_layer())

        # adding a low layer key now shouldn't add any padding nodes
        mst = mst.add(KEY_LAYER_0, self.cid2)
        self.assertEqual(self.mst.add(KEY_LAYER_0, self.cid2), mst)

    def test_is_order_independent(self):
        to_add = self.random_keys_and_cids(500)
        mst = self.build(to_add)

        shuffled = list(to_add)
        random.shuffle(shuffled)
        self.assertEqual(mst.get_pointer(), self.build(shuffled).get_pointer())
        self.assertEqual(mst.get_pointer(),
                         self.build(reversed(to_add), storage=MemoryStorage()).get_pointer())

    def test_edit_histories_converge(self):
        to_add = self.random_keys_and_cids(200)
        final = self.build(to_add[:150])

        # add everything, then edit and delete down to the same contents
        mst = self.build(reversed(to_add))
        for (key, _), cid in zip(to_add[:150], self.random_cids(150)):
            mst = mst.update(key, cid)
        for key, cid in to_add[:150]:
            mst = mst.add(key, cid)
        for key, _ in to_add[150:]:
            mst = mst.delete(key)

        self.assertEqual(final.get_pointer(), mst.get_pointer())

    def test_delete_and_readd_high_layer_key(self):
        before = self.build(self.random_keys_and_cids(100))

        for key in KEY_LAYER_2, KEY_LAYER_5:
            added = before.add(key, self.cid1)
            self.assertNotEqual(before.get_pointer(), added.get_pointer())
            self.assertGreaterEqual(added.get_layer(), leading_zeros_on_hash(key))

            deleted = added.delete(key)
            self.assertEqual(before.get_pointer(), deleted.get_pointer())
            self.assertEqual(added.get_pointer(),
                             deleted.add(key, self.cid1).get_pointer())

    def test_padding_nodes(self):
        # KEY_LAYER_2 needs a root on layer 2, so KEY_LAYER_0 needs an empty
        # padding node on layer 1 between them
        mst = self.mst.add(KEY_LAYER_0, self.cid1).add(KEY_LAYER_2, self.cid2)
        self.assertEqual(2, mst.get_layer())

        left, leaf = mst.get_entries()
        self.assertEqual(Leaf(KEY_LAYER_2, self.cid2), leaf)
        self.assertEqual(1, left.get_layer())

        [bottom] = left.get_entries()
        self.assertIsInstance(bottom, MST)
        self.assertEqual(0, bottom.get_layer())
        self.assertEqual([Leaf(KEY_LAYER_0, self.cid1)], bottom.get_entries())

        self.assertEqual(mst, self.mst.add(KEY_LAYER_2, self.cid2)
                                      .add(KEY_LAYER_0, self.cid1))

        # deleting the high key trims the padding back off
        self.assertEqual(self.mst.add(KEY_LAYER_0, self.cid1),
                         mst.delete(KEY_LAYER_2))

    def test_split_around_higher_layer_key(self):
        low = [(f'com.example.record/{i}', self.cid1) for i in (0, 1, 2, 3)]
        mst = self.build(low)
        self.assertEqual(0, mst.get_layer())

        # sorts between /1 and /2
        split = mst.add(KEY_LAYER_2, self.cid2)
        left, leaf, right = split.get_entries()
        self.assertEqual(KEY_LAYER_2, leaf.key)
        self.assertEqual(['com.example.record/0', 'com.example.record/1'],
                         [l.key for l in left.leaves()])
        self.assertEqual(['com.example.record/2', 'com.example.record/3'],
                         [l.key for l in right.leaves()])

        self.assertEqual(split, self.build([(KEY_LAYER_2, self.cid2)] + low))
        self.assertEqual(mst, split.delete(KEY_LAYER_2))

    def test_no_adjacent_subtrees(self):
        a = MST.create(storage=self.storage, entries=[Leaf(KEY_LAYER_0, self.cid1)])
        b = MST.create(storage=self.storage, entries=[Leaf(KEY_LAYER_1, self.cid1)])

        for entries in ([a, b], [Leaf(KEY_LAYER_2, self.cid2), a, b]):
            with self.assertRaises(InvalidNode):
                serialize_node_data(entries)
            with self.assertRaises(InvalidNode):
                cid_for_entries(entries)
            with self.assertRaises(InvalidNode):
                MST.create(storage=self.storage, entries=entries)

    def test_serialize_keys_out_of_order(self):
        with self.assertRaises(InvalidNode):
            serialize_node_data([Leaf(KEY_LAYER_1, self.cid1),
                                 Leaf(KEY_LAYER_0, self.cid2)])

        with self.assertRaises(InvalidNode):
            serialize_node_data([Leaf(KEY_LAYER_0, self.cid1),
                                 Leaf(KEY_LAYER_0, self.cid2)])

    def test_serialize_invalid_key(self):
        with self.assertRaises(InvalidKey):
            serialize_node_data([Leaf('a/b c', self.cid1)])

    def test_serialize_deserialize_roundtrip(self):
        left, right = self.random_cids(2)
        entries = [
            MST(storage=self.storage, pointer=left),
            Leaf('com.example.record/3jqfcqzm3fo2j', self.cid1),
            Leaf('com.example.record/3jqfcqzm3fp2j', self.cid2),
            MST(storage=self.storage, pointer=right),
            Leaf('com.example.recurd/x', self.cid3),
        ]

        data = serialize_node_data(entries)
        self.assertEqual(left, data.l)
        self.assertEqual([0, 29, 15], [e['p'] for e in data.e])
        self.assertEqual([b'com.example.record/3jqfcqzm3fo2j', b'p2j', b'urd/x'],
                         [e['k'] for e in data.e])
        self.assertEqual([None, right, None], [e['t'] for e in data.e])

        self.assertEqual(entries, deserialize_node_data(storage=self.storage,
                                                        data=data))

    def test_deserialize_layer_hints(self):
        left = self.random_cids(1)[0]
        data = serialize_node_data([MST(storage=self.storage, pointer=left),
                                    Leaf(KEY_LAYER_2, self.cid1)])

        [child, _] = deserialize_node_data(storage=self.storage, data=data, layer=2)
        self.assertEqual(1, child.layer)

        [child, _] = deserialize_node_data(storage=self.storage, data=data)
        self.assertIsNone(child.layer)

    def test_deserialize_bad_prefix(self):
        data = serialize_node_data([Leaf(KEY_LAYER_0, self.cid1),
                                    Leaf(KEY_LAYER_1, self.cid2)])
        data.e[1]['p'] = 99
        with self.assertRaises(InvalidNode):
            deserialize_node_data(storage=self.storage, data=data)

    def test_load_lazily(self):
        to_add = self.random_keys_and_cids(200)
        mst = self.build(to_add)
        root = self.persist(mst)

        storage = CountingStorage()
        storage.blocks = self.storage.blocks
        loaded = MST.load(storage=storage, cid=root)
        self.assertEqual([], storage.reads)

        key, cid = to_add[123]
        self.assertEqual(cid, loaded.get(key))
        self.assertGreater(len(storage.reads), 0)
        self.assertLessEqual(len(storage.reads), loaded.get_layer() + 1)

        self.assertEqual(mst.leaves(), loaded.leaves())

    def test_load_with_layer_hint(self):
        mst = self.build(self.random_keys_and_cids(50))
        root = self.persist(mst)

        loaded = MST.load(storage=self.storage, cid=root, layer=mst.get_layer())
        self.assertEqual(mst.leaves(), loaded.leaves())

        wrong = MST.load(storage=self.storage, cid=root, layer=mst.get_layer() + 1)
        with self.assertRaises(InvalidNode):
            wrong.get_entries()

    def test_load_missing_block(self):
        cid = self.random_cids(1)[0]
        with self.assertRaises(MissingBlock) as e:
            MST.load(storage=self.storage, cid=cid).get(KEY_LAYER_0)
        self.assertEqual(cid, e.exception.cid)

    def test_load_corrupt_block(self):
        root = self.persist(self.build(self.random_keys_and_cids(10)))
        other = self.storage.write({'foo': 'bar'})

        # store the wrong bytes under the root's CID
        self.storage.blocks[root] = Block(cid=root, encoded=other.encoded)
        with self.assertRaises(IntegrityError) as e:
            MST.load(storage=self.storage, cid=root).get(KEY_LAYER_0)

        self.assertEqual(root, e.exception.expected)
        self.assertEqual(other.cid, e.exception.actual)

    def test_load_invalid_key(self):
        block = self.storage.write({
            'l': None,
            'e': [{'p': 0, 'k': b'no slash', 'v': self.cid1, 't': None}],
        })
        with self.assertRaises(InvalidKey):
            MST.load(storage=self.storage, cid=block.cid).get(KEY_LAYER_0)

        block = self.storage.write({
            'l': None,
            'e': [{'p': 0, 'k': 'co.ll/é'.encode(), 'v': self.cid1, 't': None}],
        })
        with self.assertRaises(InvalidKey):
            MST.load(storage=self.storage, cid=block.cid).get(KEY_LAYER_0)

    def test_load_not_a_node(self):
        for obj in ({'foo': 'bar'},
                    {'l': None, 'e': [{'p': 0, 'k': b'a/b'}]},
                    {'l': None, 'e': [{'p': 0, 'k': 'a/b', 'v': self.cid1, 't': None}]},
                    {'l': 'x', 'e': []}):
            block = self.storage.write(obj)
            with self.subTest(obj=obj), self.assertRaises(InvalidNode):
                MST.load(storage=self.storage, cid=block.cid).get_entries()

    def test_get_unstored_blocks(self):
        mst = self.build(self.random_keys_and_cids(100))
        root, blocks = mst.get_unstored_blocks()
        self.assertEqual(mst.get_pointer(), root)
        self.assertEqual(mst.all_cids(), set(blocks.keys()))

        self.storage.write_blocks(blocks.values())
        self.assertEqual((root, {}), mst.get_unstored_blocks())

        # copy on write: only the changed path is new
        key, _ = self.random_keys_and_cids(1)[0]
        added = mst.add(key, self.cid1)
        _, new_blocks = added.get_unstored_blocks()
        self.assertTrue(new_blocks)
        self.assertTrue(set(new_blocks).isdisjoint(blocks))
        self.assertLessEqual(set(added.cids_for_path(key)[:-1]), set(new_blocks))

        # old version is still loadable
        old = MST.load(storage=self.storage, cid=root)
        self.assertIsNone(old.get(key))

    def test_walk_leaves_from(self):
        to_add = sorted(self.random_keys_and_cids(100))
        mst = self.build(to_add)
        self.assertEqual([Leaf(*kv) for kv in to_add],
                         list(mst.walk_leaves_from('')))

        key = to_add[40][0]
        self.assertEqual([Leaf(*kv) for kv in to_add[40:]],
                         list(mst.walk_leaves_from(key)))

        # restartable
        self.assertEqual(list(mst.walk_leaves_from(key)),
                         list(mst.walk_leaves_from(key)))

    def test_list(self):
        to_add = sorted(self.random_keys_and_cids(100))
        mst = self.build(to_add)

        self.assertEqual([Leaf(*kv) for kv in to_add], mst.list())
        self.assertEqual([Leaf(*kv) for kv in to_add[31:60]],
                         mst.list(after=to_add[30][0], before=to_add[60][0]))

    def test_list_with_prefix(self):
        mst = self.mst
        for i, (key, cid) in enumerate(self.random_keys_and_cids(60)):
            collection = 'com.example.one' if i % 2 else 'com.example.two'
            mst = mst.add(collection + key[len('com.example.record'):], cid)

        ones = mst.list_with_prefix('com.example.one/')
        self.assertEqual(30, len(ones))
        self.assertTrue(all(l.key.startswith('com.example.one/') for l in ones))
        self.assertEqual(sorted(l.key for l in ones), [l.key for l in ones])

    def test_cids_for_path(self):
        mst = self.mst.add(KEY_LAYER_0, self.cid1).add(KEY_LAYER_2, self.cid2)
        left = mst.get_entries()[0]
        bottom = left.get_entries()[0]

        self.assertEqual([mst.get_pointer(), self.cid2], mst.cids_for_path(KEY_LAYER_2))
        self.assertEqual([mst.get_pointer(), left.get_pointer(),
                          bottom.get_pointer(), self.cid1],
                         mst.cids_for_path(KEY_LAYER_0))

        # absent key: proves non-inclusion
        self.assertEqual([mst.get_pointer(), left.get_pointer(), bottom.get_pointer()],
                         mst.cids_for_path('com.example.record/00'))

    def test_walker(self):
        mst = self.mst.add(KEY_LAYER_0, self.cid1).add(KEY_LAYER_2, self.cid2)
        walker = Walker(mst)
        self.assertEqual(3, walker.layer())

        seen = []
        while not walker.status.done:
            seen.append(walker.status.cur)
            walker.advance()

        self.assertEqual(mst.all_nodes(), seen)


class CarTest(testutil.TestCase):

    def test_to_car_and_import(self):
        mst = MST.create(storage=self.storage)
        records = {}
        for key, _ in self.random_keys_and_cids(50):
            record = self.storage.write({'key': key})
            records[key] = record.cid
            mst = mst.add(key, record.cid)

        root = self.persist(mst)
        car_bytes = mst.to_car()

        storage = MemoryStorage()
        self.assertEqual(root, storage.import_car(car_bytes))

        loaded = MST.load(storage=storage, cid=root)
        self.assertEqual(sorted(records.items()),
                         [(l.key, l.value) for l in loaded.leaves()])
        for key, cid in records.items():
            self.assertEqual({'key': key}, storage.read(cid).decoded)

    def test_load_all_and_to_car_check_nodes(self):
        mst = self.build(self.random_keys_and_cids(30))
        root = self.persist(mst)
        child = next(iter(mst.all_cids() - {root}))
        other = self.storage.write({'l': None, 'e': []})

        # store the wrong node under a child's CID
        self.storage.blocks[child] = Block(cid=child, encoded=other.encoded)

        with self.assertRaises(IntegrityError) as e:
            list(MST.load(storage=self.storage, cid=root).load_all())
        self.assertEqual(child, e.exception.expected)
        self.assertEqual(other.cid, e.exception.actual)

        with self.assertRaises(IntegrityError) as e:
            MST.load(storage=self.storage, cid=root).to_car()
        self.assertEqual(child, e.exception.expected)


class KeyTest(testutil.TestCase):

    def test_valid(self):
        for key in (
                'com.example.record/3jqfcqzm3fo2j',
                'app.bsky.feed.post/3k2x',
                'a/b',
                'coll/self',
                'co.ll/abc:def-ghi_jkl.mno',
                'co.ll/...',
                'com.example.record/' + 'a' * 237,  # 256 chars
        ):
            with self.subTest(key=key):
                self.assertTrue(is_valid_key(key))
                ensure_valid_key(key)

    def test_invalid(self):
        for key in (
                '',
                'asdf',
                'nested/collection/asdf',
                '/asdf',
                'asdf/',
                '/',
                'co.ll/.',
                'co.ll/..',
                './abc',
                '../abc',
                'co.ll/a@b',
                'co.ll/a b',
                'co.ll/a\nb',
                'co.ll/abc\n',
                'co.ll/é',
                'com.example.record/' + 'a' * 238,  # 257 chars
                'com.example.record/' + 'a' * 1000,
                None,
                b'co.ll/abc',
        ):
            with self.subTest(key=key):
                self.assertFalse(is_valid_key(key))
                with self.assertRaises(InvalidKey):
                    ensure_valid_key(key)

    def test_common_prefix_len_is_bytes(self):
        self.assertEqual(3, common_prefix_len('abc', 'abd'))
        self.assertEqual(3, common_prefix_len(b'abc', b'abcd'))
        self.assertEqual(0, common_prefix_len('', 'abc'))
