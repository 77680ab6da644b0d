import random
import unittest

from pget.engine import WorkChunk, partition


def _listing(n: int) -> list[str]:
    return [f"part-{i:05d}" for i in range(n)]


def _concat(chunks: list[WorkChunk]) -> list[str]:
    merged: list[str] = []
    for chunk in chunks:
        merged.extend(chunk.entries)
    return merged


class PartitionTests(unittest.TestCase):
    def test_concatenated_chunks_reproduce_listing_for_random_sizes(self):
        rng = random.Random(20240601)
        for _ in range(500):
            entries = _listing(rng.randrange(0, 2000))
            workers = rng.randrange(1, 300)
            chunks = partition(entries, workers)

            self.assertEqual(_concat(chunks), entries)
            self.assertLessEqual(len(chunks), workers)
            for chunk in chunks:
                self.assertTrue(chunk.entries)

    def test_chunk_starts_are_global_indices(self):
        entries = _listing(23)
        for workers in range(1, 30):
            for chunk in partition(entries, workers):
                for offset, entry in enumerate(chunk.entries):
                    self.assertEqual(entries[chunk.start + offset], entry)

    def test_uses_ceiling_chunk_size_with_shorter_tail(self):
        chunks = partition(_listing(10), 3)
        self.assertEqual([len(chunk.entries) for chunk in chunks], [4, 4, 2])
        self.assertEqual([chunk.start for chunk in chunks], [0, 4, 8])

    def test_more_workers_than_entries_gives_single_entry_chunks(self):
        chunks = partition(_listing(3), 10)
        self.assertEqual(len(chunks), 3)
        self.assertEqual([chunk.entries for chunk in chunks], [("part-00000",), ("part-00001",), ("part-00002",)])

    def test_empty_listing_gives_no_chunks(self):
        self.assertEqual(partition([], 4), [])

    def test_single_worker_gets_everything(self):
        entries = _listing(7)
        self.assertEqual(partition(entries, 1), [WorkChunk(start=0, entries=tuple(entries))])

    def test_is_deterministic(self):
        entries = _listing(101)
        self.assertEqual(partition(entries, 7), partition(list(entries), 7))

    def test_rejects_non_positive_worker_count(self):
        with self.assertRaises(ValueError):
            partition(_listing(3), 0)


if __name__ == "__main__":
    unittest.main()
