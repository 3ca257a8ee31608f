from kumo_monitor.normalizer import Counters
from kumo_monitor.samples import QueueSnapshot, Sample, SampleStore


def test_append_records_sample_and_queue_snapshot():
    store = SampleStore(retention_ms=10_000)
    sample = store.append(Counters(received=5, delivered=3, depth=7, ready=2, scheduled=5), t=1_000)

    assert sample == Sample(t=1_000, received=5, delivered=3)
    assert store.queue == [QueueSnapshot(t=1_000, depth=7, ready=2, scheduled=5)]
    assert store.latest is sample
    assert len(store) == 1


def test_append_prunes_entries_older_than_retention():
    store = SampleStore(retention_ms=1_000)
    for t in (0, 500, 2_000):
        store.append(Counters(received=t), t)

    assert [s.t for s in store.samples] == [2_000]
    assert [q.t for q in store.queue] == [2_000]


def test_prune_is_idempotent():
    store = SampleStore(retention_ms=1_000)
    store.samples = [Sample(t=0), Sample(t=1_500)]
    store.queue = [QueueSnapshot(t=0)]

    assert store.prune(2_000) == 2
    assert store.prune(2_000) == 0
    assert [s.t for s in store.samples] == [1_500]


def test_restore_skips_invalid_entries_sorts_and_prunes():
    store = SampleStore(retention_ms=5_000)
    store.restore(
        [{"t": 9_000, "received": 2}, {"t": "bad"}, {"t": 7_000, "received": 1}, {"t": 1_000}, "junk"],
        [{"t": 8_000, "depth": 4}, {}],
        now=10_000,
    )

    assert [s.t for s in store.samples] == [7_000, 9_000]
    assert store.samples[0].delivered == 0
    assert store.queue == [QueueSnapshot(t=8_000, depth=4)]


def test_sample_from_dict_defaults_missing_counters():
    assert Sample.from_dict({"t": 5, "delivered": "x"}) == Sample(t=5)
    assert Sample.from_dict(None) is None
