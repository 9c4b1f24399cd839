import threading

from orchestrator.serve.demand import DemandTracker


def test_drain_returns_counts_and_resets():
    demand = DemandTracker()
    for _ in range(3):
        demand.record("llama")
    demand.record("mistral")

    assert demand.drain() == {"llama": 3, "mistral": 1}
    assert demand.drain() == {}


def test_peek_does_not_reset():
    demand = DemandTracker()
    demand.record("llama")
    assert demand.peek() == {"llama": 1}
    assert demand.drain() == {"llama": 1}


def test_concurrent_records_are_all_counted():
    demand = DemandTracker()
    threads_n, per_thread = 8, 500
    barrier = threading.Barrier(threads_n)

    def worker():
        barrier.wait()
        for _ in range(per_thread):
            demand.record("llama")

    threads = [threading.Thread(target=worker) for _ in range(threads_n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert demand.drain() == {"llama": threads_n * per_thread}


def test_records_during_drains_are_not_lost():
    demand = DemandTracker()
    total = 4000
    drained = []
    done = threading.Event()

    def producer():
        for _ in range(total):
            demand.record("llama")
        done.set()

    def consumer():
        while not done.is_set():
            drained.append(demand.drain().get("llama", 0))
        drained.append(demand.drain().get("llama", 0))

    threads = [threading.Thread(target=producer), threading.Thread(target=consumer)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(drained) == total
